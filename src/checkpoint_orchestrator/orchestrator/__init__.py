"""Run-level components: settings, structured logging and the CLI surface."""
