"""Checkpoint Orchestrator.

Runs an ordered list of administrative tasks, suspends mid-sequence when the
host must restart, and resumes from an encrypted, integrity-checked
checkpoint:
- task registry, state machine and runner
- sandboxed task execution with progress, output and cancellation
- approval gates decided from outside the run
"""

__version__ = "0.1.0"

from checkpoint_orchestrator.orchestrator.config import OrchestratorSettings

__all__ = ["__version__", "OrchestratorSettings"]
