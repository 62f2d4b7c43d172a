"""Workflow core: task model, state machine and runner.

Tasks are declared once, executed strictly in order, and may suspend the run
mid-sequence. A suspended run is checkpointed and resumes from the suspending
task after the host restarts the process.
"""

__all__: list[str] = []
