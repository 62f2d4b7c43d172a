"""CLI entrypoint for the checkpoint orchestrator.

Exit codes: 0 completed, 1 failed, 2 configuration or checkpoint error,
3 suspended for a restart, 130 cancelled.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from pathlib import Path
from typing import Any, TextIO

from pydantic import ValidationError

from checkpoint_orchestrator import __version__
from checkpoint_orchestrator.errors import (
    GateNotPendingError,
    ReconciliationError,
    StateCorruptionError,
    StateLockError,
)
from checkpoint_orchestrator.errors import ValidationError as WorkflowValidationError
from checkpoint_orchestrator.orchestrator.config import OrchestratorSettings
from checkpoint_orchestrator.orchestrator.loader import load_registry
from checkpoint_orchestrator.orchestrator.logging import configure_logging
from checkpoint_orchestrator.orchestrator.session import WorkflowSession
from checkpoint_orchestrator.state.secure_store import SecureStateStore
from checkpoint_orchestrator.workflow.model import (
    ApprovalAction,
    ApprovalDecision,
    GateParameters,
    TaskRuntimeState,
    WorkflowRuntime,
    WorkflowStatus,
)
from checkpoint_orchestrator.workflow.observer import RunObserver
from checkpoint_orchestrator.workflow.runner import RunResult

logger = logging.getLogger(__name__)

EXIT_COMPLETED = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_SUSPENDED = 3
EXIT_CANCELLED = 130

_WAIT_SLICE_SECONDS = 0.5


def _parse_inputs(pairs: list[str] | None) -> dict[str, Any]:
    inputs: dict[str, Any] = {}
    for pair in pairs or []:
        key, sep, raw = pair.partition("=")
        key = key.strip()
        if not sep or not key:
            raise WorkflowValidationError(f"Expected --input key=value, got {pair!r}")
        try:
            inputs[key] = json.loads(raw)
        except json.JSONDecodeError:
            inputs[key] = raw
    return inputs


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="checkpoint-orchestrator",
        description="Run ordered administrative tasks that survive a host restart",
    )
    parser.add_argument(
        "--version", action="version", version=f"checkpoint-orchestrator {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run a workflow, resuming from its checkpoint if any")
    run.add_argument(
        "--workflow",
        required=True,
        help="Workflow to run: 'package.module:attr' or 'path/to/file.py:attr'",
    )
    run.add_argument(
        "--input",
        dest="inputs",
        action="append",
        default=None,
        metavar="KEY=VALUE",
        help="Workflow input (repeatable); VALUE is parsed as JSON when possible",
    )
    run.add_argument(
        "--fresh",
        action="store_true",
        help="Discard any existing checkpoint and start from the first task",
    )
    run.add_argument(
        "--auto-approve",
        action="store_true",
        help="Approve every approval gate without prompting",
    )

    subparsers.add_parser("status", help="Show the saved checkpoint, if any")
    subparsers.add_parser("discard", help="Securely erase the saved checkpoint")

    return parser


class ConsoleObserver(RunObserver):
    """Human-readable progress on a text stream, plus console approval prompts."""

    def __init__(
        self,
        *,
        auto_approve: bool = False,
        stream: TextIO | None = None,
        prompt_input: TextIO | None = None,
    ) -> None:
        self.auto_approve = auto_approve
        self.stream = stream or sys.stderr
        self.prompt_input = prompt_input or sys.stdin
        self.session: WorkflowSession | None = None

    def on_task_started(self, state: TaskRuntimeState) -> None:
        self._print(f"> {state.name}")

    def on_task_finished(self, state: TaskRuntimeState) -> None:
        detail = f": {state.error}" if state.error else ""
        self._print(f"< {state.name} [{state.status.value}]{detail}")

    def on_awaiting_approval(self, task_name: str, gate: GateParameters) -> None:
        assert self.session is not None
        if self.auto_approve:
            self._print(f"? {task_name}: {gate.message} -> auto-approved")
            self.session.submit_decision(
                task_name, ApprovalDecision(action=ApprovalAction.APPROVED, reason="Auto-approved")
            )
            return
        threading.Thread(
            target=self._prompt,
            name=f"approval-{task_name}",
            daemon=True,
            kwargs={"task_name": task_name, "gate": gate},
        ).start()

    def on_suspended(self, reason: str, checkpoint_path: Path) -> None:
        self._print(f"! Suspended: {reason}. Restart the host, then run again to resume.")

    def _prompt(self, *, task_name: str, gate: GateParameters) -> None:
        assert self.session is not None
        self._print(f"? {task_name}: {gate.message}")
        choices = f"[a] {gate.approve_label} / [r] {gate.reject_label}"
        while True:
            self._print(choices)
            answer = self.prompt_input.readline()
            if not answer:
                return
            answer = answer.strip().lower()
            if answer not in ("a", "r"):
                continue
            action = ApprovalAction.APPROVED if answer == "a" else ApprovalAction.REJECTED
            reason = None
            if gate.require_reason or action is ApprovalAction.REJECTED:
                self._print("Reason:")
                reason = self.prompt_input.readline().strip() or None
            try:
                self.session.submit_decision(task_name, ApprovalDecision(action=action, reason=reason))
                return
            except WorkflowValidationError as e:
                self._print(str(e))
            except GateNotPendingError:
                return

    def _print(self, text: str) -> None:
        print(text, file=self.stream, flush=True)


def _exit_code(result: RunResult) -> int:
    if result.suspended:
        return EXIT_SUSPENDED
    if result.status is WorkflowStatus.COMPLETED:
        return EXIT_COMPLETED
    if result.status is WorkflowStatus.CANCELLED:
        return EXIT_CANCELLED
    return EXIT_FAILED


def _run_command(args: argparse.Namespace, settings: OrchestratorSettings) -> int:
    registry = load_registry(args.workflow)
    inputs = _parse_inputs(args.inputs)

    observer = ConsoleObserver(auto_approve=args.auto_approve)
    session = WorkflowSession.prepare(
        registry, settings, inputs=inputs, fresh=args.fresh, observer=observer
    )
    observer.session = session

    saved_log = session.view().log_file
    if settings.log_file is None and saved_log:
        # A resumed run keeps appending to the log the first run started.
        configure_logging(settings.log_level, Path(saved_log))
        logger.info("Resuming run log", extra={"log_file": saved_log})

    session.start()
    result: RunResult | None = None
    try:
        while result is None:
            result = session.wait(_WAIT_SLICE_SECONDS)
    except KeyboardInterrupt:
        print("Cancelling...", file=sys.stderr)
        session.cancel()
        result = session.wait()
    assert result is not None

    if result.suspended:
        print(f"Suspended: {result.suspend_reason} (checkpoint: {result.checkpoint_path})")
    elif result.status is WorkflowStatus.COMPLETED:
        failed = f" ({len(result.failed_tasks)} task(s) failed: {', '.join(result.failed_tasks)})"
        print(f"Workflow completed{failed if result.failed_tasks else ''}")
    elif result.status is WorkflowStatus.CANCELLED:
        print("Workflow cancelled")
    else:
        print(f"Workflow failed: {result.failure_reason}")
    return _exit_code(result)


def _format_runtime(runtime: WorkflowRuntime) -> list[str]:
    lines = [
        f"Workflow: {runtime.workflow_id} ({runtime.status.value})",
        f"Restarts: {runtime.restart_count}",
    ]
    if runtime.log_file:
        lines.append(f"Run log: {runtime.log_file}")
    for index, task in enumerate(runtime.tasks):
        marker = ">" if index == runtime.current_index else " "
        detail = f" - {task.progress_message}" if task.progress_message else ""
        lines.append(f" {marker} {task.name}: {task.status.value}{detail}")
    return lines


def _status_command(settings: OrchestratorSettings) -> int:
    store = SecureStateStore.from_settings(settings)
    snapshot = store.load()
    if snapshot is None:
        print("No checkpoint; nothing to resume.")
        return 0
    print(f"Checkpoint: {store.path}")
    print(f"Saved: {snapshot.saved_at.isoformat()} by {snapshot.saved_by.identity}")
    for line in _format_runtime(snapshot.runtime):
        print(line)
    return 0


def _discard_command(settings: OrchestratorSettings) -> int:
    store = SecureStateStore.from_settings(settings)
    if store.remove(secure=settings.secure_erase):
        print(f"Checkpoint erased: {store.path}")
    else:
        print("No checkpoint to erase.")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = OrchestratorSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your environment and .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return EXIT_CONFIG

    configure_logging(settings.log_level, settings.log_file)

    try:
        if args.command == "run":
            return _run_command(args, settings)
        if args.command == "status":
            return _status_command(settings)
        if args.command == "discard":
            return _discard_command(settings)

        logger.error("Unknown command", extra={"command": args.command})
        return EXIT_CONFIG

    except (StateCorruptionError, ReconciliationError) as e:
        logger.error("Checkpoint cannot be resumed", extra={"error": str(e)})
        print(f"Checkpoint error: {e}", file=sys.stderr)
        print("Run 'checkpoint-orchestrator discard' to start over.", file=sys.stderr)
        return EXIT_CONFIG

    except (StateLockError, WorkflowValidationError) as e:
        logger.error("Command rejected", extra={"error": str(e)})
        print(str(e), file=sys.stderr)
        return EXIT_CONFIG

    except Exception:
        logger.exception("Command failed")
        return EXIT_FAILED


if __name__ == "__main__":
    raise SystemExit(main())
