"""Locate a workflow declaration from a `module:attr` or `file.py:attr` reference."""

from __future__ import annotations

import importlib
import importlib.util
import logging
import sys
from pathlib import Path
from types import ModuleType

from checkpoint_orchestrator.errors import ValidationError
from checkpoint_orchestrator.workflow.registry import TaskRegistry

logger = logging.getLogger(__name__)


def load_registry(reference: str) -> TaskRegistry:
    """Resolve `reference` to a `TaskRegistry`.

    The attribute may be a registry or a zero-argument factory returning one.
    """

    module_ref, sep, attr = reference.rpartition(":")
    if not sep or not module_ref or not attr:
        raise ValidationError(
            f"Workflow reference must look like 'module:attr' or 'path/file.py:attr': {reference!r}"
        )

    module = _import(module_ref)
    try:
        target = getattr(module, attr)
    except AttributeError as e:
        raise ValidationError(f"{module_ref!r} has no attribute {attr!r}") from e

    if not isinstance(target, TaskRegistry) and callable(target):
        target = target()
    if not isinstance(target, TaskRegistry):
        raise ValidationError(
            f"{reference!r} resolved to {type(target).__name__}, expected a TaskRegistry"
        )

    logger.info(
        "Workflow loaded",
        extra={"reference": reference, "workflow_id": target.workflow_id, "tasks": len(target)},
    )
    return target


def _import(module_ref: str) -> ModuleType:
    if module_ref.endswith(".py"):
        path = Path(module_ref).expanduser().resolve()
        if not path.is_file():
            raise ValidationError(f"Workflow file not found: {path}")
        module_name = f"_checkpoint_workflow_{path.stem}"
        spec = importlib.util.spec_from_file_location(module_name, path)
        if spec is None or spec.loader is None:
            raise ValidationError(f"Cannot import workflow file: {path}")
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        spec.loader.exec_module(module)
        return module

    try:
        return importlib.import_module(module_ref)
    except ImportError as e:
        raise ValidationError(f"Cannot import workflow module {module_ref!r}: {e}") from e
