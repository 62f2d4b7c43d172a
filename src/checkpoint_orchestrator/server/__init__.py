"""FastAPI server adapter for checkpoint-orchestrator.

Design intent:
- Keep business logic in `checkpoint_orchestrator.workflow.*`
- Keep server-specific concerns (routing, CORS, response models) here
"""

from __future__ import annotations

__all__ = ["create_app"]

from checkpoint_orchestrator.server.app import create_app
