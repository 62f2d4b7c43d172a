"""Configuration for the HTTP adapter."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerSettings(BaseSettings):
    """Settings for the REST API a presentation layer talks to.

    The API itself carries no workflow configuration; runs are configured
    through :class:`checkpoint_orchestrator.orchestrator.config.OrchestratorSettings`.
    """

    # Dev-friendly CORS. Override via CHECKPOINT_ORCHESTRATOR_CORS_ORIGINS=...
    cors_origins: str = Field(
        default="http://localhost:5173,http://127.0.0.1:5173",
        description="Comma-separated list of allowed CORS origins.",
    )

    model_config = SettingsConfigDict(
        env_prefix="CHECKPOINT_ORCHESTRATOR_", env_file=".env", extra="ignore"
    )

    def parsed_cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
