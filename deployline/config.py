"""Runtime configuration: env-driven settings.

Reads from a .env file and DEPLOYLINE_* environment variables. Pipeline
topology and service targets are *not* configured here; they are explicit
values passed into the engine and the rollout controller.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings with environment variable overrides.

    Examples
    --------
    Override via environment::

        export DEPLOYLINE_LOG_LEVEL=DEBUG
        export DEPLOYLINE_EXECUTION_LOG_PATH=/data/executions.db
        export DEPLOYLINE_RETAIN_ARTIFACTS=true
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="DEPLOYLINE_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = "development"
    log_level: str = "INFO"

    # Storage paths
    execution_log_path: Path = Path(".deployline/executions.db")
    artifact_store_path: Path = Path(".deployline/artifacts")

    # Keep an execution's artifacts after it completes (audit)
    retain_artifacts: bool = False

    # Action execution
    default_action_timeout_seconds: float | None = 1800.0
    max_parallel_actions: int = 8

    # Rollout
    deployment_timeout_seconds: float = 600.0
    rollout_poll_interval_seconds: float = 5.0
    max_failed_launches: int | None = None

    # Secret store: EnvSecretStore reads {prefix}{SECRET_NAME}
    secret_env_prefix: str = "DEPLOYLINE_SECRET_"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


def configure_logging(settings: Settings | None = None) -> None:
    """Configure the root logger from ``settings.log_level``."""
    settings = settings or Settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
