"""Runtime configuration for the internal services controller and runner."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


@dataclass(slots=True)
class ControllerSettings:
    """Reconciliation loop settings."""

    controller_id: str = "controller"
    config_path: Path = Path("internal-services-config.json")
    poll_interval_seconds: float = 2.0
    requeue_base_seconds: float = 5.0
    requeue_max_seconds: float = 300.0
    trigger_lease_seconds: int = 300


@dataclass(slots=True)
class RunnerSettings:
    """Local pipeline runner settings."""

    runner_id: str = "runner"
    workdir_root: Path = Path(".internal_services/runs")
    default_timeout_seconds: int = 600
    poll_interval_seconds: float = 2.0
    graceful_shutdown_seconds: int = 30
    stale_grace_seconds: int = 60


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".internal_services.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    controller: ControllerSettings = field(default_factory=ControllerSettings)
    runner: RunnerSettings = field(default_factory=RunnerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        hostname = socket.gethostname()
        return cls(
            db_path=db_path
            or Path(os.getenv("INTERNAL_SERVICES_DB_PATH", ".internal_services.db")),
            sqlite_busy_timeout_ms=_env_int("INTERNAL_SERVICES_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            log_level=os.getenv("INTERNAL_SERVICES_LOG_LEVEL", "INFO").strip().upper(),
            controller=ControllerSettings(
                controller_id=os.getenv(
                    "INTERNAL_SERVICES_CONTROLLER_ID",
                    f"controller-{hostname}-{os.getpid()}",
                ),
                config_path=Path(
                    os.getenv("INTERNAL_SERVICES_CONFIG_PATH", "internal-services-config.json"),
                ),
                poll_interval_seconds=_env_float("INTERNAL_SERVICES_POLL_INTERVAL_SECONDS", 2.0),
                requeue_base_seconds=_env_float("INTERNAL_SERVICES_REQUEUE_BASE_SECONDS", 5.0),
                requeue_max_seconds=_env_float("INTERNAL_SERVICES_REQUEUE_MAX_SECONDS", 300.0),
                trigger_lease_seconds=_env_int("INTERNAL_SERVICES_TRIGGER_LEASE_SECONDS", 300),
            ),
            runner=RunnerSettings(
                runner_id=os.getenv(
                    "INTERNAL_SERVICES_RUNNER_ID",
                    f"runner-{hostname}-{os.getpid()}",
                ),
                workdir_root=Path(
                    os.getenv("INTERNAL_SERVICES_RUNNER_WORKDIR_ROOT", ".internal_services/runs"),
                ),
                default_timeout_seconds=_env_int(
                    "INTERNAL_SERVICES_RUNNER_DEFAULT_TIMEOUT_SECONDS",
                    600,
                ),
                poll_interval_seconds=_env_float(
                    "INTERNAL_SERVICES_RUNNER_POLL_INTERVAL_SECONDS",
                    2.0,
                ),
                graceful_shutdown_seconds=_env_int(
                    "INTERNAL_SERVICES_RUNNER_GRACEFUL_SHUTDOWN_SECONDS",
                    30,
                ),
                stale_grace_seconds=_env_int("INTERNAL_SERVICES_RUNNER_STALE_GRACE_SECONDS", 60),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("INTERNAL_SERVICES_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"INTERNAL_SERVICES_LOG_LEVEL must be one of {sorted(_LOG_LEVELS)}, "
                f"got {self.log_level!r}.",
            )
        if self.controller.poll_interval_seconds < 0:
            raise ValueError("INTERNAL_SERVICES_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.controller.requeue_base_seconds < 0:
            raise ValueError("INTERNAL_SERVICES_REQUEUE_BASE_SECONDS must be >= 0.")
        if self.controller.requeue_max_seconds < self.controller.requeue_base_seconds:
            raise ValueError(
                "INTERNAL_SERVICES_REQUEUE_MAX_SECONDS must be >= "
                "INTERNAL_SERVICES_REQUEUE_BASE_SECONDS.",
            )
        if self.controller.trigger_lease_seconds <= 0:
            raise ValueError("INTERNAL_SERVICES_TRIGGER_LEASE_SECONDS must be > 0.")
        if self.runner.default_timeout_seconds <= 0:
            raise ValueError("INTERNAL_SERVICES_RUNNER_DEFAULT_TIMEOUT_SECONDS must be > 0.")
        if self.runner.graceful_shutdown_seconds < 0:
            raise ValueError("INTERNAL_SERVICES_RUNNER_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if self.runner.stale_grace_seconds < 0:
            raise ValueError("INTERNAL_SERVICES_RUNNER_STALE_GRACE_SECONDS must be >= 0.")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid float value for {name}: {value!r}") from error
