"""Services configuration loaded on every reconciliation."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_PIPELINE_NAMESPACE = "internal-services"


class ConfigLoadError(RuntimeError):
    """Services configuration exists but cannot be read or parsed."""


@dataclass(frozen=True, slots=True)
class ServicesConfig:
    """Allow/deny lists and execution settings for internal requests."""

    allow_list: tuple[str, ...] = ()
    deny_list: tuple[str, ...] = ()
    debug: bool = False
    pipeline_namespace: str = DEFAULT_PIPELINE_NAMESPACE


class ConfigLoader:
    """Read ``ServicesConfig`` from a JSON file.

    A missing file yields the default configuration, so a fresh install rejects
    every request until an allow list is written.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> ServicesConfig:
        if not self.path.exists():
            logger.debug("Services config %s not found, using defaults", self.path)
            return ServicesConfig()
        try:
            payload = json.loads(self.path.read_text("utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as error:
            raise ConfigLoadError(f"Cannot read services config {self.path}: {error}") from error
        if not isinstance(payload, dict):
            raise ConfigLoadError(f"Services config {self.path} must be a JSON object.")

        return ServicesConfig(
            allow_list=_string_list(payload, "allowList"),
            deny_list=_string_list(payload, "denyList"),
            debug=_bool_value(payload, "debug"),
            pipeline_namespace=_namespace_value(payload),
        )


def _string_list(payload: dict[str, object], key: str) -> tuple[str, ...]:
    raw = payload.get(key)
    if raw is None:
        return ()
    if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
        raise ConfigLoadError(f"Services config field {key!r} must be a list of strings.")
    return tuple(raw)


def _bool_value(payload: dict[str, object], key: str) -> bool:
    raw = payload.get(key, False)
    if not isinstance(raw, bool):
        raise ConfigLoadError(f"Services config field {key!r} must be a boolean.")
    return raw


def _namespace_value(payload: dict[str, object]) -> str:
    raw = payload.get("pipelineNamespace", DEFAULT_PIPELINE_NAMESPACE)
    if not isinstance(raw, str) or not raw.strip():
        raise ConfigLoadError(
            "Services config field 'pipelineNamespace' must be a non-empty string.",
        )
    return raw.strip()
