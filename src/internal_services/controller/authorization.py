"""Authorization gate deciding whether a requester may run a pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from internal_services.controller.loader import ServicesConfig


@dataclass(frozen=True, slots=True)
class AuthorizationDecision:
    """Allowed, or denied with a human-readable reason."""

    allowed: bool
    reason: str = ""

    @classmethod
    def allow(cls) -> AuthorizationDecision:
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str) -> AuthorizationDecision:
        return cls(allowed=False, reason=reason)


class AuthorizationPolicy(Protocol):
    """Protocol implemented by authorization policies."""

    def evaluate(
        self,
        requested_job: str,
        requester: str,
        config: ServicesConfig,
    ) -> AuthorizationDecision:
        """Return a deterministic decision for the given inputs."""


class AllowListPolicy:
    """Namespace allow/deny list policy; the deny list wins over the allow list."""

    def evaluate(
        self,
        requested_job: str,  # noqa: ARG002
        requester: str,
        config: ServicesConfig,
    ) -> AuthorizationDecision:
        if requester in config.deny_list:
            return AuthorizationDecision.deny(
                f"the internal request namespace ({requester}) is denied",
            )
        if requester not in config.allow_list:
            return AuthorizationDecision.deny(
                f"the internal request namespace ({requester}) is not in the allow list",
            )
        return AuthorizationDecision.allow()
