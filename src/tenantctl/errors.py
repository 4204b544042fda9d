"""Error taxonomy shared by the orchestrator and its providers.

Every error carries a list of *secondary* errors raised while cleaning up
after the primary failure. Cleanup problems are recorded there so callers and
tests can inspect them without the secondary error replacing the one that is
being propagated.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class CleanupError:
    """A failure raised by a cleanup or compensation step."""

    step: str
    error: BaseException

    def __str__(self) -> str:
        return f"{self.step}: {self.error}"


class TenantctlError(RuntimeError):
    """Base class for orchestration failures."""

    def __init__(
        self,
        message: str,
        *,
        secondary_errors: Iterable[CleanupError] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.secondary_errors: list[CleanupError] = list(secondary_errors or [])

    def add_secondary(self, errors: Iterable[CleanupError]) -> None:
        """Attach cleanup failures that happened while handling this error."""
        self.secondary_errors.extend(errors)


class InvalidInput(TenantctlError):
    """Raised when caller-supplied values fail validation."""


class NotFound(TenantctlError):
    """Raised when a template, instance, container or site does not exist."""


class AlreadyExists(TenantctlError):
    """Raised when an identifier is already owned by a live instance."""


class PoolExhausted(TenantctlError):
    """Raised when no port is left in the pool."""


class RuntimeFailure(TenantctlError):
    """Raised when a container runtime step fails."""


class RedeployFailure(RuntimeFailure):
    """Raised when ``down`` or ``up`` fails during a redeploy."""

    def __init__(
        self,
        message: str,
        *,
        stage: str,
        secondary_errors: Iterable[CleanupError] | None = None,
    ) -> None:
        super().__init__(message, secondary_errors=secondary_errors)
        self.stage = stage

    @property
    def left_stopped(self) -> bool:
        """Return True when the deployment was torn down but not brought back."""
        return self.stage == "up"


class ProxyFailure(TenantctlError):
    """Raised when the reverse-proxy control plane rejects a request."""


class PersistenceFailure(TenantctlError):
    """Raised when the catalog cannot be read or written."""


@dataclass(slots=True)
class CleanupReport:
    """Outcome of a sequence of best-effort cleanup actions."""

    errors: list[CleanupError] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        """Return True when every cleanup action succeeded."""
        return not self.errors

    def attempt(self, step: str, action: Callable[[], object]) -> None:
        """Run *action*, recording (and logging) any exception it raises."""
        try:
            action()
        except Exception as exc:  # noqa: BLE001 - cleanup must never mask the primary error
            LOGGER.warning("Cleanup step %s failed: %s", step, exc)
            self.errors.append(CleanupError(step=step, error=exc))


__all__ = [
    "AlreadyExists",
    "CleanupError",
    "CleanupReport",
    "InvalidInput",
    "NotFound",
    "PersistenceFailure",
    "PoolExhausted",
    "ProxyFailure",
    "RedeployFailure",
    "RuntimeFailure",
    "TenantctlError",
]
