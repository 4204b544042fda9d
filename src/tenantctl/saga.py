"""Ordered actions with compensations, run in place of a distributed transaction.

Each :class:`SagaStep` pairs an action with an optional compensation. Steps
run in order and share a mutable ``state`` mapping; the value returned by an
action is stored under the step's name. When step *k* fails, the
compensations of steps ``1..k-1`` run in reverse order. Compensation failures
are collected on the outcome and never replace the error that stopped the
saga.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from .errors import CleanupError, CleanupReport

LOGGER = logging.getLogger(__name__)

SagaState = dict[str, object]
StepCallback = Callable[[str, str, str | None], None]


@dataclass(frozen=True)
class SagaStep:
    """One forward action and the action that undoes it."""

    name: str
    action: Callable[[SagaState], object]
    compensation: Callable[[SagaState], object] | None = None


@dataclass(slots=True)
class SagaOutcome:
    """Result of running a saga."""

    state: SagaState
    completed: list[str] = field(default_factory=list)
    failed_step: str | None = None
    error: Exception | None = None
    cleanup_errors: list[CleanupError] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        """Return True when every step ran without error."""
        return self.error is None


class Saga:
    """Execute :class:`SagaStep` objects with reverse-order compensation."""

    def __init__(
        self,
        steps: Sequence[SagaStep],
        *,
        on_step: StepCallback | None = None,
    ) -> None:
        names = [step.name for step in steps]
        if len(set(names)) != len(names):
            raise ValueError(f"Saga step names must be unique: {names}")
        self.steps = list(steps)
        self._on_step = on_step

    def execute(self, state: SagaState | None = None) -> SagaOutcome:
        """Run every step; compensate completed steps when one fails."""
        outcome = SagaOutcome(state=state if state is not None else {})
        done: list[SagaStep] = []
        for step in self.steps:
            try:
                outcome.state[step.name] = step.action(outcome.state)
            except Exception as exc:  # noqa: BLE001 - surfaced via the outcome
                LOGGER.error("Saga step %s failed: %s", step.name, exc)
                self._notify(step.name, "failed", str(exc))
                outcome.failed_step = step.name
                outcome.error = exc
                outcome.cleanup_errors = self._compensate(done, outcome.state)
                return outcome
            done.append(step)
            outcome.completed.append(step.name)
            self._notify(step.name, "ok", None)
        return outcome

    def _compensate(self, done: Sequence[SagaStep], state: SagaState) -> list[CleanupError]:
        report = CleanupReport()
        for step in reversed(done):
            compensation = step.compensation
            if compensation is None:
                continue
            LOGGER.info("Compensating saga step %s", step.name)
            before = len(report.errors)
            report.attempt(f"compensate:{step.name}", lambda: compensation(state))
            status = "compensated" if len(report.errors) == before else "compensation-failed"
            self._notify(step.name, status, None)
        return report.errors

    def _notify(self, name: str, status: str, detail: str | None) -> None:
        if self._on_step is not None:
            self._on_step(name, status, detail)


__all__ = ["Saga", "SagaOutcome", "SagaStep", "SagaState"]
