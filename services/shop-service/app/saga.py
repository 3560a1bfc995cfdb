"""
Minimal saga runner.

A saga is an ordered list of steps. Each step has a forward action and an
optional compensation that undoes it. Steps run in order; if one raises,
the compensations of every step that already finished run in reverse and
the original error is re-raised. A compensation that itself fails leaves the
system partially undone, so it is logged and surfaced as ``Unexpected``.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .errors import Unexpected

logger = logging.getLogger(__name__)


@dataclass
class SagaStep:
    name: str
    action: Callable[[], Any]
    compensation: Optional[Callable[[], Any]] = None


@dataclass
class Saga:
    name: str
    steps: list[SagaStep] = field(default_factory=list)

    def step(self, name: str, action: Callable[[], Any], compensation: Optional[Callable[[], Any]] = None) -> "Saga":
        self.steps.append(SagaStep(name, action, compensation))
        return self

    def run(self) -> list[Any]:
        done: list[SagaStep] = []
        results: list[Any] = []

        for step in self.steps:
            try:
                results.append(step.action())
            except Exception as exc:
                logger.info("saga %s: step %s failed (%s), compensating", self.name, step.name, exc)
                self._compensate(done, exc)
                raise
            done.append(step)

        return results

    def _compensate(self, done: list[SagaStep], cause: Exception) -> None:
        failed: list[str] = []
        first_exc: Optional[Exception] = None

        for step in reversed(done):
            if step.compensation is None:
                continue
            try:
                step.compensation()
            except Exception as comp_exc:
                logger.exception("saga %s: compensation for %s failed", self.name, step.name)
                failed.append(step.name)
                first_exc = first_exc or comp_exc

        if failed:
            raise Unexpected(
                f"{self.name} failed ({cause}) and could not undo: {', '.join(failed)}"
            ) from first_exc
