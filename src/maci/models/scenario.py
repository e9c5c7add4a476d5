"""Scenario run results."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Optional


class StepOutcome(str, enum.Enum):
    PASS = "pass"
    FAIL = "fail"      # an assertion evaluated false
    ERROR = "error"    # the operation raised an unexpected failure kind
    SKIPPED = "skipped"


@dataclass(frozen=True)
class StepResult:
    step: str
    command: str
    outcome: StepOutcome
    detail: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    error_kind: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step,
            "command": self.command,
            "outcome": self.outcome.value,
            "detail": self.detail,
            "data": self.data,
            "error_kind": self.error_kind,
        }


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one suite run. Never mutated after the run completes."""
    description: str
    poll_id: str
    step_results: tuple[StepResult, ...]

    @property
    def passed(self) -> bool:
        return all(r.outcome == StepOutcome.PASS for r in self.step_results)

    def outcomes(self) -> dict[str, StepOutcome]:
        return {r.step: r.outcome for r in self.step_results}

    def counts(self) -> dict[str, int]:
        counts = {o.value: 0 for o in StepOutcome}
        for r in self.step_results:
            counts[r.outcome.value] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "poll_id": self.poll_id,
            "passed": self.passed,
            "counts": self.counts(),
            "steps": [r.to_dict() for r in self.step_results],
        }
