from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Outcome(str, Enum):
    SUCCEEDED = "succeeded"
    ALREADY_SATISFIED = "already_satisfied"
    FAILED = "failed"


@dataclass(frozen=True)
class ExecutionResult:
    step: str
    outcome: Outcome
    reason: str | None = None
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome is not Outcome.FAILED

    @classmethod
    def succeeded(cls, step: str, output: str = "") -> "ExecutionResult":
        return cls(step=step, outcome=Outcome.SUCCEEDED, output=output)

    @classmethod
    def already_satisfied(cls, step: str, reason: str | None = None, output: str = "") -> "ExecutionResult":
        return cls(step=step, outcome=Outcome.ALREADY_SATISFIED, reason=reason, output=output)

    @classmethod
    def failed(cls, step: str, reason: str, output: str = "") -> "ExecutionResult":
        return cls(step=step, outcome=Outcome.FAILED, reason=reason, output=output)


def combine(step: str, results: list[ExecutionResult]) -> ExecutionResult:
    """Fold several action results into one step result.

    The first failure wins. A step is already satisfied only when every
    action it ran was.
    """
    for result in results:
        if not result.ok:
            return ExecutionResult.failed(step, result.reason or "failed", output=result.output)
    output = "\n".join(result.output for result in results if result.output)
    if results and all(result.outcome is Outcome.ALREADY_SATISFIED for result in results):
        return ExecutionResult.already_satisfied(step, output=output)
    return ExecutionResult.succeeded(step, output=output)


@dataclass
class StageReport:
    stage: str
    results: list[ExecutionResult] = field(default_factory=list)
    failed_index: int | None = None

    @property
    def ok(self) -> bool:
        return self.failed_index is None

    @property
    def failed_step(self) -> str | None:
        if self.failed_index is None:
            return None
        return self.results[self.failed_index].step

    def add(self, result: ExecutionResult, *, optional: bool = False) -> None:
        self.results.append(result)
        if not result.ok and not optional and self.failed_index is None:
            self.failed_index = len(self.results) - 1
