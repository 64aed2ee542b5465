from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Generator

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    retry_if_result,
    stop_any,
    wait_fixed,
)

from kubeboot.core import events as ev
from kubeboot.core.errors import TransientError
from kubeboot.core.results import ExecutionResult

DEFAULT_MAX_TRANSIENT_ERRORS = 5


@dataclass(frozen=True)
class ReadinessCondition:
    name: str
    probe: Callable[[], bool]
    interval_s: float = 10.0
    description: str = ""


class _ConsecutiveTransientErrors:
    def __init__(self, limit: int):
        self.limit = limit
        self.count = 0

    def observe(self, failed: bool) -> None:
        self.count = self.count + 1 if failed else 0

    def __call__(self, retry_state: RetryCallState) -> bool:
        return self.count > self.limit


class _Deadline:
    def __init__(self, timeout_s: float | None, clock: Callable[[], float]):
        self.clock = clock
        self.expires_at = None if timeout_s is None else clock() + timeout_s

    @property
    def expired(self) -> bool:
        return self.expires_at is not None and self.clock() >= self.expires_at

    def __call__(self, retry_state: RetryCallState) -> bool:
        return self.expired


def poll_events(
    condition: ReadinessCondition,
    *,
    max_transient_errors: int = DEFAULT_MAX_TRANSIENT_ERRORS,
    timeout_s: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    command: str = "",
    stage_id: str = "",
) -> Generator[ev.KubebootEvent, None, ExecutionResult]:
    """Evaluate ``condition`` until it holds, yielding one event per attempt.

    Returns Succeeded on the first true evaluation. Up to
    ``max_transient_errors`` consecutive TransientErrors are absorbed; the
    next one ends the poll as Failed("unreachable"). With ``timeout_s`` set,
    an expired deadline ends it as Failed("timeout"). Any other exception
    raised by the probe propagates.
    """
    errors = _ConsecutiveTransientErrors(max_transient_errors)
    deadline = _Deadline(timeout_s, clock)
    retrying = Retrying(
        retry=retry_if_result(lambda ready: not ready) | retry_if_exception_type(TransientError),
        stop=stop_any(errors, deadline),
        wait=wait_fixed(condition.interval_s),
        sleep=sleep,
    )
    try:
        for attempt in retrying:
            ready = False
            with attempt:
                ready = bool(condition.probe())
            outcome = attempt.retry_state.outcome
            failed = outcome is not None and outcome.failed
            if not failed:
                attempt.retry_state.set_result(ready)
            errors.observe(failed)
            note = str(outcome.exception()) if failed and outcome is not None else None
            yield ev.PollAttempt(
                command=command,
                stage_id=stage_id,
                condition=condition.name,
                attempt=attempt.retry_state.attempt_number,
                ready=ready and not failed,
                transient_errors=errors.count,
                note=note,
            )
    except RetryError as exc:
        if errors.count > errors.limit:
            last = exc.last_attempt.exception()
            return ExecutionResult.failed(condition.name, f"unreachable: {last}")
        return ExecutionResult.failed(condition.name, f"timeout: {condition.name} not ready after {timeout_s}s")
    return ExecutionResult.succeeded(condition.name)


def wait_until_ready(condition: ReadinessCondition, **kwargs) -> ExecutionResult:
    """Blocking form of :func:`poll_events` that discards the attempt events."""
    gen = poll_events(condition, **kwargs)
    while True:
        try:
            next(gen)
        except StopIteration as stop:
            return stop.value
