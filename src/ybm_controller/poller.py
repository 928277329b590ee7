"""Operation poller: drives an accepted asynchronous mutation to settlement.

State machine:

    SUBMITTED -> POLLING -> {SUCCEEDED, FAILED, TIMED_OUT}

POLLING is re-entered on every interval tick. The check callback reports
PENDING, SUCCEEDED or FAILED; raising from it is classified:

- Retryable errors are swallowed and the check is retried on the next tick.
- Any other error aborts the operation with that error unchanged.

Reaching the deadline, or a set cancellation event, ends the operation as
TIMED_OUT and raises OperationTimeout, which is deliberately distinct from
OperationFailed: a timed-out mutation may still complete out-of-band.

This is the only place in the engine that suspends. Both the clock and the
sleep are injectable so tests can drive the state machine without waiting.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import NoReturn

from .classifier import classify_exception
from .config import DEFAULT_OPERATION_TIMEOUT_SECONDS, DEFAULT_POLL_INTERVAL_SECONDS
from .errors import OperationFailed, OperationTimeout

logger = logging.getLogger(__name__)

# Task listing returns no task for a freshly submitted edit for a short while
TASK_NOT_FOUND = "TASK_NOT_FOUND"
TASK_IN_PROGRESS = "IN_PROGRESS"
TASK_SUCCEEDED = "SUCCEEDED"
TASK_FAILED = "FAILED"
MAX_TASK_NOT_FOUND_RETRIES = 6


class OperationState(str, Enum):
    SUBMITTED = "Submitted"
    POLLING = "Polling"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"


class PollStatus(str, Enum):
    """What a single status check observed."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed-interval polling with an overall deadline."""

    interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    max_duration_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS

    def with_deadline(self, max_duration_seconds: float) -> RetryPolicy:
        """Same interval, a different (usually shorter) deadline."""
        return RetryPolicy(
            interval_seconds=self.interval_seconds,
            max_duration_seconds=max_duration_seconds,
        )


@dataclass
class Operation:
    """One in-flight asynchronous mutation and its polling lifecycle."""

    resource_id: str
    description: str
    policy: RetryPolicy
    timeout_message: str | None = None
    failure_message: str | None = None
    state: OperationState = OperationState.SUBMITTED
    attempts: int = 0
    last_error: str | None = None
    started_at: float = 0.0
    history: list[OperationState] = field(default_factory=list)

    def transition(self, state: OperationState) -> None:
        self.state = state
        self.history.append(state)


StatusCheck = Callable[[], Awaitable[PollStatus]]


class OperationPoller:
    """Polls a status check until a terminal state, the deadline or cancellation.

    Example:
        poller = OperationPoller(cancel_event=shutdown_event)
        await poller.wait(Operation("c-1", "cluster create", policy), check)
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        cancel_event: asyncio.Event | None = None,
        sink: logging.Logger | None = None,
    ) -> None:
        """Initialize poller.

        Args:
            clock: Monotonic clock in seconds.
            sleep: Coroutine sleeping for the given seconds. When None the
                poller waits on the cancellation event so an interrupt ends the
                wait immediately.
            cancel_event: External cancellation signal.
            sink: Logger receiving progress events.
        """
        self._clock = clock
        self._sleep = sleep
        self._cancel_event = cancel_event or asyncio.Event()
        self._sink = sink or logger

    @property
    def cancel_event(self) -> asyncio.Event:
        return self._cancel_event

    def cancel(self) -> None:
        """Short-circuit every wait in progress."""
        self._cancel_event.set()

    async def wait(self, operation: Operation, check: StatusCheck) -> Operation:
        """Poll until the operation settles.

        Returns:
            The operation in SUCCEEDED state.

        Raises:
            OperationFailed: The check reported a failed terminal state.
            OperationTimeout: Deadline reached or cancellation requested.
            ReconcileError: A non-retryable error raised by the check.
        """
        operation.started_at = self._clock()
        deadline = operation.started_at + operation.policy.max_duration_seconds
        operation.transition(OperationState.POLLING)

        while True:
            if self._cancel_event.is_set():
                self._time_out(operation, cancelled=True)

            operation.attempts += 1
            status = await self._check_once(operation, check)
            match status:
                case PollStatus.SUCCEEDED:
                    operation.transition(OperationState.SUCCEEDED)
                    return operation
                case PollStatus.FAILED:
                    operation.transition(OperationState.FAILED)
                    raise OperationFailed(
                        operation.failure_message or f"{operation.description} operation failed"
                    )

            now = self._clock()
            if now >= deadline:
                self._time_out(operation, cancelled=False)

            self._sink.info(
                "Operation polling",
                extra={
                    "operation": operation.description,
                    "resource_id": operation.resource_id,
                    "attempt": operation.attempts,
                    "elapsed_seconds": round(now - operation.started_at, 1),
                },
            )
            # The last tick is shortened so a final check lands on the deadline
            await self._pause(min(operation.policy.interval_seconds, deadline - now))

    async def _check_once(self, operation: Operation, check: StatusCheck) -> PollStatus:
        try:
            return await check()
        except Exception as e:
            classified = classify_exception(e)
            if not classified.retryable:
                operation.transition(OperationState.FAILED)
                raise
            operation.last_error = classified.message
            self._sink.warning(
                "Retryable error while polling",
                extra={
                    "operation": operation.description,
                    "resource_id": operation.resource_id,
                    "attempt": operation.attempts,
                    "error": classified.message,
                },
            )
            return PollStatus.PENDING

    async def _pause(self, seconds: float) -> None:
        if self._sleep is not None:
            await self._sleep(seconds)
            return
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=seconds)
        except TimeoutError:
            pass

    def _time_out(self, operation: Operation, *, cancelled: bool) -> NoReturn:
        operation.transition(OperationState.TIMED_OUT)
        extra: dict[str, object] = {
            "operation": operation.description,
            "resource_id": operation.resource_id,
            "attempt": operation.attempts,
            "cancelled": cancelled,
        }
        if operation.last_error:
            extra["last_error"] = operation.last_error
        self._sink.error("Operation did not settle", extra=extra)
        if cancelled:
            raise OperationTimeout(
                f"Waiting for {operation.description} was cancelled; "
                "the operation may still complete."
            )
        message = (
            operation.timeout_message
            or f"The operation timed out waiting for {operation.description}."
        )
        if operation.last_error:
            message = f"{message} Last error: {operation.last_error}"
        raise OperationTimeout(message)


def task_status(state: str) -> PollStatus:
    """Map a task state to a poll status."""
    match state:
        case "SUCCEEDED":
            return PollStatus.SUCCEEDED
        case "FAILED":
            return PollStatus.FAILED
        case _:
            return PollStatus.PENDING


class EditTaskCheck:
    """Status check for tasks that an edit may or may not spawn.

    A missing task is tolerated MAX_TASK_NOT_FOUND_RETRIES times and then read
    as "no task needed". Likewise, when the first task observed is not
    IN_PROGRESS it belongs to an earlier edit and this edit spawned none.
    """

    def __init__(self, fetch_state: Callable[[], Awaitable[str]]) -> None:
        self._fetch_state = fetch_state
        self._not_found = 0
        self._first = True

    async def __call__(self) -> PollStatus:
        state = await self._fetch_state()
        if state == TASK_NOT_FOUND:
            self._not_found += 1
            if self._not_found > MAX_TASK_NOT_FOUND_RETRIES:
                return PollStatus.SUCCEEDED
            return PollStatus.PENDING
        if self._first:
            self._first = False
            if state != TASK_IN_PROGRESS:
                return PollStatus.SUCCEEDED
        return task_status(state)
