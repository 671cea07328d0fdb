"""
Retry, timeout and best-effort helpers shared by every remote call.

All helpers are asyncio-native: blocking SDK calls are pushed to a worker
thread by the callers and awaited here, so timeouts and cancellation stay
responsive on the event loop.
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Set, TypeVar

import requests
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from atspect.core.exceptions import AppException, OperationTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

NETWORK_KEYWORDS = ("network", "fetch", "timeout", "connection", "offline", "unreachable")

RETRYABLE_KEYWORDS = (
    "timeout",
    "network",
    "fetch",
    "connection",
    "service temporarily unavailable",
    "internal server error",
    "bad gateway",
    "service unavailable",
    "gateway timeout",
)

_TRANSPORT_EXCEPTIONS = (requests.ConnectionError, requests.Timeout, ConnectionError, TimeoutError)

# Keeps fire-and-forget tasks referenced until they finish.
_background_tasks: Set[asyncio.Task] = set()


def is_network_error(exc: BaseException) -> bool:
    if isinstance(exc, _TRANSPORT_EXCEPTIONS):
        return True
    if isinstance(exc, AppException) and exc.error_code in {"CONNECTION_FAILED", "OPERATION_TIMEOUT"}:
        return True
    message = str(exc).lower()
    return any(keyword in message for keyword in NETWORK_KEYWORDS)


def is_retryable_error(exc: BaseException) -> bool:
    """
    Transient failures (transport, timeouts, 5xx) are retryable; validation,
    permission, not-found and conflict failures are terminal.
    """
    if isinstance(exc, asyncio.CancelledError):
        return False
    if isinstance(exc, AppException) and exc.retryable is not None:
        return exc.retryable
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        status = exc.response.status_code
        return status >= 500 or status == 429
    if isinstance(exc, _TRANSPORT_EXCEPTIONS):
        return True
    message = str(exc).lower()
    return any(keyword in message for keyword in RETRYABLE_KEYWORDS)


async def retry_with_backoff(
    operation: Callable[[int], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    factor: float = 2.0,
    *,
    jitter: float = 1.0,
    retry_if: Callable[[BaseException], bool] = is_retryable_error,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Await ``operation(attempt_number)`` up to ``max_attempts`` times.

    Between attempts waits ``min(base_delay * factor**(n-1) + U(0, jitter), max_delay)``.
    The last error is re-raised unchanged; errors rejected by ``retry_if`` are
    re-raised on the spot.
    """

    def _backoff(retry_state: RetryCallState) -> float:
        exponent = retry_state.attempt_number - 1
        return min(base_delay * factor ** exponent + random.uniform(0, jitter), max_delay)

    def _before_sleep(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception()
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            f"Attempt {retry_state.attempt_number}/{max_attempts} failed, retrying in {delay:.2f}s: {error}"
        )
        if on_retry:
            on_retry(retry_state.attempt_number, error, delay)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=_backoff,
        retry=retry_if_exception(retry_if),
        before_sleep=_before_sleep,
        reraise=True,
        sleep=sleep,
    )
    async for attempt in retrying:
        with attempt:
            return await operation(attempt.retry_state.attempt_number)


async def run_in_thread(
    fn: Callable[..., T],
    *args: Any,
    settle_timeout: Optional[float] = None,
    **kwargs: Any,
) -> T:
    """
    Run a blocking call on a worker thread.

    A thread cannot be interrupted, so when the caller is cancelled the call
    keeps going. Cancellation is held back until the thread has finished (or
    ``settle_timeout`` elapsed) so whatever it wrote has landed before the
    caller starts cleaning up.
    """
    future = asyncio.ensure_future(asyncio.to_thread(fn, *args, **kwargs))
    try:
        return await asyncio.shield(future)
    except asyncio.CancelledError:
        if not future.done():
            logger.debug(f"Cancelled while {getattr(fn, '__name__', 'call')} is running; waiting for it to finish")
            await asyncio.wait({future}, timeout=settle_timeout)
        if future.done() and not future.cancelled():
            # Consumed so an abandoned failure is not reported as never retrieved.
            future.exception()
        raise


async def with_timeout(awaitable: Awaitable[T], seconds: float, message: str = "Operation timed out") -> T:
    """Race ``awaitable`` against a timer; the timer is always disposed."""
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as exc:
        raise OperationTimeoutError(message) from exc


@dataclass(frozen=True)
class ProgressUpdate:
    step: int
    total_steps: int
    progress_percent: int
    message: str
    completed: bool = False


class ProgressTracker:
    def __init__(self, total_steps: int, on_progress: Optional[Callable[[ProgressUpdate], None]] = None):
        if total_steps <= 0:
            raise ValueError("total_steps must be positive")
        self.total_steps = total_steps
        self._on_progress = on_progress
        self._step = 0
        self._last: Optional[ProgressUpdate] = None

    @property
    def step(self) -> int:
        return self._step

    @property
    def current(self) -> ProgressUpdate:
        return self._last or ProgressUpdate(0, self.total_steps, 0, "")

    def update(self, step: int, message: str, completed: bool = False) -> ProgressUpdate:
        # Monotonic and bounded by total_steps.
        self._step = max(self._step, min(step, self.total_steps))
        update = ProgressUpdate(
            step=self._step,
            total_steps=self.total_steps,
            progress_percent=round(self._step / self.total_steps * 100),
            message=message,
            completed=completed,
        )
        self._last = update
        if self._on_progress:
            self._on_progress(update)
        return update

    def increment(self, message: str) -> ProgressUpdate:
        return self.update(self._step + 1, message)

    def complete(self, message: str = "Complete") -> ProgressUpdate:
        return self.update(self.total_steps, message, completed=True)


async def run_best_effort(awaitables: Iterable[Awaitable[Any]], label: str) -> List[Any]:
    """Run every awaitable to completion; failures are logged, never raised."""
    pending = list(awaitables)
    if not pending:
        return []
    results = await asyncio.gather(*pending, return_exceptions=True)
    failures = [r for r in results if isinstance(r, BaseException)]
    for failure in failures:
        logger.error(f"{label} failed: {failure}")
    logger.info(f"{label} completed ({len(results) - len(failures)}/{len(results)} succeeded)")
    return results


def fire_and_forget(
    awaitable: Awaitable[Any],
    label: str,
    registry: Optional[Set[asyncio.Task]] = None,
) -> asyncio.Task:
    """Spawn a background task whose failure only reaches the log."""
    tasks = registry if registry is not None else _background_tasks
    task = asyncio.ensure_future(awaitable)
    tasks.add(task)

    def _done(finished: asyncio.Task) -> None:
        tasks.discard(finished)
        if finished.cancelled():
            logger.warning(f"{label} cancelled")
            return
        error = finished.exception()
        if error is not None:
            logger.warning(f"{label} failed: {error}")

    task.add_done_callback(_done)
    return task
