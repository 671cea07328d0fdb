import asyncio
import threading
import time

import pytest

from atspect.core.exceptions import AppException, OperationTimeoutError, TransportError, ValidationError
from atspect.core.resilience import (
    ProgressTracker,
    fire_and_forget,
    is_network_error,
    is_retryable_error,
    retry_with_backoff,
    run_best_effort,
    run_in_thread,
    with_timeout,
)

from tests.conftest import no_sleep


def test_retry_calls_retryable_operation_max_attempts_times():
    """A retryable failure is attempted exactly max_attempts times, then re-raised."""
    calls = []

    async def op(attempt):
        calls.append(attempt)
        raise TransportError("Network connection failed")

    with pytest.raises(TransportError):
        asyncio.run(retry_with_backoff(op, 3, sleep=no_sleep))
    assert calls == [1, 2, 3]


def test_retry_stops_on_non_retryable_error():
    """Test a non-retryable error stops retries."""
    calls = []

    async def op(attempt):
        calls.append(attempt)
        raise ValidationError("bad input")

    with pytest.raises(ValidationError):
        asyncio.run(retry_with_backoff(op, 3, sleep=no_sleep))
    assert calls == [1]


def test_retry_returns_first_success_and_reports_retries():
    """Test retry returns the first success and reports each retry."""
    retries = []
    delays = []

    async def record_sleep(delay):
        delays.append(delay)

    async def op(attempt):
        if attempt < 3:
            raise ConnectionError("connection reset")
        return "stored"

    result = asyncio.run(
        retry_with_backoff(
            op,
            3,
            base_delay=1.0,
            max_delay=10.0,
            factor=2.0,
            jitter=0.0,
            on_retry=lambda attempt, error, delay: retries.append((attempt, delay)),
            sleep=record_sleep,
        )
    )
    assert result == "stored"
    assert retries == [(1, 1.0), (2, 2.0)]
    assert delays == [1.0, 2.0]


def test_retry_delay_is_capped():
    """Test backoff delays are capped."""
    delays = []

    async def record_sleep(delay):
        delays.append(delay)

    async def op(attempt):
        raise TimeoutError("gateway timeout")

    with pytest.raises(TimeoutError):
        asyncio.run(
            retry_with_backoff(op, 4, base_delay=4.0, max_delay=5.0, factor=2.0, jitter=0.0, sleep=record_sleep)
        )
    assert delays == [4.0, 5.0, 5.0]


@pytest.mark.parametrize(
    "error, expected",
    [
        (TransportError("Network connection failed"), True),
        (OperationTimeoutError(), True),
        (ValidationError("File must be a PDF"), False),
        (AppException("Service temporarily unavailable"), True),
        (AppException("Duplicate key"), False),
        (ValueError("Bad Gateway from upstream"), True),
        (ValueError("permission denied"), False),
    ],
)
def test_is_retryable_error(error, expected):
    """Test error classification for retries."""
    assert is_retryable_error(error) is expected


def test_is_network_error():
    """Test network error detection."""
    assert is_network_error(ConnectionError("boom"))
    assert is_network_error(ValueError("Failed to fetch"))
    assert not is_network_error(ValueError("File must be a PDF"))


def test_with_timeout_raises_operation_timeout():
    """Test a slow call times out with an operation timeout."""
    async def slow():
        await asyncio.sleep(1)

    with pytest.raises(OperationTimeoutError) as exc_info:
        asyncio.run(with_timeout(slow(), 0.01, "Upload timeout after 0.01s"))
    assert exc_info.value.message == "Upload timeout after 0.01s"


def test_with_timeout_returns_result():
    """Test a fast call returns its result."""
    async def fast():
        return 42

    assert asyncio.run(with_timeout(fast(), 1.0)) == 42


def test_progress_tracker_is_monotonic_and_bounded():
    """Test progress never goes back or past the total."""
    seen = []
    tracker = ProgressTracker(7, seen.append)

    tracker.update(3, "Uploading PDF file...")
    tracker.update(1, "stale update")
    assert tracker.step == 3
    tracker.update(99, "overflow")
    assert tracker.step == 7
    assert tracker.current.progress_percent == 100
    assert [u.step for u in seen] == [3, 3, 7]


def test_progress_tracker_increment_and_complete():
    """Test progress increment and completion."""
    tracker = ProgressTracker(4)
    tracker.increment("one")
    update = tracker.increment("two")
    assert update.step == 2
    assert update.progress_percent == 50
    done = tracker.complete()
    assert done.completed is True
    assert done.step == 4


def test_progress_tracker_rejects_non_positive_total():
    """Test a tracker needs a positive total."""
    with pytest.raises(ValueError):
        ProgressTracker(0)


def test_run_best_effort_never_raises():
    """Test best-effort runs log failures instead of raising."""
    async def ok():
        return "ok"

    async def broken():
        raise RuntimeError("cleanup failed")

    results = asyncio.run(run_best_effort([ok(), broken()], "Cleanup"))
    assert results[0] == "ok"
    assert isinstance(results[1], RuntimeError)


def test_fire_and_forget_tracks_task_until_done():
    """Test background tasks stay referenced until done."""
    registry = set()

    async def main():
        async def work():
            await asyncio.sleep(0)
            raise RuntimeError("background failure")

        task = fire_and_forget(work(), "Background job", registry=registry)
        assert task in registry
        await asyncio.gather(task, return_exceptions=True)
        await asyncio.sleep(0)

    asyncio.run(main())
    assert registry == set()


def test_run_in_thread_returns_result():
    """Test a blocking call runs on a worker thread and returns its value."""
    assert asyncio.run(run_in_thread(lambda a, b: a + b, 2, 3)) == 5


def test_cancelled_thread_call_finishes_before_cancel_propagates():
    """Test cancellation waits until the worker thread has completed its write."""
    started = threading.Event()
    writes = []

    def slow_write():
        started.set()
        time.sleep(0.2)
        writes.append("landed")

    async def scenario():
        task = asyncio.ensure_future(run_in_thread(slow_write, settle_timeout=5.0))
        while not started.is_set():
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return list(writes)

    assert asyncio.run(scenario()) == ["landed"]
