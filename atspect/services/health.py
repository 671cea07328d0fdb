import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from atspect.core.config import HealthSettings, settings
from atspect.core.resilience import with_timeout
from atspect.services.storage_service import StorageService

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Stops probing a failing dependency for `reset_timeout` seconds after
    `failure_threshold` consecutive failures. Once the window elapses a
    single probe is let through; its outcome closes or re-opens the circuit.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self.failures = 0
        self.state = CircuitState.CLOSED
        self.last_failure: Optional[float] = None
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def allow_request(self) -> bool:
        if self.state == CircuitState.CLOSED:
            return True
        if self.state == CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                return False
            self._probe_in_flight = True
            return True
        if self._clock() - self._opened_at >= self.reset_timeout:
            logger.info(f"{self.name} circuit half-open, letting one probe through")
            self.state = CircuitState.HALF_OPEN
            self._probe_in_flight = True
            return True
        return False

    def record_success(self) -> None:
        if self.state != CircuitState.CLOSED:
            logger.info(f"{self.name} circuit closed")
        self.failures = 0
        self.state = CircuitState.CLOSED
        self._opened_at = None
        self._probe_in_flight = False

    def record_failure(self) -> None:
        self.failures += 1
        self.last_failure = self._clock()
        self._probe_in_flight = False
        if self.state == CircuitState.HALF_OPEN or self.failures >= self.failure_threshold:
            if self.state != CircuitState.OPEN:
                logger.warning(f"{self.name} circuit opened after {self.failures} failure(s)")
            self.state = CircuitState.OPEN
            self._opened_at = self.last_failure

    def abandon_probe(self) -> None:
        """Release the half-open slot when a probe is cancelled before it settles."""
        self._probe_in_flight = False

    def reset(self) -> None:
        self.failures = 0
        self.state = CircuitState.CLOSED
        self.last_failure = None
        self._opened_at = None
        self._probe_in_flight = False
        logger.info(f"{self.name} circuit manually reset")

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "is_open": self.is_open,
            "failures": self.failures,
            "threshold": self.failure_threshold,
            "reset_timeout": self.reset_timeout,
            "seconds_since_last_failure": (
                round(self._clock() - self.last_failure, 3) if self.last_failure is not None else None
            ),
        }


@dataclass
class HealthReport:
    database: bool
    storage: bool
    overall: bool
    details: Dict[str, Dict[str, Any]] = field(default_factory=dict)


class HealthCheckService:
    def __init__(
        self,
        session_factory: sessionmaker,
        storage: StorageService,
        config: HealthSettings = settings.health,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session_factory = session_factory
        self.storage = storage
        self.config = config
        self.breakers: Dict[str, CircuitBreaker] = {
            name: CircuitBreaker(name, config.failure_threshold, config.reset_timeout, clock)
            for name in ("database", "storage")
        }
        self._details: Dict[str, Dict[str, Any]] = {}

    def _ping_database(self) -> None:
        db = self.session_factory()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()

    async def _probe(self, name: str, probe: Callable[[], Awaitable[Any]], message: str) -> bool:
        breaker = self.breakers[name]
        if not breaker.allow_request():
            logger.debug(f"{name} circuit is open, skipping health check")
            self._details[name] = {"healthy": False, "skipped": True, "circuit": breaker.state.value}
            return False

        started = time.perf_counter()
        try:
            await with_timeout(probe(), self.config.probe_timeout, message)
        except asyncio.CancelledError:
            breaker.abandon_probe()
            raise
        except Exception as e:
            logger.error(f"{name} health check failed: {e}")
            breaker.record_failure()
            self._details[name] = {"healthy": False, "error": str(e), "circuit": breaker.state.value}
            return False

        elapsed_ms = round((time.perf_counter() - started) * 1000)
        logger.info(f"{name} connection healthy ({elapsed_ms}ms)")
        breaker.record_success()
        self._details[name] = {"healthy": True, "response_time_ms": elapsed_ms, "circuit": breaker.state.value}
        return True

    async def test_database_connection(self) -> bool:
        return await self._probe(
            "database",
            lambda: asyncio.to_thread(self._ping_database),
            "Database health check timed out",
        )

    async def test_storage_connection(self) -> bool:
        return await self._probe(
            "storage",
            lambda: self.storage.list_buckets(timeout=self.config.probe_timeout),
            "Storage health check timed out",
        )

    async def test_all_connections(self) -> HealthReport:
        combined = self.config.combined_timeout
        results = await asyncio.gather(
            with_timeout(self.test_database_connection(), combined, "Database health check timeout"),
            with_timeout(self.test_storage_connection(), combined, "Storage health check timeout"),
            return_exceptions=True,
        )
        database, storage = (result is True for result in results)
        details = {name: dict(self._details.get(name, {})) for name in self.breakers}
        for name, result in zip(("database", "storage"), results):
            if isinstance(result, BaseException):
                details[name] = {"healthy": False, "error": str(result)}
        return HealthReport(database=database, storage=storage, overall=database and storage, details=details)

    def reset_circuit_breakers(self) -> None:
        for breaker in self.breakers.values():
            breaker.reset()

    def circuit_status(self) -> Dict[str, Dict[str, Any]]:
        return {name: breaker.status() for name, breaker in self.breakers.items()}
