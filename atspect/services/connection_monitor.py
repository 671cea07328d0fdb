import asyncio
import contextlib
import logging
from typing import Callable, Optional, Set

import requests

from atspect.core.config import HealthSettings, settings
from atspect.core.resilience import with_timeout

logger = logging.getLogger(__name__)

ONLINE = "online"
OFFLINE = "offline"

ConnectionListener = Callable[[str], None]


class ConnectionMonitor:
    """
    Tracks outbound connectivity and notifies listeners on transitions.

    "online" notifications are debounced so a flapping link does not storm
    listeners; "offline" is delivered immediately.
    """

    def __init__(self, config: HealthSettings = settings.health, http: Optional[requests.Session] = None):
        self.config = config
        self.http = http or requests.Session()
        self.is_online = True
        self._listeners: Set[ConnectionListener] = set()
        self._debounce: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None

    def add_listener(self, callback: ConnectionListener) -> Callable[[], None]:
        self._listeners.add(callback)
        return lambda: self._listeners.discard(callback)

    def notify_listeners(self, status: str) -> None:
        for callback in list(self._listeners):
            try:
                callback(status)
            except Exception as e:
                logger.error(f"Connection listener error: {e}")

    def _cancel_debounce(self) -> None:
        if self._debounce is not None:
            self._debounce.cancel()
            self._debounce = None

    def handle_online(self) -> None:
        self.is_online = True
        logger.info("Connection restored")
        self._cancel_debounce()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.notify_listeners(ONLINE)
            return
        self._debounce = loop.call_later(self.config.online_debounce, self._fire_online)

    def _fire_online(self) -> None:
        self._debounce = None
        self.notify_listeners(ONLINE)

    def handle_offline(self) -> None:
        self.is_online = False
        logger.warning("Connection lost")
        self._cancel_debounce()
        self.notify_listeners(OFFLINE)

    async def wait_for_connection(self, timeout: float = 30.0) -> bool:
        """Resolve once online; raises OperationTimeoutError after `timeout` seconds."""
        if self.is_online:
            return True

        restored = asyncio.get_running_loop().create_future()

        def _on_status(status: str) -> None:
            if status == ONLINE and not restored.done():
                restored.set_result(True)

        unsubscribe = self.add_listener(_on_status)
        try:
            return await with_timeout(restored, timeout, "Connection timeout")
        finally:
            unsubscribe()

    async def test_actual_connection(self) -> bool:
        """HEAD probe against a well-known URL; any response counts as connected."""
        timeout = self.config.probe_timeout
        try:
            await with_timeout(
                asyncio.to_thread(self.http.head, self.config.connectivity_url, timeout=timeout),
                timeout,
                "Connection test timeout",
            )
            return True
        except Exception as e:
            logger.warning(f"Actual connection test failed: {e}")
            return False

    async def _poll(self, interval: float) -> None:
        while True:
            reachable = await self.test_actual_connection()
            if reachable and not self.is_online:
                self.handle_online()
            elif not reachable and self.is_online:
                self.handle_offline()
            await asyncio.sleep(interval)

    def start(self, interval: Optional[float] = None) -> None:
        if self._task is not None and not self._task.done():
            return
        interval = self.config.connectivity_interval if interval is None else interval
        self._task = asyncio.create_task(self._poll(interval))
        logger.info(f"Connection monitor started (interval {interval:g}s)")

    async def stop(self) -> None:
        self._cancel_debounce()
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Connection monitor stopped")
