"""
Active session watcher.

Keeps an up-to-date view of "is anybody live right now" for viewers and
SSE clients. Two triggers feed the same reconcile():

    interval  -> every ACTIVE_SESSION_POLL_SECONDS
    push      -> any live_streams change published on the change feed

reconcile() is idempotent: it reads the latest active record and notifies
listeners only when the observed session differs from the last one.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Tuple

from livecast.core.config import configs
from livecast.models.orm.live_stream import LiveStream
from livecast.services.change_feed import LIVE_STREAMS, RecordChangeFeed

logger = logging.getLogger(__name__)

SessionListener = Callable[[Optional[LiveStream]], Any]


def _session_key(record: Optional[LiveStream]) -> Optional[Tuple[int, bool]]:
    if record is None:
        return None
    return (record.id, bool(record.is_active))


class ActiveSessionWatcher:

    def __init__(self, coordinator, change_feed: RecordChangeFeed, interval: Optional[float] = None):
        self.coordinator = coordinator
        self.change_feed = change_feed
        self.interval = interval if interval is not None else configs.ACTIVE_SESSION_POLL_SECONDS
        self._current: Optional[LiveStream] = None
        self._current_key: Optional[Tuple[int, bool]] = None
        self._listeners: Dict[object, SessionListener] = {}
        self._lock = asyncio.Lock()
        self._poll_task: Optional[asyncio.Task] = None
        self._pushed: set = set()
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def current(self) -> Optional[LiveStream]:
        return self._current

    @property
    def running(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def add_listener(self, callback: SessionListener) -> Callable[[], None]:
        registration = object()
        self._listeners[registration] = callback

        def unsubscribe() -> None:
            self._listeners.pop(registration, None)

        return unsubscribe

    # ── the one reconcile ────────────────────────────────────────────

    async def reconcile(self) -> bool:
        """Refresh the active session. Returns True when it changed."""
        async with self._lock:
            record = await self.coordinator.poll_active_session()
            key = _session_key(record)
            if key == self._current_key:
                return False
            previous = self._current_key
            self._current = record
            self._current_key = key
            logger.info(f"[watcher] active session changed: {previous} -> {key}")

        for listener in list(self._listeners.values()):
            try:
                result = listener(record)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("[watcher] session listener failed")
        return True

    # ── triggers ─────────────────────────────────────────────────────

    async def start(self) -> None:
        if self.running:
            return
        self._unsubscribe = self.change_feed.subscribe(LIVE_STREAMS, self._on_change)
        self._poll_task = asyncio.create_task(self._poll_loop(), name="active-session-poll")
        logger.info(f"[watcher] started (interval={self.interval}s)")

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        tasks = list(self._pushed)
        if self._poll_task is not None:
            tasks.append(self._poll_task)
            self._poll_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._pushed.clear()
        logger.info("[watcher] stopped")

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.reconcile()
            except Exception as e:
                logger.error(f"[watcher] reconcile failed: {e}")
            await asyncio.sleep(self.interval)

    def _on_change(self, change: dict) -> None:
        logger.debug(f"[watcher] {change['table']} {change['event']} pushed")
        task = asyncio.ensure_future(self._reconcile_quietly())
        self._pushed.add(task)
        task.add_done_callback(self._pushed.discard)

    async def _reconcile_quietly(self) -> None:
        try:
            await self.reconcile()
        except Exception as e:
            logger.error(f"[watcher] pushed reconcile failed: {e}")
