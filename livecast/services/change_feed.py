"""
In-process change notifications for persisted tables.

Writers publish after a successful commit; readers (the active session
watcher, SSE endpoints) subscribe per table. Delivery is best effort:
a missed notification is recovered by the periodic poll.
"""
import logging
import time
from collections import defaultdict
from typing import Any, Callable, Dict

logger = logging.getLogger(__name__)

LIVE_STREAMS = "live_streams"
RECORDED_STREAMS = "recorded_streams"

ChangeCallback = Callable[[dict], Any]


class RecordChangeFeed:

    def __init__(self):
        self._subscribers: Dict[str, Dict[object, ChangeCallback]] = defaultdict(dict)

    def subscribe(self, table: str, callback: ChangeCallback) -> Callable[[], None]:
        registration = object()
        self._subscribers[table][registration] = callback

        def unsubscribe() -> None:
            subs = self._subscribers.get(table, {})
            subs.pop(registration, None)
            if not subs and table in self._subscribers:
                del self._subscribers[table]

        return unsubscribe

    def publish(self, table: str, event: str, record: dict | None = None) -> None:
        change = {
            "table": table,
            "event": event,
            "record": record or {},
            "timestamp": time.time(),
        }
        for callback in list(self._subscribers.get(table, {}).values()):
            try:
                callback(change)
            except Exception:
                logger.exception(f"Change subscriber failed for {table}/{event}")

    def subscriber_count(self, table: str) -> int:
        return len(self._subscribers.get(table, {}))
