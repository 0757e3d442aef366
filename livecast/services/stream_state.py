"""
Session state store: which local media stream is available right now.

One instance per process, created by the DI container and injected into the
coordinator and the API layer. Listeners are called inline, in registration
order, every time the stream reference changes. The store never starts or
stops tracks; whoever acquired the stream keeps ownership of it.
"""
import logging
from typing import Callable, Dict, Optional

from livecast.media.stream import LocalMediaStream

logger = logging.getLogger(__name__)

StreamListener = Callable[[Optional[LocalMediaStream]], None]


class SessionStateStore:

    def __init__(self, name: str = "local"):
        self.name = name
        self._stream: Optional[LocalMediaStream] = None
        # registration token -> callback, in registration order
        self._listeners: Dict[object, StreamListener] = {}

    def set_stream(self, stream: Optional[LocalMediaStream]) -> None:
        logger.debug(f"[{self.name}] set stream: {stream is not None}")
        self._stream = stream
        # snapshot so listeners may unsubscribe while being notified
        for listener in list(self._listeners.values()):
            self._notify(listener, stream)

    def get_stream(self) -> Optional[LocalMediaStream]:
        return self._stream

    def clear_stream(self) -> None:
        self.set_stream(None)

    def add_listener(self, callback: StreamListener) -> Callable[[], None]:
        """
        Register a callback for stream changes.
        If a stream is already present the callback is invoked immediately
        with it. Returns an unsubscribe function that is safe to call twice.
        """
        registration = object()
        self._listeners[registration] = callback

        if self._stream is not None:
            self._notify(callback, self._stream)

        def unsubscribe() -> None:
            self._listeners.pop(registration, None)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def _notify(self, listener: StreamListener, stream: Optional[LocalMediaStream]) -> None:
        try:
            listener(stream)
        except Exception:
            logger.exception(f"[{self.name}] stream listener failed")
