"""
In-memory handle for a captured media stream (video + audio tracks).

The handle is owned by whoever acquired it. Observers may read the tracks
(to display, relay or record them) but only the owner calls ``stop()``.
"""
import logging
import uuid
from typing import Iterable, List, Optional

from aiortc.mediastreams import MediaStreamTrack

logger = logging.getLogger(__name__)


class LocalMediaStream:
    """A group of tracks that started and stop together."""

    def __init__(self, tracks: Iterable[MediaStreamTrack], stream_id: Optional[str] = None, source=None):
        self.id = stream_id or str(uuid.uuid4())
        self._tracks: List[MediaStreamTrack] = [t for t in tracks if t is not None]
        # underlying capture object (e.g. a MediaPlayer) kept alive with the stream
        self._source = source
        self._stopped = False

    def get_tracks(self) -> List[MediaStreamTrack]:
        return list(self._tracks)

    def get_video_tracks(self) -> List[MediaStreamTrack]:
        return [t for t in self._tracks if t.kind == "video"]

    def get_audio_tracks(self) -> List[MediaStreamTrack]:
        return [t for t in self._tracks if t.kind == "audio"]

    @property
    def active(self) -> bool:
        return not self._stopped and any(t.readyState == "live" for t in self._tracks)

    def stop(self) -> None:
        """Stop every track. Safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True
        for track in self._tracks:
            try:
                track.stop()
                logger.debug(f"Stopped {track.kind} track {track.id}")
            except Exception as e:
                logger.warning(f"Failed to stop {track.kind} track {track.id}: {e}")

    def __repr__(self) -> str:
        kinds = ",".join(t.kind for t in self._tracks)
        return f"<LocalMediaStream {self.id} tracks=[{kinds}] active={self.active}>"
