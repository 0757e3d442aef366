"""Camera/microphone acquisition through aiortc's MediaPlayer."""
import asyncio
import logging
from typing import Optional

from aiortc.contrib.media import MediaPlayer

from livecast.core.config import configs
from livecast.core.exceptions import AcquisitionError
from livecast.media.stream import LocalMediaStream

logger = logging.getLogger(__name__)


def _release(tracks) -> None:
    for track in tracks:
        track.stop()


def _close_player(player) -> None:
    _release(t for t in (player.video, player.audio) if t is not None)


class MediaCaptureDevice:
    """Opens the station's capture devices and hands back a LocalMediaStream."""

    def __init__(
        self,
        video_device: Optional[str] = None,
        video_format: Optional[str] = None,
        audio_device: Optional[str] = None,
        audio_format: Optional[str] = None,
        width: Optional[int] = None,
        height: Optional[int] = None,
        framerate: Optional[int] = None,
    ):
        self.video_device = video_device or configs.CAPTURE_VIDEO_DEVICE
        self.video_format = video_format or configs.CAPTURE_VIDEO_FORMAT
        self.audio_device = audio_device or configs.CAPTURE_AUDIO_DEVICE
        self.audio_format = audio_format or configs.CAPTURE_AUDIO_FORMAT
        self.width = width or configs.CAPTURE_WIDTH
        self.height = height or configs.CAPTURE_HEIGHT
        self.framerate = framerate or configs.CAPTURE_FRAMERATE

    def _open_video(self) -> MediaPlayer:
        options = {
            "video_size": f"{self.width}x{self.height}",
            "framerate": str(self.framerate),
        }
        return MediaPlayer(self.video_device, format=self.video_format, options=options)

    def _open_audio(self) -> MediaPlayer:
        return MediaPlayer(self.audio_device, format=self.audio_format)

    async def _open(self, opener) -> MediaPlayer:
        """Run a blocking open in a worker thread; a cancelled caller still gets the device closed."""
        opening = asyncio.ensure_future(asyncio.to_thread(opener))
        try:
            return await asyncio.shield(opening)
        except asyncio.CancelledError:
            # the thread cannot be interrupted, wait for it and close what it opened
            try:
                player = await opening
            except Exception as e:
                logger.debug(f"Capture open failed after cancellation: {e}")
            else:
                _close_player(player)
            raise

    async def acquire(self, video: bool = True, audio: bool = True) -> LocalMediaStream:
        """
        Open the requested devices.
        Raises AcquisitionError when any requested device cannot be opened;
        devices opened before the failure are released first.
        """
        wanted = [
            ("video", self._open_video, self.video_device),
            ("audio", self._open_audio, self.audio_device),
        ]
        players = []
        tracks = []
        try:
            for kind, opener, device in wanted:
                if not (video if kind == "video" else audio):
                    continue
                player = await self._open(opener)
                players.append(player)
                track = getattr(player, kind)
                if track is None:
                    raise AcquisitionError(f"No {kind} track on {device}")
                tracks.append(track)
                # a device may expose the other kind too; only one of each is kept
                unused = player.audio if kind == "video" else player.video
                if unused is not None:
                    unused.stop()
        except (AcquisitionError, asyncio.CancelledError):
            for player in players:
                _close_player(player)
            raise
        except Exception as e:
            for player in players:
                _close_player(player)
            logger.error(f"Capture acquisition failed: {e}")
            raise AcquisitionError(f"Unable to access camera/microphone: {e}") from e

        logger.info(f"Acquired capture: {[t.kind for t in tracks]}")
        return LocalMediaStream(tracks, source=players)
