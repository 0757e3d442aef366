"""Small PyAV helpers used when publishing a recording: duration and a poster frame."""
import io
import logging
from fractions import Fraction
from typing import Optional

import av
from av.error import FFmpegError

logger = logging.getLogger(__name__)


def probe_duration(data: bytes) -> Optional[float]:
    """Duration in seconds of an in-memory recording, or None if unknown."""
    try:
        with av.open(io.BytesIO(data), mode="r") as container:
            if container.duration is not None:
                return round(container.duration / av.time_base, 3)
            for stream in container.streams:
                if stream.duration is not None and stream.time_base is not None:
                    return round(float(stream.duration * stream.time_base), 3)
    except (FFmpegError, ValueError) as e:
        logger.warning(f"Could not probe recording duration: {e}")
    return None


def extract_thumbnail(data: bytes) -> Optional[bytes]:
    """JPEG bytes of the first decodable video frame, or None."""
    try:
        with av.open(io.BytesIO(data), mode="r") as container:
            if not container.streams.video:
                return None
            for frame in container.decode(video=0):
                encoder = av.CodecContext.create("mjpeg", "w")
                encoder.width = frame.width
                encoder.height = frame.height
                encoder.pix_fmt = "yuvj420p"
                encoder.time_base = Fraction(1, 30)
                packets = encoder.encode(frame.reformat(format="yuvj420p"))
                packets += encoder.encode(None)
                return b"".join(bytes(p) for p in packets)
    except (FFmpegError, ValueError) as e:
        logger.warning(f"Could not extract thumbnail: {e}")
    return None
