"""
In-memory stand-ins for the media and I/O edges: peer connections, capture
devices, the recorder muxer, blob storage and an unreachable database.

They mimic the parts of the aiortc / storage surface the services use, so
the coordinator can run start -> join -> stop end to end without devices,
network or ffmpeg.
"""
import asyncio
import inspect
import uuid
from collections import defaultdict
from typing import List, Optional

from aiortc import RTCSessionDescription
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from livecast.core.db import create_session_factory, create_tables
from livecast.core.exceptions import AcquisitionError
from livecast.media.stream import LocalMediaStream
from livecast.services.storage_service import UploadResult


class FakeTrack:

    def __init__(self, kind: str, source: Optional["FakeTrack"] = None):
        self.kind = kind
        self.id = str(uuid.uuid4())
        self.readyState = "live"
        self.source = source

    def stop(self) -> None:
        self.readyState = "ended"


class FakeRelay:
    """MediaRelay look-alike: every subscriber gets its own proxy track."""

    def __init__(self):
        self.proxies: List[FakeTrack] = []

    def subscribe(self, track, buffered: bool = True) -> FakeTrack:
        proxy = FakeTrack(track.kind, source=track)
        self.proxies.append(proxy)
        return proxy


class FakePeerConnection:
    """
    Offer/answer without ICE. The offer lists the kinds of the attached
    tracks; applying it on the answering side emits one "track" per kind.
    Both sides report "connected" once the answer is applied.
    """

    def __init__(self, configuration=None, fail_offer: bool = False, fail_ice: bool = False):
        self.configuration = configuration
        self.fail_offer = fail_offer
        self.fail_ice = fail_ice
        self.id = uuid.uuid4().hex[:8]
        self.senders: List[FakeTrack] = []
        self.candidates: list = []
        self.localDescription: Optional[RTCSessionDescription] = None
        self.remoteDescription: Optional[RTCSessionDescription] = None
        self.connectionState = "new"
        self.closed = False
        self._handlers = defaultdict(list)

    def on(self, event: str, handler=None):
        if handler is None:
            def decorator(f):
                self._handlers[event].append(f)
                return f
            return decorator
        self._handlers[event].append(handler)
        return handler

    def emit(self, event: str, *args) -> None:
        for handler in list(self._handlers[event]):
            result = handler(*args)
            if inspect.isawaitable(result):
                asyncio.ensure_future(result)

    def addTrack(self, track) -> None:
        if self.closed:
            raise RuntimeError("RTCPeerConnection is closed")
        self.senders.append(track)

    async def createOffer(self) -> RTCSessionDescription:
        if self.fail_offer:
            raise RuntimeError("offer failed")
        kinds = ",".join(t.kind for t in self.senders)
        return RTCSessionDescription(sdp=f"v=0 fake-offer {self.id} kinds={kinds}", type="offer")

    async def createAnswer(self) -> RTCSessionDescription:
        if self.remoteDescription is None or self.remoteDescription.type != "offer":
            raise RuntimeError("no remote offer to answer")
        return RTCSessionDescription(sdp=f"v=0 fake-answer {self.id}", type="answer")

    async def setLocalDescription(self, description: RTCSessionDescription) -> None:
        self.localDescription = description
        if description.type == "answer":
            self._set_connection_state("connected")

    async def setRemoteDescription(self, description: RTCSessionDescription) -> None:
        self.remoteDescription = description
        if description.type == "offer":
            for kind in _offered_kinds(description.sdp):
                self.emit("track", FakeTrack(kind))
        elif description.type == "answer":
            self._set_connection_state("connected")

    async def addIceCandidate(self, candidate) -> None:
        if self.fail_ice:
            raise RuntimeError("bad candidate")
        self.candidates.append(candidate)

    async def close(self) -> None:
        self.closed = True
        self.connectionState = "closed"

    def _set_connection_state(self, state: str) -> None:
        self.connectionState = state
        self.emit("connectionstatechange")


def _offered_kinds(sdp: str) -> List[str]:
    for part in sdp.split():
        if part.startswith("kinds="):
            return [k for k in part[len("kinds="):].split(",") if k]
    return []


class FakeConnectionFactory:
    """Callable in place of RTCPeerConnection; keeps every connection it made."""

    def __init__(self, fail_offer: bool = False, fail_ice: bool = False):
        self.fail_offer = fail_offer
        self.fail_ice = fail_ice
        self.created: List[FakePeerConnection] = []

    def __call__(self, configuration=None) -> FakePeerConnection:
        pc = FakePeerConnection(configuration, fail_offer=self.fail_offer, fail_ice=self.fail_ice)
        self.created.append(pc)
        return pc


class FakeCaptureDevice:

    def __init__(self, fail: bool = False, delay: float = 0.0):
        self.fail = fail
        self.delay = delay
        self.acquisitions = 0
        self.streams: List[LocalMediaStream] = []

    async def acquire(self, video: bool = True, audio: bool = True) -> LocalMediaStream:
        self.acquisitions += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise AcquisitionError("Unable to access camera/microphone: permission denied")
        kinds = [k for k, wanted in (("video", video), ("audio", audio)) if wanted]
        stream = LocalMediaStream([FakeTrack(k) for k in kinds])
        self.streams.append(stream)
        return stream

    @property
    def tracks(self) -> List[FakeTrack]:
        return [t for s in self.streams for t in s.get_tracks()]


class FakeRecorder:
    """MediaRecorder look-alike writing a few bytes into its target."""

    def __init__(self, file, format=None, options=None, fail_start: bool = False):
        self.file = file
        self.format = format
        self.tracks: list = []
        self.started = False
        self.stopped = False
        self.fail_start = fail_start

    def addTrack(self, track) -> None:
        self.tracks.append(track)

    async def start(self) -> None:
        if self.fail_start:
            raise RuntimeError("muxer unavailable")
        self.started = True
        self.file.write(b"WEBM-HEADER")

    async def stop(self) -> None:
        if self.started and not self.stopped:
            self.file.write(b"-CLUSTER-TAIL")
        self.stopped = True


class FakeStorage:

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.uploads: list = []

    async def upload(self, data: bytes, blob_name: str, content_type: str) -> UploadResult:
        if self.fail:
            raise RuntimeError("storage unavailable")
        self.uploads.append((blob_name, data, content_type))
        return UploadResult(
            url=f"https://storage.test/{blob_name}",
            thumbnail_url=None,
            duration_seconds=1.0,
        )


class UnavailableDatabase:
    """Session factory whose sessions never open: fails, or hangs for `delay` seconds."""

    def __init__(self, delay: Optional[float] = None):
        self.delay = delay
        self.attempts = 0

    def __call__(self):
        return self

    async def __aenter__(self):
        self.attempts += 1
        if self.delay is not None:
            await asyncio.sleep(self.delay)
        raise ConnectionError("database unavailable")

    async def __aexit__(self, exc_type, exc, tb):
        return False


async def create_test_database():
    """In-memory SQLite with every table created. Returns (engine, session_factory)."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_tables(engine)
    session_factory: async_sessionmaker[AsyncSession] = create_session_factory(engine)
    return engine, session_factory


async def wait_for(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll until predicate() is true or the timeout passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return bool(predicate())
