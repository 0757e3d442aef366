"""
Stream lifecycle coordinator: capture, signaling, recording and the
persisted live_streams rows, driven together.

Broadcaster state machine (one capture station per process):

    idle -> starting -> live -> stopping -> idle
              |
              +-- acquisition failure / cancelled by stop --> idle

The database is not authoritative for the media path: a failed insert
leaves the broadcast running untracked (with a warning), and a failed
update on stop still releases every local resource. Viewers learn that a
broadcast exists from poll_active_session() and join it through the
signaling hub.
"""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from aiortc.contrib.media import MediaRelay
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from livecast.core.config import configs
from livecast.core.exceptions import AcquisitionError, StationBusyError
from livecast.media.capture import MediaCaptureDevice
from livecast.media.stream import LocalMediaStream
from livecast.models.orm.live_stream import LiveStream
from livecast.repository.live_stream_repo import (
    close_active_for_broadcaster,
    create_live_stream,
    get_by_stream_url,
    get_latest_active,
)
from livecast.schemas.signal_schema import SignalMessage
from livecast.services.change_feed import LIVE_STREAMS, RecordChangeFeed
from livecast.services.peer_manager import LinkState, PeerConnectionManager, PeerLink
from livecast.services.recording_service import RecordingMetadata, RecordingPipeline, SegmentRecorder
from livecast.services.signaling import BROADCASTER, VIEWER, SignalingChannel, SignalingHub
from livecast.services.stream_state import SessionStateStore

logger = logging.getLogger(__name__)


class StreamState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    LIVE = "live"
    STOPPING = "stopping"


def generate_session_token(broadcaster_id: str) -> str:
    return f"stream_{int(time.time() * 1000)}_{broadcaster_id}_{secrets.token_hex(4)}"


@dataclass
class BroadcastSession:
    broadcaster_id: str
    title: Optional[str] = None
    description: Optional[str] = None
    creator_name: Optional[str] = None
    session_token: Optional[str] = None
    stream: Optional[LocalMediaStream] = None
    channel: Optional[SignalingChannel] = None
    peers: Optional[PeerConnectionManager] = None
    recorder: Optional[SegmentRecorder] = None
    record: Optional[LiveStream] = None
    warnings: List[str] = field(default_factory=list)
    cancelled_by_stop: bool = False
    started_at: float = field(default_factory=time.time)

    @property
    def tracked(self) -> bool:
        return self.record is not None


@dataclass
class StartResult:
    session_token: Optional[str]
    state: StreamState
    tracked: bool
    record: Optional[LiveStream] = None
    warnings: List[str] = field(default_factory=list)


@dataclass
class StopResult:
    state: StreamState
    closed_records: int = 0
    warnings: List[str] = field(default_factory=list)


class ViewerSession:
    """
    An in-process viewer of a broadcast.
    Display states: waiting (no media yet), watching, left.
    """

    def __init__(self, viewer_id: str, session_token: str, store: SessionStateStore):
        self.viewer_id = viewer_id
        self.session_token = session_token
        self.store = store
        self.channel: Optional[SignalingChannel] = None
        self.peers: Optional[PeerConnectionManager] = None
        self.display_state = "waiting"
        self._media = asyncio.Event()
        self._on_left: Optional[Callable[["ViewerSession"], None]] = None

    @property
    def links(self) -> List[PeerLink]:
        return list(self.peers.links.values()) if self.peers else []

    def on_remote_track(self, link: PeerLink, track) -> None:
        stream = LocalMediaStream(link.remote_tracks, stream_id=f"remote-{link.remote_id}")
        self.store.set_stream(stream)
        if self.display_state != "left":
            self.display_state = "watching"
        self._media.set()

    def on_link_state(self, link: PeerLink) -> None:
        if link.state in (LinkState.CLOSED, LinkState.DISCONNECTED) and self.display_state == "watching":
            # remote tracks belong to the connection, only drop our reference
            self.store.clear_stream()
            self.display_state = "waiting"
            self._media.clear()

    async def wait_for_media(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._media.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def leave(self) -> None:
        if self.display_state == "left":
            return
        self.display_state = "left"
        if self.channel is not None:
            try:
                await self.channel.send({"type": "leave"})
            except Exception as e:
                logger.warning(f"[viewer:{self.viewer_id}] leave notification failed: {e}")
        if self.peers is not None:
            await self.peers.teardown()
        if self.channel is not None:
            await self.channel.close()
        self.store.clear_stream()
        if self._on_left is not None:
            self._on_left(self)
        logger.info(f"[viewer:{self.viewer_id}] left {self.session_token}")

    def snapshot(self) -> dict:
        return {
            "viewer_id": self.viewer_id,
            "session_token": self.session_token,
            "display_state": self.display_state,
            "links": self.peers.snapshot() if self.peers else [],
        }


class StreamLifecycleCoordinator:

    def __init__(
        self,
        store: SessionStateStore,
        hub: SignalingHub,
        capture: MediaCaptureDevice,
        session_factory: async_sessionmaker[AsyncSession],
        change_feed: RecordChangeFeed,
        recording: RecordingPipeline,
        relay: Optional[MediaRelay] = None,
        connection_factory: Optional[Callable[..., Any]] = None,
        ice_servers: Optional[List[str]] = None,
        db_timeout: Optional[float] = None,
        join_wait: Optional[float] = None,
    ):
        self.store = store
        self.hub = hub
        self.capture = capture
        self.change_feed = change_feed
        self.recording = recording
        self.relay = relay
        self._session_factory = session_factory
        self._connection_factory = connection_factory
        self._ice_servers = ice_servers
        self.db_timeout = db_timeout if db_timeout is not None else configs.DB_QUERY_TIMEOUT_SECONDS
        self.join_wait = join_wait if join_wait is not None else configs.JOIN_WAIT_SECONDS

        self._state = StreamState.IDLE
        self._session: Optional[BroadcastSession] = None
        self._start_task: Optional[asyncio.Task] = None
        self._stop_task: Optional[asyncio.Task] = None
        self._viewers: Dict[str, ViewerSession] = {}

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def session(self) -> Optional[BroadcastSession]:
        return self._session

    def _peer_manager(self, channel: SignalingChannel, **kwargs) -> PeerConnectionManager:
        return PeerConnectionManager(
            channel,
            ice_servers=self._ice_servers,
            connection_factory=self._connection_factory,
            relay=self.relay,
            **kwargs,
        )

    # ── start ────────────────────────────────────────────────────────

    async def start(
        self,
        broadcaster_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        creator_name: Optional[str] = None,
    ) -> StartResult:
        """
        Start broadcasting from this station.
        Idempotent for the broadcaster that is already live. Raises
        AcquisitionError when the camera/microphone cannot be opened and
        StationBusyError when someone else holds the station.
        """
        session = self._session
        if session is not None and session.broadcaster_id == broadcaster_id:
            if self._state == StreamState.LIVE:
                logger.info(f"[live] {broadcaster_id} already live, start is a no-op")
                return self._start_result(session)
            if self._state == StreamState.STARTING and self._start_task is not None:
                return await asyncio.shield(self._start_task)

        if self._state != StreamState.IDLE:
            raise StationBusyError(
                f"Station is {self._state.value} for another broadcaster",
                detail={"state": self._state.value},
            )

        session = BroadcastSession(
            broadcaster_id=broadcaster_id,
            title=title,
            description=description,
            creator_name=creator_name,
        )
        self._session = session
        self._state = StreamState.STARTING
        task = asyncio.create_task(self._run_start(session), name=f"live-start-{broadcaster_id}")
        self._start_task = task

        try:
            return await task
        except asyncio.CancelledError:
            if session.cancelled_by_stop and task.cancelled():
                logger.info(f"[live] start for {broadcaster_id} cancelled by stop")
                return StartResult(
                    session_token=session.session_token,
                    state=StreamState.IDLE,
                    tracked=False,
                    warnings=["Start cancelled by stop"],
                )
            raise
        finally:
            if self._start_task is task:
                self._start_task = None

    async def _run_start(self, session: BroadcastSession) -> StartResult:
        broadcaster_id = session.broadcaster_id
        logger.info(f"[live] starting stream for {broadcaster_id}")
        try:
            session.stream = await self.capture.acquire(video=True, audio=True)
        except AcquisitionError:
            logger.error(f"[live] capture failed for {broadcaster_id}, start aborted")
            self._reset(session)
            raise

        try:
            # share locally first, before anything that may fail or wait on the network
            self.store.set_stream(session.stream)
            session.session_token = generate_session_token(broadcaster_id)

            try:
                session.recorder = await self.recording.begin_capture(session.stream)
            except Exception as e:
                logger.warning(f"[live] recording unavailable for {session.session_token}: {e}")
                session.warnings.append("Recording unavailable")

            await self._open_broadcast_channel(session)

            session.record = await self._insert_record(session)
            if session.record is None:
                session.warnings.append("Stream started (database save failed)")
        except asyncio.CancelledError:
            await self._release_local(session, keep_recording=False)
            if not session.cancelled_by_stop:
                # cancelled without a stop: close what this start opened
                if session.record is not None:
                    await self._close_records(broadcaster_id, session.warnings)
                self._reset(session)
            raise
        except Exception:
            logger.exception(f"[live] start failed for {broadcaster_id}")
            await self._release_local(session, keep_recording=False)
            self._reset(session)
            raise

        self._state = StreamState.LIVE
        logger.info(
            f"[live] {broadcaster_id} live on {session.session_token} "
            f"(tracked={session.tracked})"
        )
        return self._start_result(session)

    async def _open_broadcast_channel(self, session: BroadcastSession) -> None:
        channel = SignalingChannel(self.hub, session.session_token, session.broadcaster_id, BROADCASTER)
        peers = self._peer_manager(channel)

        async def on_join(message: SignalMessage) -> None:
            await peers.add_viewer(message.sender)

        async def on_leave(message: SignalMessage) -> None:
            await peers.teardown(message.sender)

        async def on_answer(message: SignalMessage) -> None:
            await peers.handle_answer(message.sender, message.sdp, message.sdp_type or "answer")

        async def on_candidate(message: SignalMessage) -> None:
            if message.candidate is not None:
                await peers.handle_remote_candidate(message.sender, message.candidate)

        channel.on("join", on_join)
        channel.on("leave", on_leave)
        channel.on("answer", on_answer)
        channel.on("ice-candidate", on_candidate)

        session.channel = channel
        session.peers = peers
        await channel.open()
        await peers.start_broadcast(session.stream)
        # viewers that announced themselves before we opened
        await channel.replay()

    async def _insert_record(self, session: BroadcastSession) -> Optional[LiveStream]:
        title = session.title or f"Live Stream - {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}"
        description = session.description or f"Live stream by {session.creator_name or 'Instructor'}"

        async def insert() -> LiveStream:
            async with self._session_factory() as db:
                return await create_live_stream(
                    db,
                    created_by=session.broadcaster_id,
                    stream_url=session.session_token,
                    title=title,
                    description=description,
                )

        try:
            record = await asyncio.wait_for(insert(), timeout=self.db_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[live] saving {session.session_token} timed out, continuing untracked")
            return None
        except Exception as e:
            logger.warning(f"[live] saving {session.session_token} failed, continuing untracked: {e}")
            return None

        self.change_feed.publish(LIVE_STREAMS, "INSERT", {
            "id": record.id,
            "created_by": record.created_by,
            "stream_url": record.stream_url,
            "is_active": True,
        })
        return record

    def _start_result(self, session: BroadcastSession) -> StartResult:
        return StartResult(
            session_token=session.session_token,
            state=self._state,
            tracked=session.tracked,
            record=session.record,
            warnings=list(session.warnings),
        )

    def _reset(self, session: BroadcastSession) -> None:
        if self._session is session:
            self._session = None
            self._state = StreamState.IDLE

    # ── stop ─────────────────────────────────────────────────────────

    async def stop(self, broadcaster_id: str) -> StopResult:
        """
        Stop the broadcast and close every active record of the broadcaster.
        Never raises; every cleanup step is attempted.
        """
        session = self._session
        if session is None or self._state == StreamState.IDLE:
            return StopResult(state=StreamState.IDLE)
        if session.broadcaster_id != broadcaster_id:
            logger.warning(f"[live] {broadcaster_id} tried to stop {session.broadcaster_id}'s stream")
            return StopResult(state=self._state, warnings=["Not the active broadcaster"])

        # concurrent stop calls share one run; the run survives a cancelled caller
        if self._stop_task is None or self._stop_task.done():
            self._stop_task = asyncio.create_task(self._run_stop(session), name=f"live-stop-{broadcaster_id}")
        return await asyncio.shield(self._stop_task)

    async def _run_stop(self, session: BroadcastSession) -> StopResult:
        warnings: List[str] = []
        was_live = self._state == StreamState.LIVE
        self._state = StreamState.STOPPING
        logger.info(f"[live] stopping stream for {session.broadcaster_id}")

        start_task = self._start_task
        if start_task is not None and not start_task.done():
            session.cancelled_by_stop = True
            start_task.cancel()
            try:
                await start_task
            except (asyncio.CancelledError, Exception):
                pass

        # 1. recorder first, so the capture is complete before tracks stop
        recorder = self.recording.detach()
        if recorder is not None:
            try:
                await recorder.stop()
            except Exception as e:
                logger.error(f"[live] recorder stop failed: {e}")
                warnings.append("Recorder did not stop cleanly")
            if was_live and session.session_token:
                self.recording.schedule_finalize(recorder, RecordingMetadata(
                    created_by=session.broadcaster_id,
                    session_token=session.session_token,
                    creator_name=session.creator_name,
                ))

        # 2. local media, peers and signaling
        warnings.extend(await self._release_local(session, keep_recording=True))

        # 3. persisted state: close every active record, not just ours
        closed = await self._close_records(session.broadcaster_id, warnings)

        session.warnings.extend(warnings)
        if self._session is session:
            self._session = None
        self._state = StreamState.IDLE
        logger.info(f"[live] stopped {session.broadcaster_id} (closed_records={closed})")
        return StopResult(state=StreamState.IDLE, closed_records=closed, warnings=warnings)

    async def _release_local(self, session: BroadcastSession, keep_recording: bool) -> List[str]:
        """Best-effort release of everything the session holds in memory."""
        warnings: List[str] = []

        if not keep_recording:
            recorder = self.recording.detach()
            if recorder is not None:
                try:
                    await recorder.stop()
                except Exception as e:
                    logger.warning(f"[live] discarding recorder failed: {e}")

        if session.stream is not None:
            try:
                session.stream.stop()
            except Exception as e:
                logger.error(f"[live] failed to stop local tracks: {e}")
                warnings.append("Local tracks did not stop cleanly")

        self.store.clear_stream()

        if session.peers is not None:
            try:
                await session.peers.teardown()
            except Exception as e:
                logger.error(f"[live] peer teardown failed: {e}")
                warnings.append("Peer connections did not close cleanly")

        # in-process viewers of this broadcast go back to waiting
        for viewer in list(self._viewers.values()):
            if session.session_token and viewer.session_token == session.session_token and viewer.peers:
                await viewer.peers.teardown()

        if session.channel is not None:
            try:
                await session.channel.close()
            except Exception as e:
                logger.warning(f"[live] signaling channel close failed: {e}")
            if session.session_token:
                self.hub.close_room(session.session_token)

        return warnings

    async def _close_records(self, broadcaster_id: str, warnings: List[str]) -> int:
        async def close() -> List[int]:
            async with self._session_factory() as db:
                return await close_active_for_broadcaster(db, broadcaster_id)

        try:
            closed_ids = await asyncio.wait_for(close(), timeout=self.db_timeout)
        except asyncio.TimeoutError:
            logger.error(f"[live] closing records for {broadcaster_id} timed out")
            warnings.append("Stream stopped locally, but database update failed")
            return 0
        except Exception as e:
            logger.error(f"[live] closing records for {broadcaster_id} failed: {e}")
            warnings.append("Stream stopped locally, but database update failed")
            return 0

        if len(closed_ids) > 1:
            logger.warning(f"[live] {broadcaster_id} had {len(closed_ids)} active records, all closed")
        for record_id in closed_ids:
            self.change_feed.publish(LIVE_STREAMS, "UPDATE", {
                "id": record_id,
                "created_by": broadcaster_id,
                "is_active": False,
            })
        return len(closed_ids)

    # ── viewers ──────────────────────────────────────────────────────

    async def poll_active_session(self) -> Optional[LiveStream]:
        """Most recent active broadcast of any broadcaster; None on timeout or error."""
        async def query() -> Optional[LiveStream]:
            async with self._session_factory() as db:
                return await get_latest_active(db)

        try:
            return await asyncio.wait_for(query(), timeout=self.db_timeout)
        except asyncio.TimeoutError:
            logger.warning("[live] active session lookup timed out")
        except Exception as e:
            logger.warning(f"[live] active session lookup failed: {e}")
        return None

    async def _broadcaster_for(self, session_token: str) -> Optional[str]:
        session = self._session
        if session is not None and session.session_token == session_token:
            return session.broadcaster_id

        async def query() -> Optional[LiveStream]:
            async with self._session_factory() as db:
                return await get_by_stream_url(db, session_token)

        try:
            record = await asyncio.wait_for(query(), timeout=self.db_timeout)
        except Exception as e:
            logger.warning(f"[live] broadcaster lookup for {session_token} failed: {e!r}")
            return None
        return record.created_by if record is not None and record.is_active else None

    async def join_as_viewer(
        self, session_token: str, viewer_id: str, wait: Optional[float] = None
    ) -> ViewerSession:
        """
        Join a broadcast as an in-process viewer.
        Returns after media arrives or the wait elapses; without media the
        viewer stays in the waiting state rather than failing.
        """
        existing = self._viewers.get(viewer_id)
        if existing is not None and existing.session_token == session_token:
            return existing
        if existing is not None:
            await existing.leave()

        viewer = ViewerSession(viewer_id, session_token, SessionStateStore(name=f"viewer:{viewer_id}"))
        channel = SignalingChannel(self.hub, session_token, viewer_id, VIEWER)
        peers = self._peer_manager(
            channel,
            on_remote_track=viewer.on_remote_track,
            on_state_change=viewer.on_link_state,
        )

        broadcaster_id: Optional[str] = None

        async def from_broadcaster(message: SignalMessage) -> bool:
            nonlocal broadcaster_id
            if broadcaster_id is None:
                broadcaster_id = await self._broadcaster_for(session_token)
            if message.sender != broadcaster_id:
                logger.warning(
                    f"[viewer:{viewer_id}] dropped {message.type} from {message.sender}, "
                    f"not the broadcaster of {session_token}"
                )
                return False
            return True

        async def on_offer(message: SignalMessage) -> None:
            if await from_broadcaster(message):
                await peers.handle_offer(message.sender, message.sdp, message.sdp_type or "offer")

        async def on_candidate(message: SignalMessage) -> None:
            if message.candidate is not None and await from_broadcaster(message):
                await peers.handle_remote_candidate(message.sender, message.candidate)

        channel.on("offer", on_offer)
        channel.on("ice-candidate", on_candidate)
        viewer.channel = channel
        viewer.peers = peers
        viewer._on_left = lambda v: self._viewers.pop(v.viewer_id, None)
        self._viewers[viewer_id] = viewer

        broadcaster_id = await self._broadcaster_for(session_token)
        if broadcaster_id is not None:
            peers.create_link(broadcaster_id)

        await channel.open()
        await channel.send({"type": "join"})
        await channel.replay()

        timeout = self.join_wait if wait is None else wait
        if await viewer.wait_for_media(timeout):
            logger.info(f"[viewer:{viewer_id}] receiving media on {session_token}")
        else:
            logger.info(f"[viewer:{viewer_id}] no media after {timeout}s, waiting")
        return viewer

    async def leave_as_viewer(self, viewer_id: str) -> None:
        viewer = self._viewers.get(viewer_id)
        if viewer is not None:
            await viewer.leave()

    async def teardown_viewer(self, viewer_id: str) -> None:
        """Broadcaster side: drop one viewer's link, leaving the others untouched."""
        session = self._session
        if session is not None and session.peers is not None:
            await session.peers.teardown(viewer_id)

    # ── auth collaborator ────────────────────────────────────────────

    async def handle_session_change(self, user_id: str, user: Optional[Any]) -> None:
        """Auth state changed for user_id; a logged-out broadcaster stops broadcasting."""
        session = self._session
        if user is None and session is not None and session.broadcaster_id == str(user_id):
            logger.info(f"[live] {user_id} signed out while broadcasting, stopping")
            await self.stop(str(user_id))
        if user is None and str(user_id) in self._viewers:
            await self.leave_as_viewer(str(user_id))

    async def shutdown(self) -> None:
        session = self._session
        if session is not None:
            await self.stop(session.broadcaster_id)
        for viewer in list(self._viewers.values()):
            await viewer.leave()
        await self.recording.drain()

    # ── diagnostics ──────────────────────────────────────────────────

    def status(self) -> dict:
        session = self._session
        return {
            "state": self._state.value,
            "broadcaster_id": session.broadcaster_id if session else None,
            "session_token": session.session_token if session else None,
            "tracked": session.tracked if session else False,
            "record_id": session.record.id if session and session.record else None,
            "has_stream": self.store.get_stream() is not None,
            "recording": self.recording.is_recording,
            "links": session.peers.snapshot() if session and session.peers else [],
            "viewers": [v.snapshot() for v in self._viewers.values()],
            "participants": self.hub.participants(session.session_token) if session and session.session_token else [],
            "warnings": list(session.warnings) if session else [],
        }
