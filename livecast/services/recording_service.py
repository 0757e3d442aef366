"""
Recording pipeline: buffer the broadcast while live, publish it after stop.

    begin_capture(stream)   -> segmenting recorder starts, chunks sealed every timeslice
    finalize(recorder)      -> stop recorder, wait for completion, concatenate chunks
    upload(media, metadata) -> external storage + recorded_streams row

Upload runs after the live session has already been closed, so its failures
are reported (log + change feed) and never touch live_streams.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Set

from aiortc.contrib.media import MediaRecorder, MediaRelay
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from livecast.core.config import configs
from livecast.core.exceptions import UploadError
from livecast.media.stream import LocalMediaStream
from livecast.models.orm.recorded_stream import RecordedStream
from livecast.repository.recorded_stream_repo import (
    create_recorded_stream,
    list_recorded_streams,
    list_recorded_streams_with_creator,
)
from livecast.services.change_feed import RECORDED_STREAMS, RecordChangeFeed
from livecast.services.storage_service import MediaStorage

logger = logging.getLogger(__name__)


@dataclass
class RecordingMetadata:
    created_by: str
    session_token: str
    title: Optional[str] = None
    description: Optional[str] = None
    creator_name: Optional[str] = None

    def resolved_title(self) -> str:
        return self.title or f"Recorded Stream - {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}"

    def resolved_description(self) -> str:
        return self.description or f"Recorded by {self.creator_name or 'Unknown'}"

    @property
    def blob_name(self) -> str:
        return f"recordings/{self.session_token}.{configs.RECORDING_FORMAT}"


@dataclass
class RecordedMedia:
    data: bytes
    content_type: str
    chunk_count: int

    @property
    def size(self) -> int:
        return len(self.data)


class ChunkSink:
    """Write-only, non-seekable target for the muxer. Bytes wait here until sealed into a chunk."""

    def __init__(self):
        self._pending = bytearray()
        self.closed = False

    def write(self, data) -> int:
        self._pending.extend(data)
        return len(data)

    def flush(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True

    def take(self) -> bytes:
        data = bytes(self._pending)
        self._pending.clear()
        return data


class SegmentRecorder:
    """Records a stream into an ordered list of in-memory chunks."""

    def __init__(
        self,
        stream: LocalMediaStream,
        relay: Optional[MediaRelay] = None,
        timeslice: Optional[float] = None,
        media_format: Optional[str] = None,
        recorder_factory: Optional[Callable] = None,
    ):
        self.stream = stream
        self.timeslice = timeslice or configs.RECORDER_TIMESLICE_SECONDS
        self.chunks: List[bytes] = []
        self.state = "inactive"
        self._relay = relay
        self._sink = ChunkSink()
        self._recorder = (recorder_factory or MediaRecorder)(
            self._sink, format=media_format or configs.RECORDING_FORMAT
        )
        self._tracks = []
        self._slicer: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()

    async def start(self) -> None:
        for track in self.stream.get_tracks():
            source = self._relay.subscribe(track) if self._relay is not None else track
            self._recorder.addTrack(source)
            self._tracks.append(source)
        try:
            await self._recorder.start()
        except BaseException:
            for track in self._tracks:
                track.stop()
            raise
        self.state = "recording"
        self._slicer = asyncio.create_task(self._slice_loop(), name="recorder-slicer")

    async def _slice_loop(self) -> None:
        while True:
            await asyncio.sleep(self.timeslice)
            self._seal()

    def _seal(self) -> None:
        data = self._sink.take()
        if data:
            self.chunks.append(data)

    async def stop(self) -> None:
        """Stop recording; returns once the muxer has written its last bytes."""
        if self.state == "recording":
            self.state = "stopping"
            if self._slicer is not None:
                self._slicer.cancel()
                try:
                    await self._slicer
                except asyncio.CancelledError:
                    pass
            try:
                await self._recorder.stop()
            finally:
                for track in self._tracks:
                    track.stop()
                self._seal()
                self.state = "inactive"
                self._stopped.set()
        elif self.state == "inactive":
            self._stopped.set()
        await self._stopped.wait()


class RecordingPipeline:

    def __init__(
        self,
        storage: MediaStorage,
        session_factory: async_sessionmaker[AsyncSession],
        change_feed: RecordChangeFeed,
        relay: Optional[MediaRelay] = None,
        timeslice: Optional[float] = None,
        recorder_factory: Optional[Callable] = None,
    ):
        self.storage = storage
        self._session_factory = session_factory
        self._change_feed = change_feed
        self._relay = relay
        self._timeslice = timeslice
        self._recorder_factory = recorder_factory
        self._recorder: Optional[SegmentRecorder] = None
        self._uploads: Set[asyncio.Task] = set()

    @property
    def is_recording(self) -> bool:
        return self._recorder is not None and self._recorder.state == "recording"

    async def begin_capture(self, stream: LocalMediaStream) -> SegmentRecorder:
        recorder = SegmentRecorder(
            stream,
            relay=self._relay,
            timeslice=self._timeslice,
            recorder_factory=self._recorder_factory,
        )
        await recorder.start()
        self._recorder = recorder
        logger.info(f"[recording] capture started (timeslice={recorder.timeslice}s)")
        return recorder

    def detach(self) -> Optional[SegmentRecorder]:
        recorder, self._recorder = self._recorder, None
        return recorder

    async def finalize(self, recorder: Optional[SegmentRecorder] = None) -> Optional[RecordedMedia]:
        recorder = recorder or self.detach()
        if recorder is None:
            return None
        await recorder.stop()
        if not recorder.chunks:
            logger.warning("[recording] recorder produced no data")
            return None
        media = RecordedMedia(
            data=b"".join(recorder.chunks),
            content_type=configs.RECORDING_CONTENT_TYPE,
            chunk_count=len(recorder.chunks),
        )
        logger.info(f"[recording] finalized {media.size} bytes in {media.chunk_count} chunks")
        return media

    async def upload(self, media: RecordedMedia, metadata: RecordingMetadata) -> RecordedStream:
        try:
            result = await self.storage.upload(media.data, metadata.blob_name, media.content_type)
        except Exception as e:
            raise UploadError(f"Upload of {metadata.blob_name} failed: {e}") from e

        try:
            async with self._session_factory() as db:
                recorded = await create_recorded_stream(
                    db,
                    created_by=metadata.created_by,
                    title=metadata.resolved_title(),
                    description=metadata.resolved_description(),
                    media_url=result.url,
                    thumbnail_url=result.thumbnail_url,
                    duration_seconds=result.duration_seconds,
                )
        except Exception as e:
            raise UploadError(f"Recording uploaded to {result.url} but could not be saved: {e}") from e

        logger.info(f"[recording] saved recording {recorded.id} for {metadata.created_by}")
        self._change_feed.publish(RECORDED_STREAMS, "INSERT", {
            "id": recorded.id,
            "created_by": recorded.created_by,
            "media_url": recorded.media_url,
        })
        return recorded

    async def finalize_and_upload(
        self, recorder: Optional[SegmentRecorder], metadata: RecordingMetadata
    ) -> Optional[RecordedStream]:
        """Background step after stop. Failures are reported, never raised."""
        try:
            media = await self.finalize(recorder)
            if media is None:
                return None
            return await self.upload(media, metadata)
        except UploadError as e:
            logger.error(f"[recording] {e}")
        except Exception as e:
            logger.error(f"[recording] finalize failed for {metadata.session_token}: {e}")
        self._change_feed.publish(RECORDED_STREAMS, "UPLOAD_FAILED", {
            "created_by": metadata.created_by,
            "session_token": metadata.session_token,
        })
        return None

    def schedule_finalize(self, recorder: Optional[SegmentRecorder], metadata: RecordingMetadata) -> asyncio.Task:
        task = asyncio.create_task(
            self.finalize_and_upload(recorder, metadata),
            name=f"recording-upload-{metadata.session_token}",
        )
        self._uploads.add(task)
        task.add_done_callback(self._uploads.discard)
        return task

    async def drain(self) -> None:
        """Wait for outstanding uploads (shutdown)."""
        if self._uploads:
            await asyncio.gather(*list(self._uploads), return_exceptions=True)

    async def list_recordings(self) -> List[dict]:
        async with self._session_factory() as db:
            try:
                rows = await list_recorded_streams_with_creator(db)
            except Exception as e:
                logger.warning(f"[recording] creator join failed, listing without names: {e}")
                await db.rollback()
                rows = [(r, None) for r in await list_recorded_streams(db)]
        return [
            {
                "id": r.id,
                "created_by": r.created_by,
                "creator_name": name or "Unknown",
                "title": r.title,
                "description": r.description,
                "media_url": r.media_url,
                "thumbnail_url": r.thumbnail_url,
                "duration_seconds": r.duration_seconds,
                "created_at": r.created_at,
            }
            for r, name in rows
        ]
