from aiortc import RTCPeerConnection
from aiortc.contrib.media import MediaRecorder, MediaRelay
from dependency_injector import containers, providers

from livecast.core.config import configs
from livecast.core.db import AsyncSessionLocal
from livecast.media.capture import MediaCaptureDevice
from livecast.services.change_feed import RecordChangeFeed
from livecast.services.live_stream_service import StreamLifecycleCoordinator
from livecast.services.recording_service import RecordingPipeline
from livecast.services.session_watcher import ActiveSessionWatcher
from livecast.services.signaling import SignalingHub
from livecast.services.storage_service import AzureMediaStorage
from livecast.services.stream_state import SessionStateStore


class Container(containers.DeclarativeContainer):
    wiring_config = containers.WiringConfiguration(
        modules=[
            "livecast.api.v1.endpoints.auth",
            "livecast.api.v1.endpoints.live",
            "livecast.api.v1.endpoints.recordings",
            "livecast.api.v1.endpoints.signaling",
        ]
    )

    session_factory = providers.Object(AsyncSessionLocal)

    # one of each per process
    store = providers.Singleton(SessionStateStore, name="station")
    hub = providers.Singleton(SignalingHub, backlog_size=configs.SIGNAL_BACKLOG_SIZE)
    change_feed = providers.Singleton(RecordChangeFeed)
    relay = providers.Singleton(MediaRelay)
    capture = providers.Singleton(MediaCaptureDevice)
    storage = providers.Singleton(
        AzureMediaStorage,
        connection_string=configs.AZURE_STORAGE_CONNECTION_STRING,
        container=configs.AZURE_BLOB_CONTAINER,
    )

    connection_factory = providers.Object(RTCPeerConnection)
    recorder_factory = providers.Object(MediaRecorder)

    recording = providers.Singleton(
        RecordingPipeline,
        storage=storage,
        session_factory=session_factory,
        change_feed=change_feed,
        relay=relay,
        timeslice=configs.RECORDER_TIMESLICE_SECONDS,
        recorder_factory=recorder_factory,
    )

    coordinator = providers.Singleton(
        StreamLifecycleCoordinator,
        store=store,
        hub=hub,
        capture=capture,
        session_factory=session_factory,
        change_feed=change_feed,
        recording=recording,
        relay=relay,
        connection_factory=connection_factory,
        ice_servers=configs.ICE_SERVERS,
        db_timeout=configs.DB_QUERY_TIMEOUT_SECONDS,
        join_wait=configs.JOIN_WAIT_SECONDS,
    )

    watcher = providers.Singleton(
        ActiveSessionWatcher,
        coordinator=coordinator,
        change_feed=change_feed,
        interval=configs.ACTIVE_SESSION_POLL_SECONDS,
    )
