class LiveStreamError(Exception):
    """Base class for live streaming failures."""

    def __init__(self, message: str = "", *, detail=None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class AcquisitionError(LiveStreamError):
    """Camera or microphone could not be acquired. Fatal to start."""


class StationBusyError(LiveStreamError):
    """The capture station is already broadcasting for somebody else."""


class NegotiationError(LiveStreamError):
    """A single peer link failed to negotiate."""


class PersistenceError(LiveStreamError):
    """A live/recorded stream record could not be written."""


class UploadError(LiveStreamError):
    """A finalized recording could not be uploaded or saved."""


class AuthError(LiveStreamError):
    """Missing, invalid or insufficient credentials."""
