# livecast/models/orm/__init__.py
from .user import UserProfile
from .live_stream import LiveStream
from .recorded_stream import RecordedStream
from .base import Base
