# livecast/models/orm/recorded_stream.py
from sqlalchemy import Float, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from livecast.models.orm.base import Base, IntegerMixin, CreatedAtMixin
from typing import Optional


class RecordedStream(Base, IntegerMixin, CreatedAtMixin):
    __tablename__ = "recorded_streams"

    created_by: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Finalized recording in external storage
    media_url: Mapped[str] = mapped_column(Text, nullable=False)
    thumbnail_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    duration_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
