# livecast/models/orm/live_stream.py
"""
Persistent live stream record.
One row per broadcast; `is_active` is true exactly while the broadcast is
ongoing. Rows are closed (is_active=False, ended_at set) on stop and never
deleted by the normal flow.
"""
from sqlalchemy import Boolean, DateTime, Index, String, Text, true
from sqlalchemy.orm import Mapped, mapped_column
from livecast.models.orm.base import Base, IntegerMixin, CreatedAtMixin
from typing import Optional
from datetime import datetime


class LiveStream(Base, IntegerMixin, CreatedAtMixin):
    __tablename__ = "live_streams"
    __table_args__ = (
        Index("ix_live_streams_created_by_active", "created_by", "is_active"),
    )

    # Broadcaster user id (immutable)
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)

    # Session token, also the signaling room name
    stream_url: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=true())

    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    ended_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
