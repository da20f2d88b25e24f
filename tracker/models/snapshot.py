"""Snapshot model - one immutable capture of a kingdom's player table."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tracker.models.base import Base

SNAPSHOT_PROCESSING = "PROCESSING"
SNAPSHOT_COMPLETED = "COMPLETED"
SNAPSHOT_FAILED = "FAILED"


class Snapshot(Base):
    """Capture of every player's stats at the time encoded in the upload filename.

    Rows are written while status is PROCESSING and become visible to history
    lookups only once the snapshot is COMPLETED.
    """

    __tablename__ = "snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)  # naive UTC
    kingdom: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    upload_id: Mapped[Optional[int]] = mapped_column(ForeignKey("uploads.id"), nullable=True)
    season_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=SNAPSHOT_PROCESSING, index=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    upload = relationship("Upload", back_populates="snapshots")
    players = relationship("PlayerSnapshot", back_populates="snapshot")
