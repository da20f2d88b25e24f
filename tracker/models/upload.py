"""Upload model - one admin file upload and its processing outcome."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tracker.models.base import Base

UPLOAD_PROCESSING = "PROCESSING"
UPLOAD_COMPLETED = "COMPLETED"
UPLOAD_FAILED = "FAILED"


class Upload(Base):
    """Uploaded export file. Status moves PROCESSING -> COMPLETED or FAILED."""

    __tablename__ = "uploads"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("web_users.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=UPLOAD_PROCESSING, index=True)
    rows_processed: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    uploaded_by = relationship("User")
    snapshots = relationship("Snapshot", back_populates="upload")
