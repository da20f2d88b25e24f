"""Name and alliance change audit events."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tracker.models.base import Base


class NameChange(Base):
    """Display-name edit detected against the player's previous snapshot."""

    __tablename__ = "name_changes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    player_id: Mapped[str] = mapped_column(ForeignKey("players.lord_id"), nullable=False, index=True)
    old_name: Mapped[str] = mapped_column(String(128), nullable=False)
    new_name: Mapped[str] = mapped_column(String(128), nullable=False)
    detected_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    player = relationship("Player", back_populates="name_history")


class AllianceChange(Base):
    """Alliance membership transition. A missing tag (no alliance) is stored as NULL."""

    __tablename__ = "alliance_changes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    player_id: Mapped[str] = mapped_column(ForeignKey("players.lord_id"), nullable=False, index=True)
    old_alliance: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    old_alliance_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    new_alliance: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    new_alliance_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    detected_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    player = relationship("Player", back_populates="alliance_history")
