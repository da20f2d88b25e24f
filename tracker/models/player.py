"""Player identity model."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tracker.models.base import Base


class Player(Base):
    """Long-lived player identity keyed by the in-game lord id.

    current_name and last_seen_at track the latest upload the player appeared in;
    has_left_realm is the departure-inference flag and is cleared on reappearance.
    """

    __tablename__ = "players"

    lord_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    current_name: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)
    has_left_realm: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    left_realm_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    snapshots = relationship("PlayerSnapshot", back_populates="player")
    name_history = relationship("NameChange", back_populates="player")
    alliance_history = relationship("AllianceChange", back_populates="player")
