"""PlayerSnapshot model - one player's metric row within one snapshot."""
from __future__ import annotations

from typing import Optional

from sqlalchemy import ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tracker.models.base import Base

# Cumulative counts and currencies can exceed 64-bit ranges on long-lived accounts,
# so they are stored as decimal strings.
BigCount = String(32)


class PlayerSnapshot(Base):
    """Immutable fact row. Exactly one per (player_id, snapshot_id)."""

    __tablename__ = "player_snapshots"
    __table_args__ = (UniqueConstraint("player_id", "snapshot_id", name="uq_player_snapshot"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    player_id: Mapped[str] = mapped_column(ForeignKey("players.lord_id"), nullable=False, index=True)
    snapshot_id: Mapped[int] = mapped_column(ForeignKey("snapshots.id"), nullable=False, index=True)

    name: Mapped[str] = mapped_column(String(128), nullable=False)
    division: Mapped[int] = mapped_column(Integer, default=0)
    alliance_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    alliance_tag: Mapped[Optional[str]] = mapped_column(String(16), nullable=True, index=True)

    # Power
    current_power: Mapped[str] = mapped_column(BigCount, default="0")
    power: Mapped[str] = mapped_column(BigCount, default="0")
    building_power: Mapped[str] = mapped_column(BigCount, default="0")
    hero_power: Mapped[str] = mapped_column(BigCount, default="0")
    legion_power: Mapped[str] = mapped_column(BigCount, default="0")
    tech_power: Mapped[str] = mapped_column(BigCount, default="0")

    # Combat
    merits: Mapped[str] = mapped_column(BigCount, default="0")
    units_killed: Mapped[str] = mapped_column(BigCount, default="0")
    units_dead: Mapped[str] = mapped_column(BigCount, default="0")
    units_healed: Mapped[str] = mapped_column(BigCount, default="0")
    t1_kill_count: Mapped[str] = mapped_column(BigCount, default="0")
    t2_kill_count: Mapped[str] = mapped_column(BigCount, default="0")
    t3_kill_count: Mapped[str] = mapped_column(BigCount, default="0")
    t4_kill_count: Mapped[str] = mapped_column(BigCount, default="0")
    t5_kill_count: Mapped[str] = mapped_column(BigCount, default="0")
    victories: Mapped[int] = mapped_column(Integer, default=0)
    defeats: Mapped[int] = mapped_column(Integer, default=0)
    city_sieges: Mapped[int] = mapped_column(Integer, default=0)
    scouted: Mapped[int] = mapped_column(Integer, default=0)

    # Alliance activity
    helps_given: Mapped[int] = mapped_column(Integer, default=0)
    resources_given: Mapped[str] = mapped_column(BigCount, default="0")
    resources_given_count: Mapped[int] = mapped_column(Integer, default=0)

    # Resources
    gold: Mapped[str] = mapped_column(BigCount, default="0")
    gold_spent: Mapped[str] = mapped_column(BigCount, default="0")
    wood: Mapped[str] = mapped_column(BigCount, default="0")
    wood_spent: Mapped[str] = mapped_column(BigCount, default="0")
    ore: Mapped[str] = mapped_column(BigCount, default="0")
    ore_spent: Mapped[str] = mapped_column(BigCount, default="0")
    mana: Mapped[str] = mapped_column(BigCount, default="0")
    mana_spent: Mapped[str] = mapped_column(BigCount, default="0")
    gems: Mapped[str] = mapped_column(BigCount, default="0")
    gems_spent: Mapped[str] = mapped_column(BigCount, default="0")

    city_level: Mapped[int] = mapped_column(Integer, default=0)
    faction: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    player = relationship("Player", back_populates="snapshots")
    snapshot = relationship("Snapshot", back_populates="players")
