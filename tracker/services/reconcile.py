"""Change detection and realm-departure inference over the snapshot ledger."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

import config
from tracker.models import AllianceChange, NameChange, Player, PlayerSnapshot, Snapshot, async_session_factory
from tracker.models.snapshot import SNAPSHOT_COMPLETED

logger = logging.getLogger("realm.reconcile")


@dataclass
class ReconcileResult:
    name_changes: int = 0
    alliance_changes: int = 0
    warnings: list[dict] = field(default_factory=list)


@dataclass
class RebuildResult:
    reference_time: Optional[datetime] = None
    players_checked: int = 0
    names_fixed: int = 0
    marked_left: list[str] = field(default_factory=list)
    restored_active: list[str] = field(default_factory=list)


def power_value(raw: Optional[str]) -> int:
    """Integer value of a stored power string. Missing or malformed -> 0."""
    if not raw:
        return 0
    try:
        return int(Decimal(raw))
    except (InvalidOperation, ValueError):
        return 0


def _tag(value: Optional[str]) -> Optional[str]:
    return value or None


class ChangeReconciler:
    """Compares freshly written rows with each player's history.

    Only COMPLETED snapshots count as history. All timestamps are naive UTC.
    """

    def __init__(
        self,
        session_factory=async_session_factory,
        cutoff_days: Optional[int] = None,
        power_floor: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self.cutoff_days = config.LEFT_REALM_CUTOFF_DAYS if cutoff_days is None else cutoff_days
        self.power_floor = config.LEFT_REALM_POWER_FLOOR if power_floor is None else power_floor

    async def previous_snapshot_for(
        self, session: AsyncSession, lord_id: str, before: datetime, snapshot_id: Optional[int] = None
    ) -> Optional[PlayerSnapshot]:
        """Most recent row for this player from a snapshot captured before the current one.

        With `snapshot_id`, a lower-id snapshot of the same capture time also counts
        as prior.
        """
        earlier = Snapshot.timestamp < before
        if snapshot_id is not None:
            earlier = earlier | ((Snapshot.timestamp == before) & (Snapshot.id < snapshot_id))
        result = await session.execute(
            select(PlayerSnapshot)
            .join(Snapshot, PlayerSnapshot.snapshot_id == Snapshot.id)
            .where(
                PlayerSnapshot.player_id == lord_id,
                Snapshot.status == SNAPSHOT_COMPLETED,
                earlier,
            )
            .order_by(Snapshot.timestamp.desc(), Snapshot.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def latest_snapshot_for(
        self, session: AsyncSession, lord_id: str
    ) -> Optional[tuple[PlayerSnapshot, datetime]]:
        """Most recent row for this player and its snapshot timestamp."""
        result = await session.execute(
            select(PlayerSnapshot, Snapshot.timestamp)
            .join(Snapshot, PlayerSnapshot.snapshot_id == Snapshot.id)
            .where(PlayerSnapshot.player_id == lord_id, Snapshot.status == SNAPSHOT_COMPLETED)
            .order_by(Snapshot.timestamp.desc(), Snapshot.id.desc())
            .limit(1)
        )
        row = result.first()
        return (row[0], row[1]) if row else None

    async def reconcile(
        self, rows: list[dict], snapshot_time: datetime, snapshot_id: Optional[int] = None
    ) -> ReconcileResult:
        """Emit NameChange / AllianceChange events for rows that differ from their prior snapshot.

        Each player is committed on its own; a failure rolls back that player only.
        """
        result = ReconcileResult()
        logger.info("Processing changes for %d players", len(rows))
        async with self._session_factory() as session:
            for row in rows:
                lord_id = row["lord_id"]
                try:
                    prior = await self.previous_snapshot_for(session, lord_id, snapshot_time, snapshot_id)
                    if prior is None:
                        continue
                    name_changed = prior.name != row["name"]
                    if name_changed:
                        session.add(NameChange(
                            player_id=lord_id,
                            old_name=prior.name,
                            new_name=row["name"],
                            detected_at=snapshot_time,
                        ))
                    old_tag, new_tag = _tag(prior.alliance_tag), _tag(row.get("alliance_tag"))
                    alliance_changed = old_tag != new_tag
                    if alliance_changed:
                        session.add(AllianceChange(
                            player_id=lord_id,
                            old_alliance=old_tag,
                            old_alliance_id=prior.alliance_id,
                            new_alliance=new_tag,
                            new_alliance_id=row.get("alliance_id"),
                            detected_at=snapshot_time,
                        ))
                    if name_changed or alliance_changed:
                        await session.commit()
                        result.name_changes += int(name_changed)
                        result.alliance_changes += int(alliance_changed)
                except Exception as e:
                    await session.rollback()
                    logger.warning("Error processing changes for player %s: %s", lord_id, e)
                    result.warnings.append({"player_id": lord_id, "error": str(e)})
        logger.info(
            "Processed changes: %d name changes, %d alliance changes, %d errors",
            result.name_changes, result.alliance_changes, len(result.warnings),
        )
        return result

    async def mark_departed(self, present_ids: Iterable[str], snapshot_time: datetime) -> list[str]:
        """Flag players absent longer than the cutoff whose last known power meets the floor.

        Returns the lord ids marked in this call.
        """
        present = set(present_ids)
        cutoff = snapshot_time - timedelta(days=self.cutoff_days)
        async with self._session_factory() as session:
            candidates = (
                await session.execute(
                    select(Player).where(
                        Player.has_left_realm.is_(False),
                        Player.last_seen_at.is_not(None),
                        Player.last_seen_at < cutoff,
                    )
                )
            ).scalars().all()
            to_mark = []
            for player in candidates:
                if player.lord_id in present:
                    continue
                latest = await self.latest_snapshot_for(session, player.lord_id)
                if latest and power_value(latest[0].current_power) >= self.power_floor:
                    to_mark.append(player.lord_id)
            logger.info(
                "Found %d absent players, %d with %s+ power",
                len(candidates), len(to_mark), f"{self.power_floor:,}",
            )
            if to_mark:
                await session.execute(
                    update(Player)
                    .where(Player.lord_id.in_(to_mark))
                    .values(has_left_realm=True, left_realm_at=snapshot_time)
                )
                await session.commit()
                logger.info("Marked %d players as having left the realm", len(to_mark))
        return to_mark

    async def rebuild_realm_status(self) -> RebuildResult:
        """Recompute every Player's identity and departure flag from the ledger.

        current_name and last_seen_at come from the player's latest completed row;
        the departure flag is re-evaluated against the current cutoff and floor,
        using the latest completed snapshot as the reference time.
        """
        result = RebuildResult()
        async with self._session_factory() as session:
            reference = (
                await session.execute(
                    select(func.max(Snapshot.timestamp)).where(Snapshot.status == SNAPSHOT_COMPLETED)
                )
            ).scalar_one_or_none()
            result.reference_time = reference
            if reference is None:
                return result
            cutoff = reference - timedelta(days=self.cutoff_days)
            players = (await session.execute(select(Player).order_by(Player.lord_id))).scalars().all()
            for player in players:
                result.players_checked += 1
                latest = await self.latest_snapshot_for(session, player.lord_id)
                if latest is None:
                    continue
                row, seen_at = latest
                if player.current_name != row.name:
                    player.current_name = row.name
                    result.names_fixed += 1
                player.last_seen_at = seen_at
                should_be_left = seen_at < cutoff and power_value(row.current_power) >= self.power_floor
                if should_be_left and not player.has_left_realm:
                    player.has_left_realm = True
                    player.left_realm_at = reference
                    result.marked_left.append(player.lord_id)
                elif not should_be_left and player.has_left_realm:
                    player.has_left_realm = False
                    player.left_realm_at = None
                    result.restored_active.append(player.lord_id)
            await session.commit()
        logger.info(
            "Rebuilt realm status for %d players: %d names fixed, %d marked left, %d restored",
            result.players_checked, result.names_fixed, len(result.marked_left), len(result.restored_active),
        )
        return result
