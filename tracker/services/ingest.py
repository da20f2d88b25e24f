"""Snapshot ingestion: write an uploaded export into the ledger and reconcile history.

Stages run strictly in order for one upload:

1. create the Snapshot (PROCESSING)
2. upsert Player identities, batch by batch
3. insert PlayerSnapshot rows, batch by batch
4. publish the Snapshot (COMPLETED)
5. detect name/alliance changes, then infer realm departures

A failed batch marks the Snapshot FAILED. History lookups only read COMPLETED
snapshots, so rows written before the failure are never treated as history.
Uploads must be serialized by the caller.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional

from sqlalchemy import case, false, null, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

import config
from tracker.models import Player, PlayerSnapshot, Snapshot, Upload, as_utc, async_session_factory, to_db_time
from tracker.models.snapshot import SNAPSHOT_COMPLETED, SNAPSHOT_FAILED, SNAPSHOT_PROCESSING
from tracker.models.upload import UPLOAD_COMPLETED, UPLOAD_FAILED, UPLOAD_PROCESSING
from tracker.services.errors import BatchWriteFailure
from tracker.services.excel_parser import ParsedUpload, parse_upload
from tracker.services.reconcile import ChangeReconciler

logger = logging.getLogger("realm.ingest")

BatchWriter = Callable[[AsyncSession, list[dict], int, datetime], Awaitable[None]]


@dataclass
class IngestResult:
    snapshot_id: int
    kingdom: str
    timestamp: datetime
    rows_processed: int
    skipped_rows: int = 0
    name_changes: int = 0
    alliance_changes: int = 0
    players_marked_left: list[str] = field(default_factory=list)
    warnings: list[dict] = field(default_factory=list)
    upload_id: Optional[int] = None


def _describe(e: BaseException) -> str:
    return str(e) or type(e).__name__


def _upsert_statement(session: AsyncSession, values: list[dict]):
    """INSERT .. ON CONFLICT (lord_id) DO UPDATE for the session's dialect."""
    dialect = session.bind.dialect.name
    insert = pg_insert if dialect == "postgresql" else sqlite_insert
    stmt = insert(Player).values(values)
    # A backfilled older capture must not roll identity or presence back in time
    newer = Player.last_seen_at.is_(None) | (stmt.excluded.last_seen_at >= Player.last_seen_at)
    return stmt.on_conflict_do_update(
        index_elements=["lord_id"],
        set_={
            "current_name": case((newer, stmt.excluded.current_name), else_=Player.current_name),
            "last_seen_at": case((newer, stmt.excluded.last_seen_at), else_=Player.last_seen_at),
            "has_left_realm": case((newer, false()), else_=Player.has_left_realm),
            "left_realm_at": case((newer, null()), else_=Player.left_realm_at),
        },
    )


async def upsert_players(session: AsyncSession, batch: list[dict], snapshot_id: int, seen_at: datetime) -> None:
    """Refresh identity for every player in the batch. A reappearing player is no longer departed.

    Rows captured before the player's last_seen_at leave the Player untouched.
    """
    now = datetime.utcnow()
    values = [
        {
            "lord_id": row["lord_id"],
            "current_name": row["name"],
            "last_seen_at": seen_at,
            "has_left_realm": False,
            "left_realm_at": None,
            "created_at": now,
        }
        for row in batch
    ]
    await session.execute(_upsert_statement(session, values))


async def insert_player_snapshots(session: AsyncSession, batch: list[dict], snapshot_id: int, seen_at: datetime) -> None:
    session.add_all([
        PlayerSnapshot(
            player_id=row["lord_id"],
            snapshot_id=snapshot_id,
            **{k: v for k, v in row.items() if k != "lord_id"},
        )
        for row in batch
    ])


class SnapshotIngestService:
    """Writes one parsed upload into the ledger and runs reconciliation."""

    def __init__(
        self,
        session_factory=async_session_factory,
        batch_size: Optional[int] = None,
        batch_timeout: Optional[float] = None,
        reconciler: Optional[ChangeReconciler] = None,
    ):
        self._session_factory = session_factory
        self.batch_size = batch_size or config.INGEST_BATCH_SIZE
        self.batch_timeout = batch_timeout or config.INGEST_BATCH_TIMEOUT_SECONDS
        self.reconciler = reconciler or ChangeReconciler(session_factory)

    async def process_upload(self, filename: str, content: bytes, user_id: int) -> IngestResult:
        """Parse, record the Upload, ingest, and set the Upload's final status.

        Parse errors propagate before anything is written. A write failure
        marks the Upload FAILED with the error message and is re-raised;
        a BatchWriteFailure carries the upload id in its details.
        """
        started = time.monotonic()
        parsed = await asyncio.to_thread(parse_upload, filename, content)

        async with self._session_factory() as session:
            upload = Upload(filename=filename, user_id=user_id, status=UPLOAD_PROCESSING)
            session.add(upload)
            await session.commit()
            upload_id = upload.id
        logger.info("Created upload %d for %s", upload_id, filename)

        try:
            result = await self.ingest(parsed, upload_id=upload_id)
        except Exception as e:
            message = e.message if isinstance(e, BatchWriteFailure) else _describe(e)
            await self._finish_upload(upload_id, UPLOAD_FAILED, error=message)
            if isinstance(e, BatchWriteFailure):
                e.details["upload_id"] = upload_id
            logger.error(
                "Upload %d (%s) failed after %.2fs: %s",
                upload_id, filename, time.monotonic() - started, message,
            )
            raise
        await self._finish_upload(upload_id, UPLOAD_COMPLETED, rows_processed=result.rows_processed)
        result.upload_id = upload_id
        logger.info(
            "Upload %d completed: snapshot=%d players=%d duration=%.2fs",
            upload_id, result.snapshot_id, result.rows_processed, time.monotonic() - started,
        )
        return result

    async def ingest(self, parsed: ParsedUpload, upload_id: Optional[int] = None) -> IngestResult:
        """Write the snapshot and its rows, publish it, then reconcile."""
        info = parsed.info
        snapshot_time = to_db_time(info.timestamp)
        rows = parsed.rows

        async with self._session_factory() as session:
            snapshot = Snapshot(
                timestamp=snapshot_time,
                kingdom=info.kingdom,
                filename=info.filename,
                upload_id=upload_id,
                season_id=None,
                status=SNAPSHOT_PROCESSING,
            )
            session.add(snapshot)
            await session.commit()
            snapshot_id = snapshot.id
            logger.info("Created snapshot %d for kingdom %s at %s", snapshot_id, info.kingdom, snapshot_time)

            try:
                await self._run_batches(session, "Player upsert", rows, snapshot_id, snapshot_time, upsert_players)
                await self._run_batches(
                    session, "Player snapshot", rows, snapshot_id, snapshot_time, insert_player_snapshots
                )
            except BatchWriteFailure as e:
                await session.rollback()
                await self._set_snapshot_status(session, snapshot_id, SNAPSHOT_FAILED, error=e.message)
                raise
            await self._set_snapshot_status(session, snapshot_id, SNAPSHOT_COMPLETED)

        result = IngestResult(
            snapshot_id=snapshot_id,
            kingdom=info.kingdom,
            timestamp=as_utc(snapshot_time),
            rows_processed=len(rows),
            skipped_rows=parsed.skipped_rows,
        )

        # The snapshot is already published; reconciliation problems become warnings
        try:
            changes = await self.reconciler.reconcile(rows, snapshot_time, snapshot_id=snapshot_id)
        except Exception as e:
            logger.exception("Change detection failed for snapshot %d", snapshot_id)
            result.warnings.append({"player_id": None, "error": f"Change detection failed: {_describe(e)}"})
        else:
            result.name_changes = changes.name_changes
            result.alliance_changes = changes.alliance_changes
            result.warnings.extend(changes.warnings)

        try:
            result.players_marked_left = await self.reconciler.mark_departed(
                [row["lord_id"] for row in rows], snapshot_time
            )
        except Exception as e:
            logger.exception("Departure inference failed for snapshot %d", snapshot_id)
            result.warnings.append({"player_id": None, "error": f"Departure inference failed: {_describe(e)}"})

        logger.info(
            "Snapshot %d ingested: %d players, %d name changes, %d alliance changes, %d marked left",
            snapshot_id, result.rows_processed, result.name_changes,
            result.alliance_changes, len(result.players_marked_left),
        )
        return result

    async def _run_batches(
        self,
        session: AsyncSession,
        label: str,
        rows: list[dict],
        snapshot_id: int,
        snapshot_time: datetime,
        writer: BatchWriter,
    ) -> None:
        """Apply `writer` to fixed-size slices of rows, one bounded transaction per slice."""
        total = (len(rows) + self.batch_size - 1) // self.batch_size
        logger.info("%s: %d rows in %d batches of %d", label, len(rows), total, self.batch_size)
        for number, start in enumerate(range(0, len(rows), self.batch_size), start=1):
            batch = rows[start:start + self.batch_size]
            logger.debug("%s batch %d/%d", label, number, total)
            try:
                await asyncio.wait_for(
                    self._write_batch(session, batch, snapshot_id, snapshot_time, writer),
                    timeout=self.batch_timeout,
                )
            except Exception as e:
                logger.exception("%s batch %d/%d failed for snapshot %d", label, number, total, snapshot_id)
                raise BatchWriteFailure(
                    f"{label} batch {number}/{total} failed: {_describe(e)}",
                    snapshot_id=snapshot_id,
                    batch=number,
                ) from e

    @staticmethod
    async def _write_batch(
        session: AsyncSession,
        batch: list[dict],
        snapshot_id: int,
        snapshot_time: datetime,
        writer: BatchWriter,
    ) -> None:
        async with session.begin():
            await writer(session, batch, snapshot_id, snapshot_time)

    @staticmethod
    async def _set_snapshot_status(
        session: AsyncSession, snapshot_id: int, status: str, error: Optional[str] = None
    ) -> None:
        await session.execute(
            update(Snapshot).where(Snapshot.id == snapshot_id).values(status=status, error=error)
        )
        await session.commit()

    async def _finish_upload(
        self, upload_id: int, status: str, rows_processed: int = 0, error: Optional[str] = None
    ) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(Upload)
                .where(Upload.id == upload_id)
                .values(status=status, rows_processed=rows_processed, error=error)
            )
            await session.commit()
