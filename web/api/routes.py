"""API routes for export uploads and the snapshot ledger."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile
from pydantic import AfterValidator, BaseModel, ConfigDict
from sqlalchemy import func, select

import config
from tracker.models import (
    AllianceChange,
    NameChange,
    Player,
    PlayerSnapshot,
    Snapshot,
    Upload,
    User,
    as_utc,
    async_session_factory,
)
from tracker.models.snapshot import SNAPSHOT_COMPLETED
from tracker.models.upload import UPLOAD_COMPLETED, UPLOAD_FAILED, UPLOAD_PROCESSING
from tracker.services.errors import BatchWriteFailure, IngestError
from tracker.services.ingest import SnapshotIngestService
from tracker.services.reconcile import ChangeReconciler
from web.auth import require_admin_user

logger = logging.getLogger("realm.api")

router = APIRouter(prefix="/api", tags=["ledger"])


# --- Pydantic schemas ---


# Timestamps are stored as naive UTC; responses carry an explicit UTC offset
UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class UploadResultResponse(BaseModel):
    upload_id: int
    snapshot_id: int
    kingdom: str
    timestamp: UtcDatetime
    rows_processed: int
    skipped_rows: int
    name_changes: int
    alliance_changes: int
    players_marked_left: list[str]
    warnings: list[dict]
    message: str


class UploadHistoryItem(BaseModel):
    id: int
    filename: str
    status: str
    rows_processed: int
    error: Optional[str]
    uploaded_by: Optional[str]
    created_at: Optional[UtcDatetime]


class SnapshotSummary(BaseModel):
    id: int
    timestamp: UtcDatetime
    kingdom: str
    filename: str
    player_count: int


class NameChangeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    player_id: str
    old_name: str
    new_name: str
    detected_at: UtcDatetime


class AllianceChangeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    player_id: str
    old_alliance: Optional[str]
    old_alliance_id: Optional[str]
    new_alliance: Optional[str]
    new_alliance_id: Optional[str]
    detected_at: UtcDatetime


class PlayerSnapshotResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    snapshot_id: int
    timestamp: Optional[UtcDatetime] = None
    name: str
    division: int
    alliance_tag: Optional[str]
    current_power: str
    power: str
    merits: str
    units_killed: str
    units_dead: str
    units_healed: str
    victories: int
    defeats: int
    helps_given: int
    city_level: int
    faction: Optional[str]


class PlayerProfileResponse(BaseModel):
    lord_id: str
    current_name: str
    last_seen_at: Optional[UtcDatetime]
    has_left_realm: bool
    left_realm_at: Optional[UtcDatetime]
    name_history: list[NameChangeResponse]
    alliance_history: list[AllianceChangeResponse]
    snapshots: list[PlayerSnapshotResponse]


class ChangesResponse(BaseModel):
    name_changes: list[NameChangeResponse]
    alliance_changes: list[AllianceChangeResponse]


class LastKnownData(BaseModel):
    snapshot_timestamp: UtcDatetime
    alliance_tag: Optional[str]
    city_level: int
    current_power: str
    merits: str
    victories: int
    defeats: int


class LeftRealmPlayer(BaseModel):
    lord_id: str
    current_name: str
    last_seen_at: Optional[UtcDatetime]
    left_realm_at: Optional[UtcDatetime]
    days_gone: Optional[int]
    last_known: Optional[LastKnownData]


class LeftRealmResponse(BaseModel):
    reference_time: Optional[UtcDatetime]
    days_ago: int
    total: int
    players: list[LeftRealmPlayer]


class RealmRebuildResponse(BaseModel):
    reference_time: Optional[UtcDatetime]
    players_checked: int
    names_fixed: int
    marked_left: list[str]
    restored_active: list[str]


# --- Uploads ---


@router.post("/data/upload", response_model=UploadResultResponse)
async def upload_export(file: UploadFile = File(...), admin: User = Depends(require_admin_user)):
    """Ingest a kingdom export (admin only). Filename must look like 671_20250810_2040utc.xlsx."""
    if file.size is not None and file.size > config.MAX_UPLOAD_BYTES:
        raise HTTPException(413, f"File exceeds {config.MAX_UPLOAD_BYTES} bytes")
    content = await file.read(config.MAX_UPLOAD_BYTES + 1)
    if len(content) > config.MAX_UPLOAD_BYTES:
        raise HTTPException(413, f"File exceeds {config.MAX_UPLOAD_BYTES} bytes")
    logger.info("Upload initiated: %s (%d bytes) by %s", file.filename, len(content), admin.username)
    try:
        result = await SnapshotIngestService().process_upload(file.filename or "", content, admin.id)
    except BatchWriteFailure as e:
        # Underlying message is kept on the Upload row for operators
        raise HTTPException(
            500, detail={"message": "Upload processing failed", "upload_id": e.details.get("upload_id")}
        )
    except IngestError as e:
        logger.info("Upload rejected: %s (%s)", file.filename, e.message)
        raise HTTPException(400, detail={"message": e.message, **e.details})
    return UploadResultResponse(
        upload_id=result.upload_id,
        snapshot_id=result.snapshot_id,
        kingdom=result.kingdom,
        timestamp=result.timestamp,
        rows_processed=result.rows_processed,
        skipped_rows=result.skipped_rows,
        name_changes=result.name_changes,
        alliance_changes=result.alliance_changes,
        players_marked_left=result.players_marked_left,
        warnings=result.warnings,
        message=f"Successfully processed {result.rows_processed} players",
    )


@router.get("/data/upload", response_model=list[UploadHistoryItem])
async def upload_history(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    status: Optional[str] = None,
    admin: User = Depends(require_admin_user),
):
    """Recent uploads, newest first (admin only)."""
    if status is not None and status not in (UPLOAD_PROCESSING, UPLOAD_COMPLETED, UPLOAD_FAILED):
        raise HTTPException(400, "Invalid status")
    async with async_session_factory() as session:
        query = select(Upload, User.username).outerjoin(User, Upload.user_id == User.id)
        if status:
            query = query.where(Upload.status == status)
        result = await session.execute(
            query.order_by(Upload.created_at.desc(), Upload.id.desc()).limit(limit).offset(offset)
        )
        return [
            UploadHistoryItem(
                id=u.id,
                filename=u.filename,
                status=u.status,
                rows_processed=u.rows_processed or 0,
                error=u.error,
                uploaded_by=username,
                created_at=u.created_at,
            )
            for u, username in result.all()
        ]


# --- Snapshots & players ---


@router.get("/data/snapshots", response_model=list[SnapshotSummary])
async def list_snapshots(
    kingdom: Optional[str] = None,
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """Published snapshots, newest capture first, with player counts."""
    async with async_session_factory() as session:
        query = (
            select(Snapshot, func.count(PlayerSnapshot.id))
            .outerjoin(PlayerSnapshot, PlayerSnapshot.snapshot_id == Snapshot.id)
            .where(Snapshot.status == SNAPSHOT_COMPLETED)
            .group_by(Snapshot.id)
        )
        if kingdom:
            query = query.where(Snapshot.kingdom == kingdom)
        result = await session.execute(
            query.order_by(Snapshot.timestamp.desc(), Snapshot.id.desc()).limit(limit).offset(offset)
        )
        return [
            SnapshotSummary(
                id=s.id, timestamp=s.timestamp, kingdom=s.kingdom, filename=s.filename, player_count=count
            )
            for s, count in result.all()
        ]


@router.get("/data/players/{lord_id}", response_model=PlayerProfileResponse)
async def get_player(lord_id: str):
    """Player identity with name/alliance history and recent snapshot rows."""
    async with async_session_factory() as session:
        player = await session.get(Player, lord_id)
        if not player:
            raise HTTPException(404, "Player not found")
        names = await session.execute(
            select(NameChange)
            .where(NameChange.player_id == lord_id)
            .order_by(NameChange.detected_at.desc(), NameChange.id.desc())
            .limit(50)
        )
        alliances = await session.execute(
            select(AllianceChange)
            .where(AllianceChange.player_id == lord_id)
            .order_by(AllianceChange.detected_at.desc(), AllianceChange.id.desc())
            .limit(50)
        )
        rows = await session.execute(
            select(PlayerSnapshot, Snapshot.timestamp)
            .join(Snapshot, PlayerSnapshot.snapshot_id == Snapshot.id)
            .where(PlayerSnapshot.player_id == lord_id, Snapshot.status == SNAPSHOT_COMPLETED)
            .order_by(Snapshot.timestamp.desc(), Snapshot.id.desc())
            .limit(100)
        )
        snapshots = [
            PlayerSnapshotResponse(**{**PlayerSnapshotResponse.model_validate(ps).model_dump(), "timestamp": ts})
            for ps, ts in rows.all()
        ]
        return PlayerProfileResponse(
            lord_id=player.lord_id,
            current_name=player.current_name,
            last_seen_at=player.last_seen_at,
            has_left_realm=player.has_left_realm,
            left_realm_at=player.left_realm_at,
            name_history=[NameChangeResponse.model_validate(n) for n in names.scalars().all()],
            alliance_history=[AllianceChangeResponse.model_validate(a) for a in alliances.scalars().all()],
            snapshots=snapshots,
        )


@router.get("/players/left-realm", response_model=LeftRealmResponse)
async def list_left_realm(
    days_ago: int = Query(30, ge=1, le=3650),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Players flagged as departed, most recently detected first, with their last known stats.

    The `days_ago` window is measured back from the latest published snapshot.
    """
    async with async_session_factory() as session:
        reference = (
            await session.execute(
                select(func.max(Snapshot.timestamp)).where(Snapshot.status == SNAPSHOT_COMPLETED)
            )
        ).scalar_one_or_none()
        if reference is None:
            return LeftRealmResponse(reference_time=None, days_ago=days_ago, total=0, players=[])
        window = (Player.has_left_realm.is_(True), Player.left_realm_at >= reference - timedelta(days=days_ago))
        total = (await session.execute(select(func.count()).select_from(Player).where(*window))).scalar_one()
        result = await session.execute(
            select(Player)
            .where(*window)
            .order_by(Player.left_realm_at.desc(), Player.lord_id)
            .limit(limit)
            .offset(offset)
        )
        reconciler = ChangeReconciler()
        players = []
        for player in result.scalars().all():
            last_known = None
            latest = await reconciler.latest_snapshot_for(session, player.lord_id)
            if latest:
                row, ts = latest
                last_known = LastKnownData(
                    snapshot_timestamp=ts,
                    alliance_tag=row.alliance_tag,
                    city_level=row.city_level,
                    current_power=row.current_power,
                    merits=row.merits,
                    victories=row.victories,
                    defeats=row.defeats,
                )
            players.append(
                LeftRealmPlayer(
                    lord_id=player.lord_id,
                    current_name=player.current_name,
                    last_seen_at=player.last_seen_at,
                    left_realm_at=player.left_realm_at,
                    days_gone=(reference - player.last_seen_at).days if player.last_seen_at else None,
                    last_known=last_known,
                )
            )
        return LeftRealmResponse(reference_time=reference, days_ago=days_ago, total=total, players=players)


@router.get("/changes", response_model=ChangesResponse)
async def list_changes(limit: int = Query(50, ge=1, le=500)):
    """Most recent name and alliance change events."""
    async with async_session_factory() as session:
        names = await session.execute(
            select(NameChange).order_by(NameChange.detected_at.desc(), NameChange.id.desc()).limit(limit)
        )
        alliances = await session.execute(
            select(AllianceChange)
            .order_by(AllianceChange.detected_at.desc(), AllianceChange.id.desc())
            .limit(limit)
        )
        return ChangesResponse(
            name_changes=[NameChangeResponse.model_validate(n) for n in names.scalars().all()],
            alliance_changes=[AllianceChangeResponse.model_validate(a) for a in alliances.scalars().all()],
        )


# --- Admin ---


@router.post("/admin/realm-status/rebuild", response_model=RealmRebuildResponse)
async def rebuild_realm_status(admin: User = Depends(require_admin_user)):
    """Recompute player identity and left-realm flags from the snapshot ledger (admin only)."""
    result = await ChangeReconciler().rebuild_realm_status()
    return RealmRebuildResponse(
        reference_time=result.reference_time,
        players_checked=result.players_checked,
        names_fixed=result.names_fixed,
        marked_left=result.marked_left,
        restored_active=result.restored_active,
    )
