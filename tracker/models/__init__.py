"""Database models."""
from tracker.models.base import Base, as_utc, async_session_factory, init_db, to_db_time
from tracker.models.user import User
from tracker.models.upload import Upload
from tracker.models.player import Player
from tracker.models.snapshot import Snapshot
from tracker.models.player_snapshot import PlayerSnapshot
from tracker.models.change import AllianceChange, NameChange

__all__ = [
    "Base",
    "User",
    "Upload",
    "Player",
    "Snapshot",
    "PlayerSnapshot",
    "NameChange",
    "AllianceChange",
    "as_utc",
    "async_session_factory",
    "to_db_time",
    "init_db",
]
