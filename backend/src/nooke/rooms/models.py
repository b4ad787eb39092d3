"""Value objects exchanged between the room store and the coordination core."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping

ROOMS_TABLE = "rooms"
PARTICIPANTS_TABLE = "room_participants"

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"
CHANGE_ACTIONS = {INSERT, UPDATE, DELETE}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _format_datetime(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(slots=True)
class Room:
    """A named, creator-owned container for synchronous presence."""

    id: str
    creator_id: str
    name: str
    is_private: bool = False
    is_active: bool = True
    audio_active: bool = False
    created_at: datetime = field(default_factory=utcnow)
    closed_at: datetime | None = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "creator_id": self.creator_id,
            "name": self.name,
            "is_private": self.is_private,
            "is_active": self.is_active,
            "audio_active": self.audio_active,
            "created_at": _format_datetime(self.created_at),
            "closed_at": _format_datetime(self.closed_at),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Room":
        return cls(
            id=str(payload["id"]),
            creator_id=str(payload["creator_id"]),
            name=str(payload.get("name") or ""),
            is_private=bool(payload.get("is_private", False)),
            is_active=bool(payload.get("is_active", True)),
            audio_active=bool(payload.get("audio_active", False)),
            created_at=_parse_datetime(payload.get("created_at")) or utcnow(),
            closed_at=_parse_datetime(payload.get("closed_at")),
        )


@dataclass(slots=True)
class Participant:
    """A user's membership record in a room."""

    room_id: str
    user_id: str
    is_muted: bool = True
    joined_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> tuple[str, str]:
        return (self.room_id, self.user_id)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "room_id": self.room_id,
            "user_id": self.user_id,
            "is_muted": self.is_muted,
            "joined_at": _format_datetime(self.joined_at),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Participant":
        return cls(
            room_id=str(payload["room_id"]),
            user_id=str(payload["user_id"]),
            is_muted=bool(payload.get("is_muted", True)),
            joined_at=_parse_datetime(payload.get("joined_at")) or utcnow(),
        )


@dataclass(slots=True)
class ChangeEvent:
    """A single row change pushed by the store's change feed."""

    table: str
    action: str
    record: Dict[str, Any] = field(default_factory=dict)
    old_record: Dict[str, Any] = field(default_factory=dict)

    @property
    def room_id(self) -> str | None:
        """Return the room the changed row belongs to, if any."""

        row = self.record or self.old_record
        if self.table == ROOMS_TABLE:
            value = row.get("id")
        else:
            value = row.get("room_id")
        return str(value) if value is not None else None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "action": self.action,
            "record": dict(self.record),
            "old_record": dict(self.old_record),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ChangeEvent":
        action = str(payload.get("action", "")).upper()
        if action not in CHANGE_ACTIONS:
            raise ValueError(f"Unsupported change action '{action}'")
        return cls(
            table=str(payload["table"]),
            action=action,
            record=dict(payload.get("record") or {}),
            old_record=dict(payload.get("old_record") or {}),
        )


__all__ = [
    "ROOMS_TABLE",
    "PARTICIPANTS_TABLE",
    "INSERT",
    "UPDATE",
    "DELETE",
    "Room",
    "Participant",
    "ChangeEvent",
    "utcnow",
]
