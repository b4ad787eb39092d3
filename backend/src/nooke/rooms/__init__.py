"""Room records, the store contract and the lifecycle manager."""

from .lifecycle import RoomLifecycleManager  # noqa: F401
from .models import (  # noqa: F401
    PARTICIPANTS_TABLE,
    ROOMS_TABLE,
    ChangeEvent,
    Participant,
    Room,
)
from .store import RoomStore  # noqa: F401

__all__ = [
    "ChangeEvent",
    "PARTICIPANTS_TABLE",
    "Participant",
    "ROOMS_TABLE",
    "Room",
    "RoomLifecycleManager",
    "RoomStore",
]
