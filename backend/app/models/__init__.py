"""Database models package."""

from .base import Base
from .rooms import Room, RoomParticipant

__all__ = [
    "Base",
    "Room",
    "RoomParticipant",
]
