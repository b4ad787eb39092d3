"""Application service helpers."""

from .cache import get_cache
from .room_store import SqlRoomStore, build_room_store, get_room_store

__all__ = [
    "SqlRoomStore",
    "build_room_store",
    "get_cache",
    "get_room_store",
]
