"""Component facing session: facade and composition root."""

from .context import ClientSession  # noqa: F401
from .facade import LAST_ROOM_HINT, ROOM_CHANGED, HintStore, SessionFacade  # noqa: F401

__all__ = [
    "ClientSession",
    "HintStore",
    "LAST_ROOM_HINT",
    "ROOM_CHANGED",
    "SessionFacade",
]
