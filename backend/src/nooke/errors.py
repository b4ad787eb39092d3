"""Error taxonomy shared by the room and audio coordination layers."""

from __future__ import annotations


class NookeError(Exception):
    """Base class for failures surfaced to callers of the coordination core."""


class NotFound(NookeError):
    """Raised when a room or participant record does not exist."""


class AlreadyClosed(NookeError):
    """Raised when joining a room that is no longer active."""


class PermissionDenied(NookeError):
    """Raised when the device or the backend refuses an operation."""


class NotAuthenticated(PermissionDenied):
    """Raised when an operation requires a signed-in user."""


class TokenError(NookeError):
    """Raised when a transport access token cannot be issued."""


class TransportError(NookeError):
    """Raised when the audio transport fails to open or stay connected."""


class AlreadyConnecting(NookeError):
    """Raised when a second audio connection is requested while one exists."""


class BackendError(NookeError):
    """Generic data store failure."""


class Conflict(BackendError):
    """Raised when a write violates a uniqueness constraint."""


__all__ = [
    "NookeError",
    "NotFound",
    "AlreadyClosed",
    "PermissionDenied",
    "NotAuthenticated",
    "TokenError",
    "TransportError",
    "AlreadyConnecting",
    "BackendError",
    "Conflict",
]
