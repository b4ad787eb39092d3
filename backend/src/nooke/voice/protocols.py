"""Contracts of the token issuer and the audio transport."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Mapping, Protocol

from ..events import EventEmitter


@dataclass(slots=True, frozen=True)
class TransportCredentials:
    """Short-lived, room-scoped access to the audio transport."""

    access_token: str
    server_url: str
    room_display_name: str | None = None


class TokenIssuer(Protocol):
    async def issue(self, room_id: str) -> TransportCredentials:
        """Return credentials for ``room_id`` or raise ``TokenError``."""


class AudioConnection(Protocol):
    """A single connection to the audio transport.

    ``events`` emits the names listed in
    :data:`nooke.voice.signaling.TRANSPORT_EVENTS`; observers must be
    registered before :meth:`open` is awaited.
    """

    events: EventEmitter

    async def open(self, credentials: TransportCredentials) -> None:
        ...

    async def close(self) -> None:
        ...

    async def set_microphone_enabled(self, enabled: bool) -> None:
        ...

    @property
    def microphone_enabled(self) -> bool:
        ...

    @property
    def local_identity(self) -> str | None:
        ...

    def remote_microphones(self) -> Mapping[str, bool]:
        """Return ``identity -> muted`` for every remote audio track."""


ConnectionFactory = Callable[[], AudioConnection]
MicrophonePermission = Callable[[], Awaitable[bool]]


__all__ = [
    "AudioConnection",
    "ConnectionFactory",
    "MicrophonePermission",
    "TokenIssuer",
    "TransportCredentials",
]
