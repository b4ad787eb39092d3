"""Helpers for audio connection states and transport signals.

The controller reacts to raw reports from the audio transport (connection
state strings, active speaker lists, track mute flips). Keeping the mapping
rules in a tiny helper module keeps them isolated and testable.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, FrozenSet, Iterable, Mapping

# Event names emitted by an ``AudioConnection``.
CONNECTION_STATE_CHANGED = "connection_state_changed"
ACTIVE_SPEAKERS_CHANGED = "active_speakers_changed"
TRACK_MUTED = "track_muted"
TRACK_UNMUTED = "track_unmuted"
PARTICIPANT_DISCONNECTED = "participant_disconnected"
DISCONNECTED = "disconnected"

TRANSPORT_EVENTS = (
    CONNECTION_STATE_CHANGED,
    ACTIVE_SPEAKERS_CHANGED,
    TRACK_MUTED,
    TRACK_UNMUTED,
    PARTICIPANT_DISCONNECTED,
    DISCONNECTED,
)

# Event names emitted by the controller to its consumers.
STATE_CHANGED = "state_changed"
SPEAKING_CHANGED = "speaking_changed"
MICROPHONE_CHANGED = "microphone_changed"
ERROR = "error"
SILENCE_TIMEOUT = "silence_timeout"


class AudioConnectionState(str, Enum):
    """Lifecycle of the single live audio session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


# Transports report their own vocabulary; unknown values are ignored.
_TRANSPORT_STATE_ALIASES: Mapping[str, AudioConnectionState] = {
    "disconnected": AudioConnectionState.DISCONNECTED,
    "conn_disconnected": AudioConnectionState.DISCONNECTED,
    "connecting": AudioConnectionState.CONNECTING,
    "conn_connecting": AudioConnectionState.CONNECTING,
    "connected": AudioConnectionState.CONNECTED,
    "conn_connected": AudioConnectionState.CONNECTED,
    "reconnecting": AudioConnectionState.RECONNECTING,
    "conn_reconnecting": AudioConnectionState.RECONNECTING,
    "error": AudioConnectionState.ERROR,
    "failed": AudioConnectionState.ERROR,
}


def normalise_transport_state(value: Any) -> AudioConnectionState | None:
    """Return the connection state matching a transport report."""

    if isinstance(value, AudioConnectionState):
        return value
    raw = getattr(value, "name", value)
    if not isinstance(raw, str):
        return None
    return _TRANSPORT_STATE_ALIASES.get(raw.strip().lower())


def map_reported_state(
    current: AudioConnectionState, reported: AudioConnectionState
) -> AudioConnectionState:
    """Translate a transport report into the next controller state.

    Once a session is established a fresh ``connecting`` report means the
    transport is re-establishing media, which surfaces as ``reconnecting``.
    """

    if reported is AudioConnectionState.CONNECTING and current in (
        AudioConnectionState.CONNECTED,
        AudioConnectionState.RECONNECTING,
    ):
        return AudioConnectionState.RECONNECTING
    return reported


@dataclass(slots=True, frozen=True)
class SpeakingUpdate:
    """Difference between two speaking sets."""

    speaking: FrozenSet[str]
    started: FrozenSet[str]
    stopped: FrozenSet[str]

    @property
    def changed(self) -> bool:
        return bool(self.started or self.stopped)


def diff_speaking(previous: Iterable[str], identities: Iterable[Any]) -> SpeakingUpdate:
    """Compute the new speaking set from an active speaker report."""

    before = frozenset(previous)
    after = frozenset(normalise_identity(item) for item in identities)
    after = frozenset(item for item in after if item)
    return SpeakingUpdate(speaking=after, started=after - before, stopped=before - after)


def normalise_identity(value: Any) -> str:
    """Return the participant identity carried by a transport object."""

    if isinstance(value, str):
        return value.strip()
    identity = getattr(value, "identity", None)
    if isinstance(identity, str):
        return identity.strip()
    return ""


__all__ = [
    "ACTIVE_SPEAKERS_CHANGED",
    "AudioConnectionState",
    "CONNECTION_STATE_CHANGED",
    "DISCONNECTED",
    "ERROR",
    "MICROPHONE_CHANGED",
    "PARTICIPANT_DISCONNECTED",
    "SILENCE_TIMEOUT",
    "SPEAKING_CHANGED",
    "STATE_CHANGED",
    "SpeakingUpdate",
    "TRACK_MUTED",
    "TRACK_UNMUTED",
    "TRANSPORT_EVENTS",
    "diff_speaking",
    "map_reported_state",
    "normalise_identity",
    "normalise_transport_state",
]
