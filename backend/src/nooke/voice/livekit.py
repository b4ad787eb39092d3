"""Audio transport adapter for the LiveKit realtime SDK."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Mapping

try:  # pragma: no cover - optional dependency
    from livekit import rtc
except ImportError:  # pragma: no cover - install the 'livekit' extra
    rtc = None  # type: ignore[assignment]

from ..errors import TransportError
from ..events import EventEmitter
from . import signaling
from .protocols import TransportCredentials

logger = logging.getLogger(__name__)

SAMPLE_RATE_HZ = 48000
NUM_CHANNELS = 1
MICROPHONE_TRACK_NAME = "microphone"


def _require_sdk() -> None:
    if rtc is None:
        raise TransportError("LiveKit SDK is not installed; install the 'livekit' extra")


class LiveKitConnection:
    """Wraps an ``rtc.Room`` behind the ``AudioConnection`` contract.

    Room callbacks are translated into ``events`` carrying participant
    identities. Microphone capture is outside this adapter; the published
    track is fed through :attr:`microphone_source` by the capture layer.
    """

    def __init__(self, room_factory: Callable[[], Any] | None = None) -> None:
        _require_sdk()
        self.events = EventEmitter()
        self._room = room_factory() if room_factory is not None else rtc.Room()
        self._source: Any | None = None
        self._track: Any | None = None
        self._microphone_enabled = False
        self._closed = False
        self._states = {
            rtc.ConnectionState.CONN_DISCONNECTED: signaling.AudioConnectionState.DISCONNECTED,
            rtc.ConnectionState.CONN_CONNECTED: signaling.AudioConnectionState.CONNECTED,
            rtc.ConnectionState.CONN_RECONNECTING: signaling.AudioConnectionState.RECONNECTING,
        }
        self._bind_room_events()

    @property
    def room(self) -> Any:
        return self._room

    @property
    def microphone_source(self) -> Any | None:
        return self._source

    @property
    def microphone_enabled(self) -> bool:
        return self._microphone_enabled

    @property
    def local_identity(self) -> str | None:
        participant = getattr(self._room, "local_participant", None)
        identity = getattr(participant, "identity", None)
        return identity or None

    def _bind_room_events(self) -> None:
        room = self._room

        def on_connection_state_changed(state: Any) -> None:
            mapped = self._states.get(state)
            if mapped is None:
                logger.debug("Ignoring LiveKit connection state", extra={"state": str(state)})
                return
            self.events.emit(signaling.CONNECTION_STATE_CHANGED, mapped)

        def on_active_speakers_changed(speakers: Any) -> None:
            identities = [signaling.normalise_identity(item) for item in speakers or ()]
            self.events.emit(signaling.ACTIVE_SPEAKERS_CHANGED, identities)

        def on_track_muted(participant: Any, publication: Any) -> None:
            if self._is_audio(publication):
                self.events.emit(signaling.TRACK_MUTED, signaling.normalise_identity(participant))

        def on_track_unmuted(participant: Any, publication: Any) -> None:
            if self._is_audio(publication):
                self.events.emit(signaling.TRACK_UNMUTED, signaling.normalise_identity(participant))

        def on_participant_disconnected(participant: Any) -> None:
            self.events.emit(
                signaling.PARTICIPANT_DISCONNECTED, signaling.normalise_identity(participant)
            )

        def on_disconnected(reason: Any = None) -> None:
            if self._closed:
                return
            logger.info("LiveKit room disconnected", extra={"reason": str(reason)})
            self.events.emit(signaling.DISCONNECTED, reason)

        room.on("connection_state_changed", on_connection_state_changed)
        room.on("active_speakers_changed", on_active_speakers_changed)
        room.on("track_muted", on_track_muted)
        room.on("track_unmuted", on_track_unmuted)
        room.on("participant_disconnected", on_participant_disconnected)
        room.on("disconnected", on_disconnected)

    @staticmethod
    def _is_audio(publication: Any) -> bool:
        kind = getattr(publication, "kind", None)
        return kind is None or kind == rtc.TrackKind.KIND_AUDIO

    async def open(self, credentials: TransportCredentials) -> None:
        try:
            await self._room.connect(credentials.server_url, credentials.access_token)
        except Exception as exc:
            raise TransportError(f"Failed to join LiveKit room: {exc}") from exc
        logger.info(
            "Joined LiveKit room",
            extra={"room": credentials.room_display_name, "identity": self.local_identity},
        )

    async def set_microphone_enabled(self, enabled: bool) -> None:
        if enabled and self._track is None:
            await self._publish_microphone()
        elif self._track is not None:
            if enabled:
                self._track.unmute()
            else:
                self._track.mute()
        self._microphone_enabled = enabled

    async def _publish_microphone(self) -> None:
        self._source = rtc.AudioSource(SAMPLE_RATE_HZ, NUM_CHANNELS)
        self._track = rtc.LocalAudioTrack.create_audio_track(MICROPHONE_TRACK_NAME, self._source)
        await self._room.local_participant.publish_track(
            self._track,
            rtc.TrackPublishOptions(source=rtc.TrackSource.SOURCE_MICROPHONE),
        )
        logger.info("Microphone track published", extra={"identity": self.local_identity})

    def remote_microphones(self) -> Mapping[str, bool]:
        result: Dict[str, bool] = {}
        participants = getattr(self._room, "remote_participants", {}) or {}
        for identity, participant in participants.items():
            publications = getattr(participant, "track_publications", {}) or {}
            for publication in publications.values():
                if self._is_audio(publication):
                    result[str(identity)] = bool(getattr(publication, "muted", True))
                    break
        return result

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._room.disconnect()
        finally:
            self._track = None
            self._source = None
            self._microphone_enabled = False
            self.events.clear()


def livekit_connection_factory() -> LiveKitConnection:
    return LiveKitConnection()


__all__ = ["LiveKitConnection", "livekit_connection_factory"]
