"""Owner of the single live audio session."""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Callable, Dict, FrozenSet, List

from app.monitoring.metrics import (
    audio_connection_attempts_total,
    audio_sessions_active,
    audio_silence_timeouts_total,
)

from ..errors import AlreadyConnecting, NookeError, PermissionDenied, TokenError, TransportError
from ..events import EventEmitter
from . import signaling
from .protocols import (
    AudioConnection,
    ConnectionFactory,
    MicrophonePermission,
    TokenIssuer,
    TransportCredentials,
)
from .signaling import AudioConnectionState
from .watchdog import DEFAULT_SILENCE_TIMEOUT, SilenceWatchdog

logger = logging.getLogger(__name__)

_LIVE_STATES = (AudioConnectionState.CONNECTED, AudioConnectionState.RECONNECTING)


def _record_attempt(outcome: str) -> None:
    audio_connection_attempts_total.labels(outcome).inc()


class AudioSessionController:
    """Drive one audio connection through its state machine.

    ``disconnected -> connecting -> connected <-> reconnecting``; failures
    while connecting pass through ``error`` and always end ``disconnected``.
    Consumers observe the controller through :attr:`events`:

    * ``state_changed(state, previous)``
    * ``speaking_changed(identities)``
    * ``microphone_changed(enabled)``
    * ``error(exc)``
    * ``silence_timeout()``
    """

    def __init__(
        self,
        token_issuer: TokenIssuer,
        connection_factory: ConnectionFactory,
        *,
        silence_timeout: float = DEFAULT_SILENCE_TIMEOUT,
        token_timeout: float = 10.0,
        connect_timeout: float = 15.0,
        microphone_permission: MicrophonePermission | None = None,
    ) -> None:
        self.events = EventEmitter()
        self._tokens = token_issuer
        self._connection_factory = connection_factory
        self._token_timeout = token_timeout
        self._connect_timeout = connect_timeout
        self._microphone_permission = microphone_permission
        self._watchdog = SilenceWatchdog(
            timeout=silence_timeout,
            is_anyone_unmuted=self.is_anyone_unmuted,
            on_timeout=self._on_silence_timeout,
        )

        self._state = AudioConnectionState.DISCONNECTED
        self._connection: AudioConnection | None = None
        self._room_id: str | None = None
        self._speaking: FrozenSet[str] = frozenset()
        self._remote_muted: Dict[str, bool] = {}
        self._local_microphone = False
        self._unsubscribers: List[Callable[[], None]] = []

        self._connecting = False
        self._abort_requested = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._closing: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------
    @property
    def state(self) -> AudioConnectionState:
        return self._state

    @property
    def room_id(self) -> str | None:
        return self._room_id

    @property
    def speaking(self) -> FrozenSet[str]:
        return self._speaking

    @property
    def microphone_enabled(self) -> bool:
        return self._local_microphone

    @property
    def connected(self) -> bool:
        return self._state is AudioConnectionState.CONNECTED

    @property
    def busy(self) -> bool:
        return self._connecting or self._connection is not None

    @property
    def watchdog(self) -> SilenceWatchdog:
        return self._watchdog

    def is_anyone_unmuted(self) -> bool:
        if self._local_microphone:
            return True
        return any(not muted for muted in self._remote_muted.values())

    # ------------------------------------------------------------------
    # Intents
    # ------------------------------------------------------------------
    async def connect(self, room_id: str) -> bool:
        """Open the audio session for ``room_id``.

        Returns ``False`` when a concurrent :meth:`disconnect` cancelled the
        attempt before it completed.
        """

        if self.busy:
            raise AlreadyConnecting(
                f"Audio session already {self._state.value} for room {self._room_id or room_id}"
            )
        self._connecting = True
        self._abort_requested = False
        self._idle.clear()
        self._set_state(AudioConnectionState.CONNECTING)
        logger.info("Connecting audio session", extra={"room_id": room_id})
        connection: AudioConnection | None = None
        try:
            await self._check_microphone_permission()
            credentials = await self._fetch_credentials(room_id)
            if self._abort_requested:
                return self._abandon(room_id, "cancelled")

            connection = self._connection_factory()
            self._observe(connection)
            await self._open(connection, credentials)
            if self._abort_requested:
                await self._discard(connection)
                connection = None
                return self._abandon(room_id, "cancelled")

            self._connection = connection
            self._room_id = room_id
            self._remote_muted = dict(connection.remote_microphones())
            self._set_state(AudioConnectionState.CONNECTED)
            audio_sessions_active.inc()
            await self._enable_microphone_on_connect(connection)
            self._watchdog.reset()
            _record_attempt("connected")
            logger.info(
                "Audio session connected",
                extra={"room_id": room_id, "room_display_name": credentials.room_display_name},
            )
            return True
        except asyncio.CancelledError:
            self._abandon(room_id, "cancelled")
            if connection is not None:
                await self._discard(connection)
            raise
        except NookeError as exc:
            if connection is not None and connection is not self._connection:
                await self._discard(connection)
            self._fail(room_id, exc)
            raise
        except Exception as exc:
            error = TransportError("Audio session setup failed")
            if connection is not None and connection is not self._connection:
                await self._discard(connection)
            self._fail(room_id, error)
            raise error from exc
        finally:
            self._connecting = False
            self._idle.set()

    async def disconnect(self) -> None:
        """Tear the session down; safe in every state."""

        if self._connecting:
            self._abort_requested = True
            await self._idle.wait()
        connection = self._release()
        if connection is not None:
            await self._close_connection(connection)
        if self._closing:
            await asyncio.gather(*list(self._closing), return_exceptions=True)

    async def set_local_microphone_enabled(self, enabled: bool) -> bool:
        """Toggle the local microphone; returns ``False`` without a session."""

        connection = self._connection
        if connection is None or self._state not in _LIVE_STATES:
            return False
        try:
            await connection.set_microphone_enabled(enabled)
        except NookeError:
            raise
        except Exception as exc:
            raise TransportError("Failed to toggle the local microphone") from exc
        if connection is not self._connection:
            return False
        self._set_local_microphone(enabled)
        if enabled:
            self._rearm()
        else:
            self._check_all_muted()
        return True

    async def aclose(self) -> None:
        await self.disconnect()
        await self._watchdog.aclose()
        await self.events.drain()

    # ------------------------------------------------------------------
    # Connect helpers
    # ------------------------------------------------------------------
    async def _check_microphone_permission(self) -> None:
        if self._microphone_permission is None:
            return
        if not await self._microphone_permission():
            raise PermissionDenied("Microphone access was refused")

    async def _fetch_credentials(self, room_id: str) -> TransportCredentials:
        try:
            return await asyncio.wait_for(self._tokens.issue(room_id), self._token_timeout)
        except TokenError:
            raise
        except asyncio.TimeoutError as exc:
            raise TokenError(f"Token request timed out after {self._token_timeout}s") from exc
        except NookeError:
            raise
        except Exception as exc:
            raise TokenError("Token request failed") from exc

    async def _open(
        self, connection: AudioConnection, credentials: TransportCredentials
    ) -> None:
        try:
            await asyncio.wait_for(connection.open(credentials), self._connect_timeout)
        except TransportError:
            raise
        except asyncio.TimeoutError as exc:
            raise TransportError(
                f"Audio transport did not connect within {self._connect_timeout}s"
            ) from exc
        except NookeError:
            raise
        except Exception as exc:
            raise TransportError("Audio transport failed to connect") from exc

    async def _enable_microphone_on_connect(self, connection: AudioConnection) -> None:
        try:
            await connection.set_microphone_enabled(True)
        except Exception:
            logger.exception("Failed to enable microphone after connecting")
            return
        self._set_local_microphone(True)

    def _abandon(self, room_id: str, outcome: str) -> bool:
        _record_attempt(outcome)
        logger.info("Audio connection attempt cancelled", extra={"room_id": room_id})
        self._release()
        return False

    def _fail(self, room_id: str, exc: NookeError) -> None:
        outcome = {
            PermissionDenied: "permission_denied",
            TokenError: "token_error",
            TransportError: "transport_error",
        }.get(type(exc), "error")
        _record_attempt(outcome)
        logger.warning(
            "Audio connection attempt failed",
            extra={"room_id": room_id, "reason": outcome, "error": str(exc)},
        )
        self._unobserve()
        self._set_state(AudioConnectionState.ERROR)
        self.events.emit(signaling.ERROR, exc)
        self._release()

    async def _discard(self, connection: AudioConnection) -> None:
        self._unobserve()
        await self._close_connection(connection)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------
    def _release(self) -> AudioConnection | None:
        """Apply the disconnected state locally and hand back the connection."""

        self._watchdog.cancel()
        connection, self._connection = self._connection, None
        if connection is not None:
            self._unobserve()
            audio_sessions_active.dec()
        self._room_id = None
        self._remote_muted.clear()
        if self._speaking:
            self._speaking = frozenset()
            self.events.emit(signaling.SPEAKING_CHANGED, self._speaking)
        self._set_local_microphone(False)
        self._set_state(AudioConnectionState.DISCONNECTED)
        return connection

    async def _close_connection(self, connection: AudioConnection) -> None:
        try:
            await connection.close()
        except Exception:
            logger.exception("Failed to close audio connection")

    def _schedule_close(self, connection: AudioConnection) -> None:
        task = asyncio.ensure_future(self._close_connection(connection))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    # ------------------------------------------------------------------
    # Transport observers
    # ------------------------------------------------------------------
    def _observe(self, connection: AudioConnection) -> None:
        handlers = {
            signaling.CONNECTION_STATE_CHANGED: self._on_connection_state,
            signaling.ACTIVE_SPEAKERS_CHANGED: self._on_active_speakers,
            signaling.TRACK_MUTED: self._on_track_muted,
            signaling.TRACK_UNMUTED: self._on_track_unmuted,
            signaling.PARTICIPANT_DISCONNECTED: self._on_participant_disconnected,
            signaling.DISCONNECTED: self._on_transport_disconnected,
        }
        for event, handler in handlers.items():
            self._unsubscribers.append(
                connection.events.on(event, functools.partial(handler, connection))
            )

    def _unobserve(self) -> None:
        unsubscribers, self._unsubscribers = self._unsubscribers, []
        for unsubscribe in unsubscribers:
            unsubscribe()

    def _on_connection_state(self, connection: AudioConnection, reported: Any) -> None:
        if connection is not self._connection:
            return
        state = signaling.normalise_transport_state(reported)
        if state is None:
            logger.debug("Ignoring unknown transport state", extra={"state": str(reported)})
            return
        if state in (AudioConnectionState.DISCONNECTED, AudioConnectionState.ERROR):
            self._on_transport_disconnected(connection)
            return
        next_state = signaling.map_reported_state(self._state, state)
        self._set_state(next_state)
        if next_state is AudioConnectionState.CONNECTED:
            self._watchdog.reset()
        else:
            self._watchdog.cancel()

    def _on_active_speakers(self, connection: AudioConnection, speakers: Any) -> None:
        if connection is not self._connection:
            return
        update = signaling.diff_speaking(self._speaking, speakers or ())
        if update.changed:
            self._speaking = update.speaking
            self.events.emit(signaling.SPEAKING_CHANGED, self._speaking)
        if update.speaking:
            self._rearm()

    def _on_track_muted(self, connection: AudioConnection, participant: Any) -> None:
        identity = self._remote_identity(connection, participant)
        if identity is None:
            return
        self._remote_muted[identity] = True
        self._check_all_muted()

    def _on_track_unmuted(self, connection: AudioConnection, participant: Any) -> None:
        identity = self._remote_identity(connection, participant)
        if identity is None:
            return
        self._remote_muted[identity] = False
        self._rearm()

    def _on_participant_disconnected(self, connection: AudioConnection, participant: Any) -> None:
        if connection is not self._connection:
            return
        identity = signaling.normalise_identity(participant)
        self._remote_muted.pop(identity, None)
        if identity in self._speaking:
            self._speaking = self._speaking - {identity}
            self.events.emit(signaling.SPEAKING_CHANGED, self._speaking)
        self._check_all_muted()

    def _on_transport_disconnected(self, connection: AudioConnection, *_: Any) -> None:
        if connection is not self._connection:
            return
        logger.warning(
            "Audio transport disconnected unexpectedly", extra={"room_id": self._room_id}
        )
        released = self._release()
        if released is not None:
            self._schedule_close(released)

    def _remote_identity(self, connection: AudioConnection, participant: Any) -> str | None:
        if connection is not self._connection:
            return None
        identity = signaling.normalise_identity(participant)
        if not identity or identity == connection.local_identity:
            return None
        return identity

    # ------------------------------------------------------------------
    # Silence tracking
    # ------------------------------------------------------------------
    def _rearm(self) -> None:
        if self._state is AudioConnectionState.CONNECTED:
            self._watchdog.reset()

    def _check_all_muted(self) -> None:
        if self._state is AudioConnectionState.CONNECTED and not self.is_anyone_unmuted():
            self._watchdog.reset()

    def _on_silence_timeout(self) -> None:
        if self._state is not AudioConnectionState.CONNECTED:
            return
        audio_silence_timeouts_total.inc()
        self.events.emit(signaling.SILENCE_TIMEOUT)

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------
    def _set_state(self, state: AudioConnectionState) -> None:
        previous = self._state
        if previous is state:
            return
        self._state = state
        logger.debug(
            "Audio state changed", extra={"state": state.value, "previous": previous.value}
        )
        self.events.emit(signaling.STATE_CHANGED, state, previous)

    def _set_local_microphone(self, enabled: bool) -> None:
        if self._local_microphone == enabled:
            return
        self._local_microphone = enabled
        self.events.emit(signaling.MICROPHONE_CHANGED, enabled)


__all__ = ["AudioSessionController", "AudioConnectionState"]
