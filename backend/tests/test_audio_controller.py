from __future__ import annotations

import asyncio
from typing import Any

import pytest

from app.monitoring.metrics import audio_connection_attempts_total, audio_sessions_active
from nooke.errors import AlreadyConnecting, PermissionDenied, TokenError, TransportError
from nooke.events import EventEmitter
from nooke.voice import signaling
from nooke.voice.controller import AudioSessionController
from nooke.voice.protocols import TransportCredentials
from nooke.voice.signaling import AudioConnectionState


class FakeTokenIssuer:
    def __init__(self, *, error: Exception | None = None, gate: asyncio.Event | None = None) -> None:
        self.error = error
        self.gate = gate
        self.calls: list[str] = []

    async def issue(self, room_id: str) -> TransportCredentials:
        self.calls.append(room_id)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return TransportCredentials(f"token-{room_id}", "wss://audio.example", "Study Hall")


class FakeConnection:
    def __init__(
        self,
        *,
        open_error: Exception | None = None,
        open_gate: asyncio.Event | None = None,
        remote: dict[str, bool] | None = None,
    ) -> None:
        self.events = EventEmitter()
        self.open_error = open_error
        self.open_gate = open_gate
        self.local_identity = "me"
        self.credentials: TransportCredentials | None = None
        self.closed = False
        self.mic_calls: list[bool] = []
        self._remote = dict(remote or {})

    async def open(self, credentials: TransportCredentials) -> None:
        self.credentials = credentials
        if self.open_gate is not None:
            await self.open_gate.wait()
        if self.open_error is not None:
            raise self.open_error
        self.events.emit(signaling.CONNECTION_STATE_CHANGED, "connected")

    async def close(self) -> None:
        self.closed = True

    async def set_microphone_enabled(self, enabled: bool) -> None:
        self.mic_calls.append(enabled)

    @property
    def microphone_enabled(self) -> bool:
        return bool(self.mic_calls and self.mic_calls[-1])

    def remote_microphones(self) -> dict[str, bool]:
        return dict(self._remote)


class FakeConnectionFactory:
    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.created: list[FakeConnection] = []

    def __call__(self) -> FakeConnection:
        connection = FakeConnection(**self.kwargs)
        self.created.append(connection)
        return connection


def make_controller(issuer=None, factory=None, **kwargs) -> AudioSessionController:
    return AudioSessionController(
        issuer or FakeTokenIssuer(),
        factory or FakeConnectionFactory(),
        **kwargs,
    )


def record_states(controller: AudioSessionController) -> list[AudioConnectionState]:
    states: list[AudioConnectionState] = []
    controller.events.on(signaling.STATE_CHANGED, lambda state, previous: states.append(state))
    return states


async def settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.anyio("asyncio")
async def test_connect_enables_microphone_and_arms_watchdog():
    factory = FakeConnectionFactory()
    issuer = FakeTokenIssuer()
    controller = make_controller(issuer, factory)
    states = record_states(controller)

    assert await controller.connect("room-1") is True

    assert states == [AudioConnectionState.CONNECTING, AudioConnectionState.CONNECTED]
    assert issuer.calls == ["room-1"]
    connection = factory.created[0]
    assert connection.credentials.access_token == "token-room-1"
    assert connection.mic_calls == [True]
    assert controller.microphone_enabled is True
    assert controller.watchdog.pending is True
    assert audio_connection_attempts_total.value("connected") == 1
    assert audio_sessions_active.value() == 1

    await controller.aclose()
    assert audio_sessions_active.value() == 0


@pytest.mark.anyio("asyncio")
async def test_second_connect_is_rejected_while_connected():
    controller = make_controller()
    await controller.connect("room-1")

    with pytest.raises(AlreadyConnecting):
        await controller.connect("room-2")

    assert controller.room_id == "room-1"
    await controller.aclose()


@pytest.mark.anyio("asyncio")
async def test_second_connect_is_rejected_while_connecting():
    gate = asyncio.Event()
    factory = FakeConnectionFactory()
    controller = make_controller(FakeTokenIssuer(gate=gate), factory)

    attempt = asyncio.create_task(controller.connect("room-1"))
    await settle()
    with pytest.raises(AlreadyConnecting):
        await controller.connect("room-1")

    gate.set()
    assert await attempt is True
    assert len(factory.created) == 1
    await controller.aclose()


@pytest.mark.anyio("asyncio")
async def test_token_failure_passes_through_error_to_disconnected():
    factory = FakeConnectionFactory()
    controller = make_controller(FakeTokenIssuer(error=TokenError("denied")), factory)
    states = record_states(controller)
    errors: list[Exception] = []
    controller.events.on(signaling.ERROR, errors.append)

    with pytest.raises(TokenError):
        await controller.connect("room-1")

    assert states == [
        AudioConnectionState.CONNECTING,
        AudioConnectionState.ERROR,
        AudioConnectionState.DISCONNECTED,
    ]
    assert factory.created == []
    assert len(errors) == 1
    assert controller.busy is False
    assert audio_connection_attempts_total.value("token_error") == 1


@pytest.mark.anyio("asyncio")
async def test_unexpected_token_exception_is_reported_as_token_error():
    controller = make_controller(FakeTokenIssuer(error=RuntimeError("boom")))

    with pytest.raises(TokenError):
        await controller.connect("room-1")

    assert controller.state is AudioConnectionState.DISCONNECTED


@pytest.mark.anyio("asyncio")
async def test_token_fetch_timeout_fails_connect():
    controller = make_controller(FakeTokenIssuer(gate=asyncio.Event()), token_timeout=0.05)

    with pytest.raises(TokenError):
        await controller.connect("room-1")

    assert controller.state is AudioConnectionState.DISCONNECTED


@pytest.mark.anyio("asyncio")
async def test_transport_failure_closes_connection_and_raises():
    factory = FakeConnectionFactory(open_error=OSError("unreachable"))
    controller = make_controller(factory=factory)
    states = record_states(controller)

    with pytest.raises(TransportError):
        await controller.connect("room-1")

    assert factory.created[0].closed is True
    assert states[-2:] == [AudioConnectionState.ERROR, AudioConnectionState.DISCONNECTED]
    assert audio_connection_attempts_total.value("transport_error") == 1


@pytest.mark.anyio("asyncio")
async def test_transport_open_timeout_fails_connect():
    factory = FakeConnectionFactory(open_gate=asyncio.Event())
    controller = make_controller(factory=factory, connect_timeout=0.05)

    with pytest.raises(TransportError):
        await controller.connect("room-1")

    assert factory.created[0].closed is True
    assert controller.state is AudioConnectionState.DISCONNECTED


@pytest.mark.anyio("asyncio")
async def test_refused_microphone_permission_raises_permission_denied():
    issuer = FakeTokenIssuer()

    async def refuse() -> bool:
        return False

    controller = make_controller(issuer, microphone_permission=refuse)

    with pytest.raises(PermissionDenied):
        await controller.connect("room-1")

    assert issuer.calls == []
    assert controller.state is AudioConnectionState.DISCONNECTED


@pytest.mark.anyio("asyncio")
async def test_disconnect_during_token_fetch_cancels_attempt():
    gate = asyncio.Event()
    issuer = FakeTokenIssuer(gate=gate)
    factory = FakeConnectionFactory()
    controller = make_controller(issuer, factory)

    attempt = asyncio.create_task(controller.connect("room-1"))
    await settle()
    stopping = asyncio.create_task(controller.disconnect())
    await settle()
    assert not stopping.done()

    gate.set()
    assert await attempt is False
    await stopping

    assert issuer.calls == ["room-1"]
    assert factory.created == []
    assert controller.state is AudioConnectionState.DISCONNECTED


@pytest.mark.anyio("asyncio")
async def test_disconnect_during_open_closes_resulting_connection():
    gate = asyncio.Event()
    factory = FakeConnectionFactory(open_gate=gate)
    controller = make_controller(factory=factory)

    attempt = asyncio.create_task(controller.connect("room-1"))
    await settle()
    stopping = asyncio.create_task(controller.disconnect())
    await settle()

    gate.set()
    assert await attempt is False
    await stopping

    assert factory.created[0].closed is True
    assert controller.state is AudioConnectionState.DISCONNECTED
    assert controller.watchdog.pending is False


@pytest.mark.anyio("asyncio")
@pytest.mark.parametrize("reported", [None, "reconnecting"])
async def test_disconnect_clears_speaking_set_from_any_state(reported):
    factory = FakeConnectionFactory()
    controller = make_controller(factory=factory)
    await controller.connect("room-1")
    connection = factory.created[0]
    connection.events.emit(signaling.ACTIVE_SPEAKERS_CHANGED, ["ana", "ben"])
    if reported is not None:
        connection.events.emit(signaling.CONNECTION_STATE_CHANGED, reported)
    assert controller.speaking == {"ana", "ben"}

    await controller.disconnect()
    await controller.disconnect()

    assert controller.speaking == frozenset()
    assert controller.state is AudioConnectionState.DISCONNECTED
    assert controller.microphone_enabled is False
    assert connection.closed is True


@pytest.mark.anyio("asyncio")
async def test_transport_reconnect_disarms_and_rearms_watchdog():
    factory = FakeConnectionFactory()
    controller = make_controller(factory=factory)
    states = record_states(controller)
    await controller.connect("room-1")
    connection = factory.created[0]

    connection.events.emit(signaling.CONNECTION_STATE_CHANGED, "reconnecting")
    assert controller.state is AudioConnectionState.RECONNECTING
    assert controller.watchdog.pending is False

    connection.events.emit(signaling.CONNECTION_STATE_CHANGED, "connected")
    assert controller.state is AudioConnectionState.CONNECTED
    assert controller.watchdog.pending is True

    connection.events.emit(signaling.CONNECTION_STATE_CHANGED, "connecting")
    assert controller.state is AudioConnectionState.RECONNECTING
    assert states[-3:] == [
        AudioConnectionState.RECONNECTING,
        AudioConnectionState.CONNECTED,
        AudioConnectionState.RECONNECTING,
    ]
    await controller.aclose()


@pytest.mark.anyio("asyncio")
async def test_unexpected_transport_disconnect_runs_cleanup():
    factory = FakeConnectionFactory()
    controller = make_controller(factory=factory)
    await controller.connect("room-1")
    connection = factory.created[0]
    connection.events.emit(signaling.ACTIVE_SPEAKERS_CHANGED, ["ana"])

    connection.events.emit(signaling.DISCONNECTED, "server shutdown")
    assert controller.state is AudioConnectionState.DISCONNECTED
    assert controller.speaking == frozenset()
    assert controller.watchdog.pending is False

    await settle()
    assert connection.closed is True
    assert controller.busy is False

    # A fresh connect is allowed afterwards.
    assert await controller.connect("room-1") is True
    await controller.aclose()


@pytest.mark.anyio("asyncio")
async def test_is_anyone_unmuted_tracks_local_and_remote_microphones():
    factory = FakeConnectionFactory(remote={"ana": True})
    controller = make_controller(factory=factory)
    assert controller.is_anyone_unmuted() is False

    await controller.connect("room-1")
    connection = factory.created[0]
    assert controller.is_anyone_unmuted() is True

    await controller.set_local_microphone_enabled(False)
    assert controller.is_anyone_unmuted() is False

    connection.events.emit(signaling.TRACK_UNMUTED, "ana")
    assert controller.is_anyone_unmuted() is True

    connection.events.emit(signaling.TRACK_MUTED, "ana")
    assert controller.is_anyone_unmuted() is False

    connection.events.emit(signaling.TRACK_UNMUTED, "me")
    assert controller.is_anyone_unmuted() is False
    await controller.aclose()


@pytest.mark.anyio("asyncio")
async def test_microphone_toggle_without_session_is_noop():
    controller = make_controller()

    assert await controller.set_local_microphone_enabled(True) is False
    assert controller.microphone_enabled is False
    assert controller.watchdog.pending is False


@pytest.mark.anyio("asyncio")
async def test_participant_departure_leaves_speaking_set():
    factory = FakeConnectionFactory(remote={"ana": False})
    controller = make_controller(factory=factory)
    updates: list[frozenset[str]] = []
    controller.events.on(signaling.SPEAKING_CHANGED, updates.append)
    await controller.connect("room-1")
    connection = factory.created[0]

    connection.events.emit(signaling.ACTIVE_SPEAKERS_CHANGED, ["ana"])
    connection.events.emit(signaling.PARTICIPANT_DISCONNECTED, "ana")

    assert updates == [frozenset({"ana"}), frozenset()]
    assert controller.is_anyone_unmuted() is True  # local mic still on
    await controller.aclose()


@pytest.mark.anyio("asyncio")
async def test_all_muted_session_signals_silence_exactly_once():
    controller = make_controller(silence_timeout=0.05)
    timeouts: list[None] = []
    controller.events.on(signaling.SILENCE_TIMEOUT, lambda: timeouts.append(None))
    await controller.connect("room-1")

    await controller.set_local_microphone_enabled(False)
    await asyncio.sleep(0.3)

    assert len(timeouts) == 1
    assert controller.watchdog.pending is False
    await controller.aclose()


@pytest.mark.anyio("asyncio")
async def test_remote_unmute_before_deadline_postpones_silence():
    factory = FakeConnectionFactory(remote={"ana": True})
    controller = make_controller(factory=factory, silence_timeout=0.3)
    timeouts: list[None] = []
    controller.events.on(signaling.SILENCE_TIMEOUT, lambda: timeouts.append(None))
    await controller.connect("room-1")
    await controller.set_local_microphone_enabled(False)

    await asyncio.sleep(0.2)
    factory.created[0].events.emit(signaling.TRACK_UNMUTED, "ana")
    await asyncio.sleep(0.2)

    assert timeouts == []
    assert controller.watchdog.pending is True
    await controller.aclose()
