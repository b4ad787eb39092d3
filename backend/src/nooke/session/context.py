"""Composition root owning the process wide session resources."""

from __future__ import annotations

import logging
from typing import Any

from app.config import Settings, get_settings
from app.services.cache import get_cache

from ..errors import NotAuthenticated
from ..identity import Identity
from ..realtime.presence import PresenceSync
from ..rooms.lifecycle import RoomLifecycleManager
from ..rooms.store import RoomStore
from ..voice.controller import AudioSessionController
from ..voice.protocols import ConnectionFactory, MicrophonePermission, TokenIssuer
from .facade import HintStore, SessionFacade

logger = logging.getLogger(__name__)


def _default_connection_factory() -> ConnectionFactory:
    from ..voice.livekit import livekit_connection_factory

    return livekit_connection_factory


class ClientSession:
    """Holds the signed-in identity and the components built around it.

    One instance owns the audio connection, the presence feed binding and the
    silence timer; tests build independent sessions instead of sharing
    module level state.
    """

    def __init__(
        self,
        *,
        store: RoomStore,
        settings: Settings,
        token_issuer: TokenIssuer | None = None,
        connection_factory: ConnectionFactory | None = None,
        hints: HintStore | None = None,
        microphone_permission: MicrophonePermission | None = None,
        identity: Identity | None = None,
    ) -> None:
        self._identity = identity
        self.settings = settings
        self.store = store
        self.rooms = RoomLifecycleManager(
            store,
            self.current_identity,
            close_requires_creator=settings.room_close_requires_creator,
        )
        self.presence = PresenceSync(
            store, throttle_seconds=settings.presence_refresh_throttle_seconds
        )
        self.audio = AudioSessionController(
            token_issuer or self._http_token_issuer(),
            connection_factory or _default_connection_factory(),
            silence_timeout=settings.audio_silence_timeout_seconds,
            token_timeout=settings.audio_token_timeout_seconds,
            connect_timeout=settings.audio_connect_timeout_seconds,
            microphone_permission=microphone_permission,
        )
        self.facade = SessionFacade(
            self.rooms,
            self.presence,
            self.audio,
            self.current_identity,
            hints=hints,
            hint_ttl_seconds=settings.hint_ttl_seconds,
        )

    @classmethod
    def create(
        cls,
        *,
        store: RoomStore | None = None,
        settings: Settings | None = None,
        **kwargs: Any,
    ) -> "ClientSession":
        """Build a session, filling unset collaborators from settings."""

        settings = settings or get_settings()
        if store is None:
            from app.services.room_store import build_room_store

            store = build_room_store(settings)
        kwargs.setdefault("hints", get_cache())
        return cls(store=store, settings=settings, **kwargs)

    def _http_token_issuer(self) -> TokenIssuer:
        from ..voice.tokens import HttpTokenIssuer

        if self.settings.voice_token_endpoint is None:
            raise ValueError("VOICE_TOKEN_ENDPOINT must be configured to fetch transport tokens")

        def access_token() -> str | None:
            identity = self._identity
            return identity.access_token if identity is not None else None

        return HttpTokenIssuer(
            str(self.settings.voice_token_endpoint),
            access_token,
            timeout=self.settings.audio_token_timeout_seconds,
        )

    def current_identity(self) -> Identity | None:
        return self._identity

    @property
    def identity(self) -> Identity:
        if self._identity is None:
            raise NotAuthenticated("No user is signed in")
        return self._identity

    def sign_in(self, identity: Identity) -> None:
        if self._identity is not None and self._identity.user_id != identity.user_id:
            raise ValueError("Sign out before switching users")
        self._identity = identity
        logger.info("Session signed in", extra={"user_id": identity.user_id})

    async def sign_out(self) -> None:
        try:
            await self.facade.close()
        finally:
            self._identity = None

    async def close(self) -> None:
        try:
            await self.facade.close()
        finally:
            self.facade.detach()
            await self.audio.aclose()
            await self.presence.aclose()


__all__ = ["ClientSession"]
