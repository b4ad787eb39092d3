"""Token helpers for API bearer tokens and audio transport grants."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import jwt
from fastapi import HTTPException, status
from livekit.api import AccessToken, VideoGrants

from app.config import get_settings

settings = get_settings()


def create_access_token(data: Dict[str, Any], expires_delta: timedelta | None = None) -> str:
    """Create a signed JWT access token with an expiration time."""

    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta if expires_delta is not None else timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Dict[str, Any]:
    """Decode and validate a JWT access token."""

    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError as exc:  # pragma: no cover - simple error mapping
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token has expired") from exc
    except jwt.InvalidTokenError as exc:  # pragma: no cover - simple error mapping
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Could not validate credentials") from exc
    return payload


def create_transport_token(
    *,
    identity: str,
    room: str,
    name: str | None = None,
    can_publish: bool = True,
    can_subscribe: bool = True,
    ttl: timedelta | None = None,
) -> str:
    """Issue a LiveKit access token that can only join ``room``."""

    lifetime = ttl if ttl is not None else timedelta(minutes=settings.livekit_token_ttl_minutes)
    grants = VideoGrants(
        room_join=True,
        room=room,
        can_publish=can_publish,
        can_subscribe=can_subscribe,
    )
    token = (
        AccessToken(settings.livekit_api_key, settings.livekit_api_secret)
        .with_identity(identity)
        .with_grants(grants)
        .with_ttl(lifetime)
    )
    if name:
        token = token.with_name(name)
    return token.to_jwt()


def decode_transport_token(token: str) -> Dict[str, Any]:
    """Decode a transport token signed by :func:`create_transport_token`."""

    return jwt.decode(
        token,
        settings.livekit_api_secret,
        algorithms=["HS256"],
        issuer=settings.livekit_api_key,
    )


__all__ = [
    "create_access_token",
    "create_transport_token",
    "decode_access_token",
    "decode_transport_token",
]
