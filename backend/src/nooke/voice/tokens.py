"""HTTP client for the transport token endpoint."""

from __future__ import annotations

import logging
from typing import Any, Callable

import httpx

from ..errors import TokenError
from .protocols import TransportCredentials

logger = logging.getLogger(__name__)

TOKEN_PATH = "/api/voice/token"


class HttpTokenIssuer:
    """Fetches room scoped transport tokens from the API."""

    def __init__(
        self,
        base_url: str,
        access_token: Callable[[], str | None],
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = str(base_url).rstrip("/")
        self.timeout = timeout
        self._access_token = access_token
        self._transport = transport

    def _get_headers(self) -> dict[str, str]:
        token = self._access_token()
        if not token:
            raise TokenError("Not authenticated; no access token available")
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    async def issue(self, room_id: str) -> TransportCredentials:
        """
        Request credentials for the audio transport of a room.

        Args:
            room_id: Room the caller participates in

        Returns:
            Access token, server URL and display name of the room

        Raises:
            TokenError: If the request fails or the caller is not allowed in
        """
        headers = self._get_headers()
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    f"{self.base_url}{TOKEN_PATH}",
                    headers=headers,
                    json={"roomId": room_id},
                )
        except httpx.HTTPError as exc:
            logger.warning("Token request failed", extra={"room_id": room_id, "error": str(exc)})
            raise TokenError("Token endpoint is unreachable") from exc

        if response.status_code in (401, 403, 404):
            detail = _error_detail(response) or f"Token request rejected ({response.status_code})"
            raise TokenError(detail)
        try:
            response.raise_for_status()
            payload = response.json()
            return TransportCredentials(
                access_token=str(payload["accessToken"]),
                server_url=str(payload["transportServerUrl"]),
                room_display_name=payload.get("roomDisplayName"),
            )
        except httpx.HTTPStatusError as exc:
            raise TokenError(f"Token endpoint returned {response.status_code}") from exc
        except (ValueError, KeyError, TypeError) as exc:
            raise TokenError("Token endpoint returned a malformed payload") from exc


def _error_detail(response: httpx.Response) -> str | None:
    try:
        payload: Any = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict):
        detail = payload.get("detail")
        if isinstance(detail, str):
            return detail
    return None


__all__ = ["HttpTokenIssuer", "TOKEN_PATH"]
