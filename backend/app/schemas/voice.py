"""Schemas for the transport token endpoint."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class VoiceTokenRequest(BaseModel):
    """Request for a room scoped transport token."""

    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(..., alias="roomId", min_length=1, max_length=64)


class VoiceTokenResponse(BaseModel):
    """Credentials a client uses to open the audio transport."""

    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(..., alias="accessToken")
    transport_server_url: str = Field(..., alias="transportServerUrl")
    room_display_name: str | None = Field(default=None, alias="roomDisplayName")
