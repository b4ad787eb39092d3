"""Schemas for room and participant payloads."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class RoomRead(BaseModel):
    """Room representation returned to clients."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    creator_id: str
    name: str
    is_private: bool = False
    is_active: bool = True
    audio_active: bool = False
    created_at: datetime
    closed_at: datetime | None = None


class ParticipantRead(BaseModel):
    """Membership of a user in a room."""

    model_config = ConfigDict(from_attributes=True)

    room_id: str
    user_id: str
    is_muted: bool = Field(default=True, description="Whether the participant's mic is muted")
    joined_at: datetime


class RoomDetail(RoomRead):
    """Room with its current participants."""

    participants: list[ParticipantRead] = Field(default_factory=list)
