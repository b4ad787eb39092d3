"""Pydantic schemas for API payloads."""

from .rooms import ParticipantRead, RoomDetail, RoomRead
from .voice import VoiceTokenRequest, VoiceTokenResponse

__all__ = [
    "ParticipantRead",
    "RoomDetail",
    "RoomRead",
    "VoiceTokenRequest",
    "VoiceTokenResponse",
]
