"""Transport token endpoint for the audio session."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.api.deps import get_current_identity, require_participant
from app.config import get_settings
from app.core.security import create_transport_token
from app.database import get_db
from app.models import Room
from app.monitoring.metrics import voice_tokens_issued_total
from app.schemas import VoiceTokenRequest, VoiceTokenResponse
from nooke.identity import Identity

logger = logging.getLogger(__name__)

settings = get_settings()
router = APIRouter(prefix="/voice", tags=["voice"])


@router.post("/token", response_model=VoiceTokenResponse, response_model_by_alias=True)
def issue_voice_token(
    payload: VoiceTokenRequest,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> VoiceTokenResponse:
    """
    Issue a short-lived transport token for a room.

    The caller must be a participant of an active room.
    """
    room = db.get(Room, payload.room_id)
    if room is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Room not found")
    if not room.is_active:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Room is closed")
    require_participant(room.id, identity.user_id, db)

    token = create_transport_token(
        identity=identity.user_id,
        room=room.id,
        name=identity.display_name,
    )
    voice_tokens_issued_total.inc()
    logger.info("Issued transport token", extra={"room_id": room.id, "user_id": identity.user_id})
    return VoiceTokenResponse(
        access_token=token,
        transport_server_url=settings.livekit_url,
        room_display_name=room.name,
    )
