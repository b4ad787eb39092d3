"""FastAPI dependencies for the API layer."""

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.security import decode_access_token
from app.models import RoomParticipant
from nooke.identity import Identity

bearer_scheme = HTTPBearer(auto_error=False)


def get_current_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Identity:
    """Resolve the caller from the bearer JWT."""

    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return get_identity_from_token(credentials.credentials)


def get_identity_from_token(token: str) -> Identity:
    """Build an identity from a JWT token or raise an HTTP 401 error."""

    payload = decode_access_token(token)
    sub = payload.get("sub")
    if sub is None or not str(sub).strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )
    name = payload.get("name")
    return Identity(
        user_id=str(sub),
        display_name=str(name) if name else None,
        access_token=token,
    )


def get_participant(room_id: str, user_id: str, db: Session) -> RoomParticipant | None:
    """Return the participant row for the given user and room if it exists."""

    stmt = select(RoomParticipant).where(
        RoomParticipant.room_id == room_id,
        RoomParticipant.user_id == user_id,
    )
    return db.execute(stmt).scalar_one_or_none()


def require_participant(room_id: str, user_id: str, db: Session) -> RoomParticipant:
    """Ensure the user participates in the room, raising HTTP 403 otherwise."""

    participant = get_participant(room_id, user_id, db)
    if participant is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not a room participant",
        )
    return participant
