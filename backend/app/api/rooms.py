"""Read-only room endpoints backed by the room store."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from app.api.deps import get_current_identity
from app.schemas import RoomDetail, RoomRead
from app.services.room_store import SqlRoomStore, get_room_store
from nooke.identity import Identity

router = APIRouter(prefix="/rooms", tags=["rooms"])


@router.get("", response_model=list[RoomRead])
async def list_active_rooms(
    store: SqlRoomStore = Depends(get_room_store),
    identity: Identity = Depends(get_current_identity),
) -> list[RoomRead]:
    """Return active rooms, newest first."""

    rooms = await store.list_rooms(active_only=True)
    return [RoomRead.model_validate(room.to_payload()) for room in rooms]


@router.get("/{room_id}", response_model=RoomDetail)
async def get_room(
    room_id: str,
    store: SqlRoomStore = Depends(get_room_store),
    identity: Identity = Depends(get_current_identity),
) -> RoomDetail:
    room = await store.get_room(room_id)
    if room is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Room not found")
    participants = await store.list_participants(room_id)
    return RoomDetail.model_validate(
        {
            **room.to_payload(),
            "participants": [item.to_payload() for item in participants],
        }
    )
