from fastapi import APIRouter

from app.api.rooms import router as rooms_router
from app.api.voice import router as voice_router

router = APIRouter()

router.include_router(rooms_router)
router.include_router(voice_router)


@router.get("/", tags=["root"])
def read_root() -> dict[str, str]:
    return {"message": "Welcome to the Nooke API"}
