from fastapi import APIRouter

from app.api.rooms import router as rooms_router
from app.api.session import router as session_router

router = APIRouter()

router.include_router(rooms_router)
router.include_router(session_router)


@router.get("/", tags=["root"])
def read_root() -> dict[str, str]:
    return {"message": "Huddle presence sidecar"}
