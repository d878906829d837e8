from fastapi import APIRouter

from app.api.communities import router as communities_router
from app.api.friends import router as friends_router
from app.api.messages import router as messages_router
from app.api.rooms import router as rooms_router

router = APIRouter()

router.include_router(messages_router)
router.include_router(rooms_router)
router.include_router(communities_router)
router.include_router(friends_router)


@router.get("/", tags=["root"])
def read_root() -> dict[str, str]:
    return {"message": "Welcome to the Aether API"}
