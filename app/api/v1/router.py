from fastapi import APIRouter

from app.api.v1.actions import router as actions_router

api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(actions_router)
