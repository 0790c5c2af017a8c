from fastapi import APIRouter, Depends
from paysync.core.config import Settings, get_settings

router = APIRouter()


@router.get("/health", summary="Basic health check endpoint")
async def health_check(settings: Settings = Depends(get_settings)):
    return {"status": "ok", "mode": settings.mode_label}
