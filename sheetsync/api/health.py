"""
Health check and status endpoints
"""
from fastapi import APIRouter, Request
from datetime import datetime
from sheetsync.config import get_settings
from sheetsync import __version__

settings = get_settings()

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "version": __version__
    }


@router.get("/status")
async def get_status(request: Request):
    """Service status including the sync scheduler"""
    engine = getattr(request.app.state, "engine", None)
    return {
        "app_name": settings.app_name,
        "version": __version__,
        "environment": settings.environment,
        "scheduler": {
            "enabled": settings.enable_scheduler,
            "running": bool(engine and engine.scheduler.running),
            "jobs": len(engine.scheduler.list_jobs()) if engine else 0,
        },
        "timestamp": datetime.utcnow().isoformat()
    }
