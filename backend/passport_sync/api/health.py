from fastapi import APIRouter

from passport_sync.config import settings

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check():
    """Liveness endpoint for Docker and load balancers."""
    return {"status": "healthy", "service": "passport-sync", "version": settings.app_version}
