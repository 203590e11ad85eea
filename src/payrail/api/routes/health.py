"""Health check endpoints."""

from fastapi import APIRouter

from payrail import __version__
from payrail.config import get_settings
from payrail.settlement.factory import get_settlement_network

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "service": "payrail"}


@router.get("/health/detailed")
async def detailed_health():
    """Detailed health check with configuration info."""
    settings = get_settings()
    return {
        "status": "healthy",
        "service": "payrail",
        "version": __version__,
        "settlement_network": get_settlement_network().name,
        "config": settings.get_safe_dict(),
    }
