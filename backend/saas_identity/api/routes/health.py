"""
Health check endpoint.

Public; the gateway forwards it without a token.
"""

from fastapi import APIRouter

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health_check():
    """Liveness probe."""
    return {"status": "UP", "service": "backend-service"}
