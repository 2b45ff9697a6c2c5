"""
Namy Redeem — System routes
  GET /health   liveness check
"""
from fastapi import APIRouter, Request

from models import StatusResponse

router = APIRouter(tags=["System"])


@router.get("/health", response_model=StatusResponse, summary="Health check")
async def health_check(request: Request):
    """Returns 200 OK if the server is running. Use for uptime monitoring."""
    cipher = getattr(request.app.state, "cipher", None)
    if cipher is None:
        return StatusResponse(status="starting", message="Namy Redeem is starting")
    return StatusResponse(status="ok", message=f"Namy Redeem is running ({cipher.name} cipher)")
