"""Route REST API endpoints."""

from fastapi import APIRouter

router = APIRouter(prefix="/api/routes", tags=["routes"])

# Will be set by main.py
session = None


@router.get("", response_model=list[str])
async def list_routes():
    """Get the routes listed for the current operator."""
    if session is None:
        return []
    return session.routes
