"""Stop REST API endpoints."""

from fastapi import APIRouter, HTTPException

from buslive.schemas.route import StopBoard

router = APIRouter(prefix="/api/stops", tags=["stops"])

# Will be set by main.py
session = None


@router.get("", response_model=StopBoard)
async def get_stop_board():
    """Get the stops of the selected route with minutes to the next arrival."""
    if session is None:
        raise HTTPException(status_code=503, detail="Session not ready")
    return session.board()
