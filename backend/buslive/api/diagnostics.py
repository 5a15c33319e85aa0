"""Diagnostics API for the polling and reconciliation pipeline."""

from fastapi import APIRouter

router = APIRouter(prefix="/api/diagnostics", tags=["diagnostics"])

# Will be set by main.py
session = None


@router.get("")
async def get_diagnostics(limit: int = 50):
    """Get counters, the last reconciliation and recent failure/stale events."""
    if session is None:
        return {"error": "Session not initialized"}
    return session.get_diagnostics(limit=limit)
