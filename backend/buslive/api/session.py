"""Session REST API endpoints: the operator/route/direction selectors."""

from fastapi import APIRouter, HTTPException

from buslive.core.position_strategy import OPERATORS
from buslive.schemas.route import OperatorChange, RouteChange, SessionInfo

router = APIRouter(prefix="/api/session", tags=["session"])

# Will be set by main.py
session = None


def _require_session():
    if session is None:
        raise HTTPException(status_code=503, detail="Session not ready")
    return session


@router.get("", response_model=SessionInfo)
async def get_session():
    """Get the current selection and polling state."""
    return _require_session().info()


@router.get("/operators")
async def list_operators():
    """Get the operators that can be selected."""
    return [
        {
            "code": p.code,
            "name": p.name,
            "vehicles": p.strategy,
            "schedule_only": p.has_schedule,
        }
        for p in OPERATORS.values()
    ]


@router.post("/operator", response_model=SessionInfo)
async def change_operator(body: OperatorChange):
    """Switch operator; its first route is selected automatically."""
    current = _require_session()
    if body.operator not in OPERATORS:
        raise HTTPException(status_code=404, detail="Operator not found")
    await current.on_operator_change(body.operator)
    return current.info()


@router.post("/route", response_model=SessionInfo)
async def change_route(body: RouteChange):
    """Select a route of the current operator."""
    current = _require_session()
    await current.on_route_change(body.route)
    return current.info()


@router.post("/direction", response_model=SessionInfo)
async def toggle_direction():
    """Flip between inbound and outbound."""
    current = _require_session()
    await current.on_direction_toggle()
    return current.info()
