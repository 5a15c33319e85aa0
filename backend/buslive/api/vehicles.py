"""Vehicle REST API endpoints."""

from fastapi import APIRouter

from buslive.schemas.vehicle import DisplayedVehicle

router = APIRouter(prefix="/api/vehicles", tags=["vehicles"])

# Will be set by main.py
session = None


@router.get("", response_model=list[DisplayedVehicle])
async def list_vehicles():
    """Get the vehicles currently shown on the map."""
    if session is None:
        return []
    return session.reconciler.displayed()


@router.get("/{identity_key}", response_model=DisplayedVehicle | None)
async def get_vehicle(identity_key: str):
    """Get a displayed vehicle by identity key."""
    if session is None:
        return None
    for vehicle in session.reconciler.displayed():
        if vehicle.identity_key == identity_key:
            return vehicle
    return None
