from enum import Enum

from pydantic import BaseModel


class SourceKind(str, Enum):
    GPS = "gps"
    ESTIMATED = "estimated"


class VehicleEntity(BaseModel):
    identity_key: str
    lat: float
    lon: float
    source_kind: SourceKind
    label: str
    route: str

    @property
    def coordinate(self) -> tuple[float, float]:
        return (self.lat, self.lon)


class DisplayedVehicle(BaseModel):
    identity_key: str
    marker: str
    lat: float
    lon: float
    source_kind: SourceKind
    label: str


class ReconcileSummary(BaseModel):
    created: list[str] = []
    updated: list[str] = []
    removed: list[str] = []
