from pydantic import BaseModel


class StopEta(BaseModel):
    stop_id: str
    name: str
    lat: float
    lon: float
    minutes_remaining: int | None = None
    text: str


class ScheduleRow(BaseModel):
    destination: str
    eta: str


class StopBoard(BaseModel):
    operator: str
    route: str | None = None
    direction: str
    status: str | None = None
    stops: list[StopEta] = []
    schedule: list[ScheduleRow] = []


class SessionInfo(BaseModel):
    operator: str
    route: str | None = None
    direction: str
    context_id: int
    polling: bool
    stop_count: int
    status: str | None = None


class OperatorChange(BaseModel):
    operator: str


class RouteChange(BaseModel):
    route: str
