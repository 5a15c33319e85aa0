"""Derive vehicle entities for a route, either from GPS reports or estimated from stops.

Direct operators publish a vehicle feed with real coordinates. Estimated
operators only publish per-stop ETAs, so vehicles are spread evenly
along the ordered stop sequence. The estimate is an approximation and
its entities are keyed by rank along the route, not by physical vehicle.
"""

import datetime
import logging
import random
from abc import ABC, abstractmethod
from collections import Counter
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from buslive.config import settings
from buslive.core.errors import MalformedRecord, SourceFailure
from buslive.core.scheduler import PollingContext
from buslive.core.transit_client import (
    OPERATOR_CTB,
    OPERATOR_GMB,
    OPERATOR_KMB,
    OPERATOR_LRT,
    OPERATOR_NWFB,
    EtaRecord,
    RawVehicleReport,
    StopRecord,
    TransitClient,
    parse_coordinate,
)
from buslive.schemas.vehicle import SourceKind, VehicleEntity

logger = logging.getLogger(__name__)

STRATEGY_DIRECT = "direct"
STRATEGY_ESTIMATED = "estimated"


@dataclass(frozen=True)
class OperatorProfile:
    code: str
    name: str
    strategy: str | None = None  # None = no vehicle positions
    has_schedule: bool = False
    line_color: str = "blue"


OPERATORS: dict[str, OperatorProfile] = {
    OPERATOR_KMB: OperatorProfile(OPERATOR_KMB, "KMB", STRATEGY_DIRECT, line_color="blue"),
    OPERATOR_CTB: OperatorProfile(OPERATOR_CTB, "Citybus", STRATEGY_ESTIMATED, line_color="#ff9800"),
    OPERATOR_NWFB: OperatorProfile(OPERATOR_NWFB, "NWFB", STRATEGY_ESTIMATED, line_color="#ff9800"),
    OPERATOR_LRT: OperatorProfile(OPERATOR_LRT, "MTR Light Rail", has_schedule=True),
    OPERATOR_GMB: OperatorProfile(OPERATOR_GMB, "Green Minibus"),
}


@dataclass
class RouteSignal:
    """What is known about a route when estimating how many vehicles run on it."""
    operator: str
    route: str
    stop_count: int
    eta_records: list[EtaRecord] = field(default_factory=list)
    now: datetime.datetime | None = None


CountEstimator = Callable[[RouteSignal], int]


def random_vehicle_count(signal: RouteSignal) -> int:
    return random.randint(1, 3)


def eta_spacing_count(signal: RouteSignal) -> int | None:
    """Largest number of upcoming arrivals reported for any single stop.

    Each upcoming arrival at a stop is a distinct vehicle still to pass it,
    so the busiest stop bounds how many vehicles are ahead on the route.
    """
    now = signal.now or datetime.datetime.now(datetime.timezone.utc)
    per_stop = Counter(r.stop_id for r in signal.eta_records if r.arrival >= now)
    if not per_stop:
        return None
    return max(per_stop.values())


def default_vehicle_count(signal: RouteSignal) -> int:
    counted = eta_spacing_count(signal)
    if counted:
        return counted
    return random_vehicle_count(signal)


def clamp_vehicle_count(count: int) -> int:
    return max(settings.estimated_min_vehicles, min(settings.estimated_max_vehicles, count))


def direct_identity_key(report: RawVehicleReport) -> str:
    if report.plate:
        return report.plate
    if report.vehicle_id:
        return f"{report.route}_{report.vehicle_id}"
    raise MalformedRecord(f"vehicle on route {report.route} has neither plate nor id")


def build_direct_entities(reports: Sequence[RawVehicleReport], route: str) -> list[VehicleEntity]:
    """One GPS entity per report on the route; reports with bad coordinates or no identity are skipped."""
    by_key: dict[str, VehicleEntity] = {}
    for report in reports:
        if report.route != route:
            continue
        try:
            key = direct_identity_key(report)
            lat, lon = parse_coordinate(report.lat, report.lon)
        except MalformedRecord as e:
            logger.debug("Skipping vehicle report on route %s: %s", report.route, e)
            continue
        by_key[key] = VehicleEntity(
            identity_key=key,
            lat=lat,
            lon=lon,
            source_kind=SourceKind.GPS,
            label=f"Route {report.route} / {report.plate or report.vehicle_id} (GPS)",
            route=report.route,
        )
    return list(by_key.values())


def estimated_stop_indices(stop_count: int, vehicle_count: int) -> list[int]:
    """Stop index for each of ``vehicle_count`` vehicles spaced evenly along the route."""
    if stop_count < 2 or vehicle_count < 1:
        return []
    span = stop_count - 1
    return [(i * span) // (vehicle_count + 1) for i in range(1, vehicle_count + 1)]


def build_estimated_entities(
    operator: str, route: str, stops: Sequence[StopRecord], vehicle_count: int,
) -> list[VehicleEntity]:
    entities = []
    for slot, idx in enumerate(estimated_stop_indices(len(stops), vehicle_count)):
        stop = stops[idx]
        entities.append(VehicleEntity(
            identity_key=f"{operator}_{route}_{slot}",
            lat=stop.lat,
            lon=stop.lon,
            source_kind=SourceKind.ESTIMATED,
            label=f"Route {route} (estimated from ETA)",
            route=route,
        ))
    return entities


@dataclass
class Placement:
    entities: list[VehicleEntity]
    # ETA records fetched along the way, if any; lets the caller refresh its board
    eta_records: list[EtaRecord] | None = None


class PositionStrategy(ABC):
    source_kind: SourceKind

    def __init__(self, client: TransitClient) -> None:
        self.client = client

    async def _fetch_etas(self, context: PollingContext) -> list[EtaRecord] | None:
        """Arrival records for the context's route, or None when the feed is down."""
        try:
            return await self.client.fetch_etas(context.operator, context.route, context.direction)
        except SourceFailure as e:
            logger.warning("ETA fetch for route %s failed: %s", context.route, e)
            return None

    @abstractmethod
    async def locate(self, context: PollingContext, stops: Sequence[StopRecord]) -> Placement:
        """Fetch fresh data and produce the entity set for one tick."""


class DirectStrategy(PositionStrategy):
    """Vehicles straight from the operator's GPS feed."""

    source_kind = SourceKind.GPS

    async def locate(self, context: PollingContext, stops: Sequence[StopRecord]) -> Placement:
        reports = await self.client.fetch_vehicles(context.operator, context.route)
        entities = build_direct_entities(reports, context.route)
        logger.debug("Route %s: %d GPS vehicles of %d reports", context.route, len(entities), len(reports))
        return Placement(entities, await self._fetch_etas(context))


class EstimatedStrategy(PositionStrategy):
    """Vehicles spread along the stop sequence, count derived from ETAs."""

    source_kind = SourceKind.ESTIMATED

    def __init__(self, client: TransitClient, estimate_count: CountEstimator = default_vehicle_count) -> None:
        super().__init__(client)
        self.estimate_count = estimate_count

    async def locate(self, context: PollingContext, stops: Sequence[StopRecord]) -> Placement:
        if len(stops) < 2:
            return Placement([])

        eta_records = await self._fetch_etas(context)

        signal = RouteSignal(
            operator=context.operator,
            route=context.route,
            stop_count=len(stops),
            eta_records=eta_records or [],
        )
        count = clamp_vehicle_count(self.estimate_count(signal))
        entities = build_estimated_entities(context.operator, context.route, stops, count)
        return Placement(entities, eta_records)


def make_strategy(
    operator: str,
    client: TransitClient,
    estimate_count: CountEstimator = default_vehicle_count,
) -> PositionStrategy | None:
    """Strategy for an operator, or None when it has no vehicle positions at all."""
    profile = OPERATORS.get(operator)
    if profile is None or profile.strategy is None:
        return None
    if profile.strategy == STRATEGY_DIRECT:
        return DirectStrategy(client)
    return EstimatedStrategy(client, estimate_count)
