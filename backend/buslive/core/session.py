"""Route session: the selected operator/route/direction and everything derived from it."""

import datetime
import functools
import logging
from collections import Counter, deque

from buslive.config import settings
from buslive.core.errors import SourceFailure, StaleContextResult
from buslive.core.eta_aggregator import EtaAggregator, eta_text
from buslive.core.map_surface import MapSurface
from buslive.core.position_strategy import (
    OPERATORS,
    CountEstimator,
    OperatorProfile,
    PositionStrategy,
    default_vehicle_count,
    make_strategy,
)
from buslive.core.reconciler import EntityReconciler
from buslive.core.scheduler import PollingContext, PollingScheduler
from buslive.core.transit_client import OPERATOR_GMB, EtaRecord, ScheduleEntry, StopRecord, TransitClient
from buslive.schemas.route import ScheduleRow, SessionInfo, StopBoard, StopEta
from buslive.schemas.vehicle import ReconcileSummary

logger = logging.getLogger(__name__)

DIRECTION_INBOUND = "inbound"
DIRECTION_OUTBOUND = "outbound"

STATUS_LOADING_STOPS = "loading stops"
STATUS_FAILED_STOPS = "failed to load stops"
STATUS_FAILED_ROUTES = "failed to load routes"
STATUS_FAILED_SCHEDULE = "failed to load schedule"
STATUS_MANUAL_ROUTE = "enter a route manually"
STATUS_UNSUPPORTED = "operator not supported"


class RouteSession:
    """Single owner of the live route state.

    Every operator, route or direction change starts a new context id.
    Fetches remember the id they were issued under and their results are
    dropped when the id has moved on by the time they resolve.
    """

    def __init__(
        self,
        client: TransitClient,
        surface: MapSurface,
        scheduler: PollingScheduler,
        estimate_count: CountEstimator = default_vehicle_count,
    ) -> None:
        self.client = client
        self.surface = surface
        self.scheduler = scheduler
        self.estimate_count = estimate_count
        self.reconciler = EntityReconciler(surface)
        self.aggregator = EtaAggregator()

        self.operator: str = settings.default_operator
        self.route: str | None = None
        self.direction: str = DIRECTION_INBOUND
        self.routes: list[str] = []
        self.stops: list[StopRecord] = []
        self.etas: dict[str, int | None] = {}
        self.schedule: list[ScheduleEntry] = []
        self.status: str | None = None
        self.strategy: PositionStrategy | None = None
        self.last_summary: ReconcileSummary | None = None

        self._context_id = 0
        self._counters: Counter[str] = Counter()
        self._events: deque[dict] = deque(maxlen=200)

    @property
    def context_id(self) -> int:
        return self._context_id

    # ------------------------------------------------------------------
    # Context handling

    def _ensure_current(self, context_id: int) -> None:
        if context_id != self._context_id:
            raise StaleContextResult(context_id, self._context_id)

    def _discard(self, stale: StaleContextResult) -> None:
        logger.debug("Discarding stale result: %s", stale)
        self._counters["stale_discarded"] += 1
        self._log_event("stale_discarded", {
            "context_id": stale.context_id,
            "current_id": stale.current_id,
        })

    def _source_failed(self, failure: SourceFailure) -> None:
        logger.warning("Data source failed: %s", failure)
        self._counters["source_failures"] += 1
        self._log_event("source_failure", {"source": failure.label, "reason": failure.reason})

    def reset(self) -> None:
        """Tear down everything tied to the current route and start a new context."""
        self._context_id += 1
        self.scheduler.stop()
        self.reconciler.clear_reset()
        self.surface.clear_all_decorations()
        self.stops = []
        self.etas = {}
        self.schedule = []
        self.strategy = None
        self.status = None
        self.last_summary = None

    async def shutdown(self) -> None:
        self.reset()
        self.scheduler.shutdown()
        await self.surface.flush()

    # ------------------------------------------------------------------
    # Entry points

    async def on_operator_change(self, operator: str) -> None:
        """Switch operator, list its routes and select the first one."""
        self.operator = operator
        self.route = None
        self.routes = []
        self.reset()
        context_id = self._context_id
        await self.surface.flush()

        if operator not in OPERATORS:
            self.status = STATUS_UNSUPPORTED
            return

        try:
            routes = await self.client.fetch_routes(operator)
            self._ensure_current(context_id)
        except StaleContextResult as e:
            self._discard(e)
            return
        except SourceFailure as e:
            if context_id == self._context_id:
                self._source_failed(e)
                self.status = STATUS_FAILED_ROUTES
            return

        self.routes = routes[:settings.max_routes_listed]
        if not self.routes:
            self.status = STATUS_MANUAL_ROUTE if operator == OPERATOR_GMB else STATUS_UNSUPPORTED
            return
        await self.set_route(operator, self.routes[0], self.direction)

    async def on_route_change(self, route: str) -> None:
        await self.set_route(self.operator, route, self.direction)

    async def on_direction_toggle(self) -> None:
        self.direction = DIRECTION_OUTBOUND if self.direction == DIRECTION_INBOUND else DIRECTION_INBOUND
        if self.route:
            await self.set_route(self.operator, self.route, self.direction)

    async def set_route(self, operator: str, route: str, direction: str) -> None:
        """Load a route from scratch and start polling its vehicles."""
        self.operator = operator
        self.route = route
        self.direction = direction
        self.reset()
        context_id = self._context_id
        self.status = STATUS_LOADING_STOPS

        profile = OPERATORS.get(operator)
        try:
            if profile is None or (profile.strategy is None and not profile.has_schedule):
                self.status = STATUS_UNSUPPORTED
                return
            if profile.has_schedule:
                await self._load_schedule(context_id, route)
                return

            await self._load_stops(context_id, profile)
            await self._refresh_etas(context_id)

            self.strategy = make_strategy(operator, self.client, self.estimate_count)
            context = PollingContext(context_id, operator, route, direction)
            await self.scheduler.start(context, functools.partial(self.tick, context))
        except StaleContextResult as e:
            self._discard(e)
        finally:
            await self.surface.flush()

    # ------------------------------------------------------------------
    # Loading steps

    async def _load_stops(self, context_id: int, profile: OperatorProfile) -> None:
        try:
            stops = await self.client.fetch_stops(self.operator, self.route, self.direction)
            self._ensure_current(context_id)
            self.status = None
        except SourceFailure as e:
            self._ensure_current(context_id)
            self._source_failed(e)
            self.status = STATUS_FAILED_STOPS
            stops = []

        self.stops = stops
        if not stops:
            logger.info("No stops for %s route %s (%s)", self.operator, self.route, self.direction)
            return

        for stop in stops:
            self.surface.draw_stop_marker(stop.coordinate, stop.label)
        coords = [s.coordinate for s in stops]
        self.surface.draw_polyline(coords, profile.line_color)
        self.surface.fit_bounds(coords)

    async def _refresh_etas(self, context_id: int) -> None:
        try:
            records = await self.client.fetch_etas(self.operator, self.route, self.direction)
            self._ensure_current(context_id)
        except SourceFailure as e:
            self._ensure_current(context_id)
            self._source_failed(e)
            records = []
        self._apply_etas(records)

    def _apply_etas(self, records: list[EtaRecord]) -> None:
        self.etas = self.aggregator.aggregate(records, [s.stop_id for s in self.stops])

    async def _load_schedule(self, context_id: int, station_id: str) -> None:
        try:
            schedule = await self.client.fetch_schedule(station_id)
            self._ensure_current(context_id)
            self.status = None
        except SourceFailure as e:
            self._ensure_current(context_id)
            self._source_failed(e)
            self.status = STATUS_FAILED_SCHEDULE
            schedule = []
        self.schedule = schedule

    # ------------------------------------------------------------------
    # Polling

    async def tick(self, context: PollingContext) -> None:
        """One poll cycle: fetch, derive entities, reconcile against the map."""
        strategy = self.strategy
        stops = self.stops
        try:
            self._ensure_current(context.context_id)
            if strategy is None:
                return
            placement = await strategy.locate(context, stops)
            self._ensure_current(context.context_id)
        except StaleContextResult as e:
            self._discard(e)
            return
        except SourceFailure as e:
            if context.context_id != self._context_id:
                self._discard(StaleContextResult(context.context_id, self._context_id))
                return
            # Markers stay where they are until a tick succeeds again
            self._source_failed(e)
            return

        if placement.eta_records is not None:
            self._apply_etas(placement.eta_records)
        self.last_summary = self.reconciler.reconcile(placement.entities)
        self._counters["ticks"] += 1
        await self.surface.flush()

    # ------------------------------------------------------------------
    # Views

    def info(self) -> SessionInfo:
        return SessionInfo(
            operator=self.operator,
            route=self.route,
            direction=self.direction,
            context_id=self._context_id,
            polling=self.scheduler.active,
            stop_count=len(self.stops),
            status=self.status,
        )

    def board(self) -> StopBoard:
        stops = []
        for stop in self.stops:
            minutes = self.etas.get(stop.stop_id)
            stops.append(StopEta(
                stop_id=stop.stop_id,
                name=stop.label,
                lat=stop.lat,
                lon=stop.lon,
                minutes_remaining=minutes,
                text=eta_text(minutes),
            ))
        return StopBoard(
            operator=self.operator,
            route=self.route,
            direction=self.direction,
            status=self.status,
            stops=stops,
            schedule=[ScheduleRow(destination=e.destination, eta=e.eta) for e in self.schedule],
        )

    def _log_event(self, kind: str, payload: dict) -> None:
        event = {
            "ts": datetime.datetime.now(datetime.timezone.utc).isoformat(),
            "kind": kind,
            **payload,
        }
        self._events.append(event)

    def get_diagnostics(self, limit: int = 50) -> dict:
        events = list(self._events)[-max(1, min(limit, 200)):]
        return {
            "context_id": self._context_id,
            "operator": self.operator,
            "route": self.route,
            "direction": self.direction,
            "polling": self.scheduler.active,
            "displayed_vehicles": len(self.reconciler.displayed_keys),
            "counters": dict(self._counters),
            "last_reconcile": self.last_summary.model_dump() if self.last_summary else None,
            "latest_events": events,
        }
