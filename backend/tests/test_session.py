"""Tests for RouteSession: route loading, polling ticks and context switches."""

import asyncio
import datetime

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from buslive.core.errors import SourceFailure
from buslive.core.map_surface import MapSurface
from buslive.core.scheduler import PollingScheduler
from buslive.core.session import (
    STATUS_FAILED_ROUTES,
    STATUS_FAILED_STOPS,
    STATUS_MANUAL_ROUTE,
    STATUS_UNSUPPORTED,
    RouteSession,
)
from buslive.core.transit_client import EtaRecord, RawVehicleReport, ScheduleEntry, StopRecord


def make_stops() -> list[StopRecord]:
    return [
        StopRecord("S1", 22.30, 114.17, name_en="Star Ferry"),
        StopRecord("S2", 22.31, 114.18, name_en="Jordan"),
        StopRecord("S3", 22.32, 114.19, name_en="Mong Kok"),
    ]


class FakeClient:
    """In-memory stand-in for TransitClient."""

    def __init__(self) -> None:
        self.routes: dict[str, list[str]] = {"kmb": ["1A", "2"], "ctb": ["1"], "gmb": [], "lrt": ["001"]}
        self.stops: dict[str, list[StopRecord]] = {"1A": make_stops(), "2": make_stops()[:2], "1": make_stops()}
        self.etas: list[EtaRecord] = []
        self.vehicles: list[RawVehicleReport] = []
        self.schedule: list[ScheduleEntry] = [ScheduleEntry("Tuen Mun Ferry Pier", "3 min")]
        self.fail: set[str] = set()
        # route -> Event that must be set before fetch_vehicles returns
        self.vehicle_gates: dict[str, asyncio.Event] = {}
        self.vehicle_calls: dict[str, asyncio.Event] = {}
        self.stop_requests: list[tuple[str, str, str]] = []

    def _check(self, kind: str) -> None:
        if kind in self.fail:
            raise SourceFailure(kind, "HTTP 503")

    async def fetch_routes(self, operator):
        self._check("routes")
        return list(self.routes.get(operator, []))

    async def fetch_stops(self, operator, route, direction):
        self.stop_requests.append((operator, route, direction))
        self._check("stops")
        return list(self.stops.get(route, []))

    async def fetch_etas(self, operator, route, direction):
        self._check("etas")
        return list(self.etas)

    async def fetch_vehicles(self, operator, route):
        self.vehicle_calls.setdefault(route, asyncio.Event()).set()
        gate = self.vehicle_gates.get(route)
        if gate is not None:
            await gate.wait()
        self._check("vehicles")
        return list(self.vehicles)

    async def fetch_schedule(self, station_id):
        self._check("schedule")
        return list(self.schedule)


def make_session(client: FakeClient, estimate_count=lambda signal: 2) -> RouteSession:
    scheduler = PollingScheduler(AsyncIOScheduler(), interval_seconds=5)
    return RouteSession(client, MapSurface(), scheduler, estimate_count=estimate_count)


@pytest.mark.asyncio
async def test_set_route_draws_stops_and_starts_polling():
    client = FakeClient()
    client.vehicles = [RawVehicleReport("1A", "22.305", "114.175", plate="AB123")]
    soon = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(seconds=150)
    client.etas = [EtaRecord("S2", soon)]
    session = make_session(client)

    await session.set_route("kmb", "1A", "inbound")

    surface = session.surface
    assert len(surface.stop_markers) == 3
    assert surface.polyline["points"] == [[22.30, 114.17], [22.31, 114.18], [22.32, 114.19]]
    assert surface.bounds == [[22.30, 114.17], [22.32, 114.19]]
    assert session.scheduler.active
    assert session.reconciler.displayed_keys == {"AB123"}

    board = session.board()
    assert [s.text for s in board.stops] == ["no scheduled service", "2 min", "no scheduled service"]


@pytest.mark.asyncio
async def test_same_plate_across_ticks_moves_one_marker():
    client = FakeClient()
    client.vehicles = [RawVehicleReport("1A", "22.30", "114.17", plate="AB123")]
    session = make_session(client)
    await session.set_route("kmb", "1A", "inbound")
    handle = session.reconciler.handle_for("AB123")

    client.vehicles = [RawVehicleReport("1A", "22.31", "114.18", plate="AB123")]
    await session.tick(session.scheduler.context)

    assert session.last_summary.updated == ["AB123"]
    assert session.last_summary.created == []
    assert list(session.surface.markers) == [handle]
    assert session.surface.markers[handle]["lat"] == 22.31


@pytest.mark.asyncio
async def test_gps_tick_refreshes_eta_board():
    client = FakeClient()
    client.vehicles = [RawVehicleReport("1A", "22.30", "114.17", plate="AB123")]
    now = datetime.datetime.now(datetime.timezone.utc)
    client.etas = [EtaRecord("S2", now + datetime.timedelta(seconds=150))]
    session = make_session(client)
    await session.set_route("kmb", "1A", "inbound")
    assert session.board().stops[1].text == "2 min"

    client.etas = [EtaRecord("S2", now + datetime.timedelta(seconds=330))]
    await session.tick(session.scheduler.context)
    assert session.board().stops[1].text == "5 min"

    # A failed ETA fetch keeps the last board
    client.fail = {"etas"}
    await session.tick(session.scheduler.context)
    assert session.board().stops[1].text == "5 min"
    assert session.reconciler.displayed_keys == {"AB123"}


@pytest.mark.asyncio
async def test_estimated_operator_places_vehicles_on_stops():
    client = FakeClient()
    session = make_session(client, estimate_count=lambda signal: 2)

    await session.set_route("ctb", "1", "inbound")

    displayed = {v.identity_key: (v.lat, v.lon) for v in session.reconciler.displayed()}
    assert displayed == {"ctb_1_0": (22.30, 114.17), "ctb_1_1": (22.31, 114.18)}


@pytest.mark.asyncio
async def test_estimated_count_change_keeps_slot_identities():
    client = FakeClient()
    counts = iter([3, 1])
    session = make_session(client, estimate_count=lambda signal: next(counts))

    await session.set_route("ctb", "1", "inbound")
    assert session.reconciler.displayed_keys == {"ctb_1_0", "ctb_1_1", "ctb_1_2"}

    await session.tick(session.scheduler.context)
    assert session.reconciler.displayed_keys == {"ctb_1_0"}
    assert sorted(session.last_summary.removed) == ["ctb_1_1", "ctb_1_2"]


@pytest.mark.asyncio
async def test_stop_failure_degrades_to_no_stops():
    client = FakeClient()
    client.fail = {"stops"}
    client.vehicles = [RawVehicleReport("1A", "22.30", "114.17", plate="AB123")]
    session = make_session(client)

    await session.set_route("kmb", "1A", "inbound")

    assert session.status == STATUS_FAILED_STOPS
    assert session.stops == []
    assert session.surface.polyline is None
    # GPS vehicles do not depend on stops
    assert session.scheduler.active
    assert session.reconciler.displayed_keys == {"AB123"}


@pytest.mark.asyncio
async def test_failed_tick_keeps_markers_and_polling():
    client = FakeClient()
    client.vehicles = [RawVehicleReport("1A", "22.30", "114.17", plate="AB123")]
    session = make_session(client)
    await session.set_route("kmb", "1A", "inbound")

    client.fail = {"vehicles"}
    await session.tick(session.scheduler.context)

    assert session.reconciler.displayed_keys == {"AB123"}
    assert session.scheduler.active
    assert session.get_diagnostics()["counters"]["source_failures"] == 1


@pytest.mark.asyncio
async def test_late_result_from_previous_route_is_discarded():
    client = FakeClient()
    client.vehicles = [
        RawVehicleReport("1A", "22.30", "114.17", plate="AB123"),
        RawVehicleReport("2", "22.31", "114.18", plate="CD456"),
    ]
    gate = asyncio.Event()
    client.vehicle_gates["1A"] = gate
    session = make_session(client)

    first = asyncio.create_task(session.set_route("kmb", "1A", "inbound"))
    client.vehicle_calls.setdefault("1A", asyncio.Event())
    await client.vehicle_calls["1A"].wait()

    await session.set_route("kmb", "2", "inbound")
    assert session.reconciler.displayed_keys == {"CD456"}

    gate.set()
    await first

    assert session.reconciler.displayed_keys == {"CD456"}
    assert session.route == "2"
    assert session.scheduler.context.route == "2"
    assert session.get_diagnostics()["counters"]["stale_discarded"] >= 1


@pytest.mark.asyncio
async def test_tick_for_old_context_does_nothing():
    client = FakeClient()
    client.vehicles = [RawVehicleReport("1A", "22.30", "114.17", plate="AB123")]
    session = make_session(client)
    await session.set_route("kmb", "1A", "inbound")
    old_context = session.scheduler.context

    await session.set_route("kmb", "2", "inbound")
    client.vehicles = [RawVehicleReport("2", "22.31", "114.18", plate="CD456")]
    await session.tick(old_context)

    assert session.reconciler.displayed_keys == set()


@pytest.mark.asyncio
async def test_route_change_clears_previous_markers():
    client = FakeClient()
    client.vehicles = [RawVehicleReport("1A", "22.30", "114.17", plate="AB123")]
    session = make_session(client)
    await session.set_route("kmb", "1A", "inbound")
    assert len(session.surface.markers) == 1

    await session.on_route_change("2")

    assert session.surface.markers == {}
    assert session.reconciler.displayed_keys == set()
    assert len(session.surface.stop_markers) == 2


@pytest.mark.asyncio
async def test_direction_toggle_reloads_route():
    client = FakeClient()
    session = make_session(client)
    await session.set_route("kmb", "1A", "inbound")

    await session.on_direction_toggle()
    assert session.direction == "outbound"
    await session.on_direction_toggle()
    assert session.direction == "inbound"

    assert client.stop_requests == [
        ("kmb", "1A", "inbound"),
        ("kmb", "1A", "outbound"),
        ("kmb", "1A", "inbound"),
    ]


@pytest.mark.asyncio
async def test_direction_toggle_without_route_only_flips():
    client = FakeClient()
    session = make_session(client)
    await session.on_direction_toggle()
    assert session.direction == "outbound"
    assert client.stop_requests == []


@pytest.mark.asyncio
async def test_operator_change_selects_first_route():
    client = FakeClient()
    session = make_session(client)

    await session.on_operator_change("kmb")

    assert session.routes == ["1A", "2"]
    assert session.route == "1A"
    assert session.scheduler.context.route == "1A"


@pytest.mark.asyncio
async def test_operator_change_caps_route_list(monkeypatch):
    from buslive.config import settings

    monkeypatch.setattr(settings, "max_routes_listed", 1)
    client = FakeClient()
    session = make_session(client)
    await session.on_operator_change("kmb")
    assert session.routes == ["1A"]


@pytest.mark.asyncio
async def test_operator_change_stops_polling_and_switches_strategy():
    client = FakeClient()
    client.vehicles = [RawVehicleReport("1A", "22.30", "114.17", plate="AB123")]
    session = make_session(client)
    await session.on_operator_change("kmb")
    assert session.reconciler.displayed_keys == {"AB123"}

    await session.on_operator_change("ctb")

    assert session.reconciler.displayed_keys == {"ctb_1_0", "ctb_1_1"}
    assert all(m["style"] == "bus-icon estimated" for m in session.surface.markers.values())
    assert session.scheduler.context.operator == "ctb"


@pytest.mark.asyncio
async def test_route_list_failure_sets_status():
    client = FakeClient()
    client.fail = {"routes"}
    session = make_session(client)
    await session.on_operator_change("kmb")
    assert session.status == STATUS_FAILED_ROUTES
    assert not session.scheduler.active


@pytest.mark.asyncio
async def test_minibus_needs_manual_route():
    client = FakeClient()
    session = make_session(client)

    await session.on_operator_change("gmb")
    assert session.status == STATUS_MANUAL_ROUTE

    await session.on_route_change("11")
    assert session.status == STATUS_UNSUPPORTED
    assert not session.scheduler.active


@pytest.mark.asyncio
async def test_light_rail_shows_schedule_without_polling():
    client = FakeClient()
    session = make_session(client)

    await session.on_operator_change("lrt")

    assert session.route == "001"
    assert not session.scheduler.active
    board = session.board()
    assert board.stops == []
    assert [(r.destination, r.eta) for r in board.schedule] == [("Tuen Mun Ferry Pier", "3 min")]


@pytest.mark.asyncio
async def test_shutdown_clears_everything():
    client = FakeClient()
    client.vehicles = [RawVehicleReport("1A", "22.30", "114.17", plate="AB123")]
    session = make_session(client)
    await session.set_route("kmb", "1A", "inbound")

    await session.shutdown()

    assert not session.scheduler.active
    assert session.reconciler.displayed_keys == set()
    assert session.surface.markers == {}
