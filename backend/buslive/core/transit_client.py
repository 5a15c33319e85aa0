"""Async client for the Hong Kong open transport data APIs (KMB, Citybus/NWFB, LRT)."""

import asyncio
import datetime
import logging
import math
from dataclasses import dataclass

import httpx

from buslive.config import settings
from buslive.core.errors import MalformedRecord, SourceFailure

logger = logging.getLogger(__name__)

OPERATOR_KMB = "kmb"
OPERATOR_CTB = "ctb"
OPERATOR_NWFB = "nwfb"
OPERATOR_GMB = "gmb"
OPERATOR_LRT = "lrt"
CITYBUS_OPERATORS = (OPERATOR_CTB, OPERATOR_NWFB)

# Route records of the combined Citybus/NWFB dataset carry an operator string;
# these substrings decide which company a route belongs to.
_CITYBUS_OPERATOR_MARKERS = {
    OPERATOR_CTB: ("ctb", "citybus"),
    OPERATOR_NWFB: ("nwfb", "new"),
}

# Seconds between retries
RETRY_BACKOFF = [1, 2, 4]

# Upstream timestamps without an offset are Hong Kong local time (UTC+8)
_HK_TZ = datetime.timezone(datetime.timedelta(hours=8))


def _parse_eta_time(raw) -> datetime.datetime:
    """Parse an ISO-8601 arrival time like '2026-10-19T12:05:00+08:00' to an aware datetime."""
    if not raw:
        raise MalformedRecord("missing arrival time")
    try:
        parsed = datetime.datetime.fromisoformat(str(raw))
    except ValueError as e:
        raise MalformedRecord(f"bad arrival time {raw!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=_HK_TZ)
    return parsed


def parse_coordinate(raw_lat, raw_lon) -> tuple[float, float]:
    """Parse raw lat/lon values (usually strings) into finite floats."""
    try:
        lat = float(raw_lat)
        lon = float(raw_lon)
    except (TypeError, ValueError) as e:
        raise MalformedRecord(f"bad coordinate ({raw_lat!r}, {raw_lon!r})") from e
    if not (math.isfinite(lat) and math.isfinite(lon)):
        raise MalformedRecord(f"non-finite coordinate ({raw_lat!r}, {raw_lon!r})")
    return lat, lon


@dataclass(frozen=True)
class StopRecord:
    stop_id: str
    lat: float
    lon: float
    name_tc: str = ""
    name_en: str = ""

    @property
    def coordinate(self) -> tuple[float, float]:
        return (self.lat, self.lon)

    @property
    def label(self) -> str:
        names = [n for n in (self.name_tc, self.name_en) if n]
        return " / ".join(names) if names else self.stop_id


@dataclass(frozen=True)
class EtaRecord:
    stop_id: str
    arrival: datetime.datetime


@dataclass
class RawVehicleReport:
    route: str
    lat: str | None
    lon: str | None
    plate: str = ""
    vehicle_id: str = ""


@dataclass
class ScheduleEntry:
    destination: str
    eta: str


class TransitClient:
    """Fetches routes, stops, ETAs and vehicle reports from each operator's API."""

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_backoff: list[float] | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            timeout=settings.request_timeout_seconds,
            headers={"Accept": "application/json"},
            transport=transport,
        )
        self._retry_backoff = retry_backoff if retry_backoff is not None else RETRY_BACKOFF

    async def close(self) -> None:
        await self._client.aclose()

    def _backoff(self, attempt: int) -> float:
        return self._retry_backoff[min(attempt, len(self._retry_backoff) - 1)]

    async def _get_with_retry(self, url: str, label: str, params: dict | None = None) -> httpx.Response:
        """GET request with retry and backoff; raises SourceFailure when attempts run out."""
        attempts = settings.max_retries + 1
        for attempt in range(attempts):
            try:
                resp = await self._client.get(url, params=params)
                resp.raise_for_status()
                return resp
            except (httpx.TimeoutException, httpx.ConnectError) as e:
                if attempt < attempts - 1:
                    wait = self._backoff(attempt)
                    logger.warning(
                        "%s attempt %d/%d failed (%s), retrying in %ss",
                        label, attempt + 1, attempts, type(e).__name__, wait,
                    )
                    await asyncio.sleep(wait)
                else:
                    raise SourceFailure(label, type(e).__name__) from e
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if status >= 500 and attempt < attempts - 1:
                    wait = self._backoff(attempt)
                    logger.warning(
                        "%s attempt %d/%d got HTTP %d, retrying in %ss",
                        label, attempt + 1, attempts, status, wait,
                    )
                    await asyncio.sleep(wait)
                else:
                    raise SourceFailure(label, f"HTTP {status}") from e
            except httpx.HTTPError as e:
                raise SourceFailure(label, type(e).__name__) from e
        raise SourceFailure(label, "no attempts made")

    async def _get_data(self, url: str, label: str, params: dict | None = None):
        """Fetch a JSON document and return its ``data`` member."""
        resp = await self._get_with_retry(url, label, params)
        try:
            payload = resp.json()
        except ValueError as e:
            raise SourceFailure(label, "invalid JSON") from e
        if isinstance(payload, dict):
            return payload.get("data") or []
        return payload

    @staticmethod
    def _as_list(data) -> list:
        return data if isinstance(data, list) else []

    # ------------------------------------------------------------------
    # Routes

    async def fetch_routes(self, operator: str) -> list[str]:
        """Route identifiers offered by an operator, in upstream order, without duplicates."""
        if operator == OPERATOR_KMB:
            items = self._as_list(await self._get_data(f"{settings.kmb_base_url}/route", "kmb routes"))
            names = [str(r.get("route", "")) for r in items if isinstance(r, dict)]
        elif operator in CITYBUS_OPERATORS:
            items = self._as_list(
                await self._get_data(f"{settings.citybus_base_url}/route", f"{operator} routes")
            )
            markers = _CITYBUS_OPERATOR_MARKERS[operator]
            names = []
            for r in items:
                if not isinstance(r, dict):
                    continue
                company = str(r.get("operator") or r.get("co") or "").lower()
                if any(m in company for m in markers):
                    names.append(str(r.get("route", "")))
        elif operator == OPERATOR_LRT:
            items = self._as_list(
                await self._get_data(f"{settings.lrt_base_url}/getStationList", "lrt stations")
            )
            names = [str(s.get("station_id", "")) for s in items if isinstance(s, dict)]
        else:
            # Green minibus routes are entered by hand
            return []

        seen: set[str] = set()
        routes = []
        for name in names:
            if name and name not in seen:
                seen.add(name)
                routes.append(name)
        logger.info("Fetched %d %s routes", len(routes), operator)
        return routes

    # ------------------------------------------------------------------
    # Stops

    async def fetch_stops(self, operator: str, route: str, direction: str) -> list[StopRecord]:
        """Ordered stop sequence for a route and direction."""
        if operator == OPERATOR_KMB:
            stops = await self._fetch_kmb_stops(route, direction)
        elif operator in CITYBUS_OPERATORS:
            stops = await self._fetch_citybus_stops(operator, route)
        else:
            return []
        logger.info("Fetched %d stops for %s route %s (%s)", len(stops), operator, route, direction)
        return stops

    async def _fetch_kmb_stops(self, route: str, direction: str) -> list[StopRecord]:
        items = self._as_list(await self._get_data(
            f"{settings.kmb_base_url}/route-stop/{route}/{direction}/1",
            f"kmb route-stop {route}",
        ))
        stop_ids = []
        for item in items:
            if isinstance(item, dict) and item.get("stop"):
                stop_ids.append(str(item["stop"]))

        # Each stop's detail is a separate request; a failing one only drops that stop.
        details = await asyncio.gather(*(self._fetch_kmb_stop(sid) for sid in stop_ids))
        return [s for s in details if s is not None]

    async def _fetch_kmb_stop(self, stop_id: str) -> StopRecord | None:
        try:
            data = await self._get_data(f"{settings.kmb_base_url}/stop/{stop_id}", f"kmb stop {stop_id}")
            if not isinstance(data, dict):
                raise MalformedRecord(f"stop {stop_id} has no detail")
            lat, lon = parse_coordinate(data.get("lat"), data.get("long"))
        except SourceFailure as e:
            logger.warning("Stop fetch error: %s", e)
            return None
        except MalformedRecord as e:
            logger.debug("Skipping malformed stop %s: %s", stop_id, e)
            return None
        return StopRecord(
            stop_id=stop_id,
            lat=lat,
            lon=lon,
            name_tc=str(data.get("name_tc") or ""),
            name_en=str(data.get("name_en") or ""),
        )

    async def _fetch_citybus_stops(self, operator: str, route: str) -> list[StopRecord]:
        items = self._as_list(await self._get_data(
            f"{settings.citybus_base_url}/route/{route}", f"{operator} route {route}",
        ))
        stops = []
        for item in items:
            if not isinstance(item, dict):
                continue
            try:
                if not item.get("stop_lat") or not item.get("stop_lon"):
                    raise MalformedRecord("stop without coordinates")
                lat, lon = parse_coordinate(item["stop_lat"], item["stop_lon"])
            except MalformedRecord as e:
                logger.debug("Skipping stop %s on %s route %s: %s", item.get("stop"), operator, route, e)
                continue
            stops.append(StopRecord(
                stop_id=str(item.get("stop") or f"s{len(stops)}"),
                lat=lat,
                lon=lon,
                name_tc=str(item.get("stop_tc") or ""),
                name_en=str(item.get("stop_en") or ""),
            ))
        return stops

    # ------------------------------------------------------------------
    # ETAs

    async def fetch_etas(self, operator: str, route: str, direction: str) -> list[EtaRecord]:
        """Raw per-stop arrival estimates for a route."""
        if operator == OPERATOR_KMB:
            url = f"{settings.kmb_base_url}/eta/{route}/{direction}/1"
        elif operator in CITYBUS_OPERATORS:
            url = f"{settings.citybus_base_url}/eta/{route}"
        else:
            return []

        items = self._as_list(await self._get_data(url, f"{operator} eta {route}"))
        records = []
        for item in items:
            if not isinstance(item, dict):
                continue
            try:
                if not item.get("stop"):
                    raise MalformedRecord("eta without stop")
                records.append(EtaRecord(stop_id=str(item["stop"]), arrival=_parse_eta_time(item.get("eta"))))
            except MalformedRecord as e:
                logger.debug("Skipping eta record: %s", e)
        logger.debug("Fetched %d eta records for %s route %s", len(records), operator, route)
        return records

    # ------------------------------------------------------------------
    # Vehicles

    async def fetch_vehicles(self, operator: str, route: str) -> list[RawVehicleReport]:
        """Raw GPS vehicle reports. Only KMB publishes a vehicle feed."""
        if operator != OPERATOR_KMB:
            return []
        items = self._as_list(await self._get_data(f"{settings.kmb_base_url}/vehicle", "kmb vehicles"))
        reports = []
        for item in items:
            if not isinstance(item, dict):
                continue
            reports.append(RawVehicleReport(
                route=str(item.get("route", "")),
                lat=item.get("lat"),
                lon=item.get("long", item.get("lon")),
                plate=str(item.get("plate") or ""),
                vehicle_id=str(item.get("vehicle") or ""),
            ))
        logger.debug("Fetched %d vehicle reports (route %s requested)", len(reports), route)
        return reports

    # ------------------------------------------------------------------
    # Light rail

    async def fetch_schedule(self, station_id: str) -> list[ScheduleEntry]:
        """Next departures at a light rail station."""
        items = self._as_list(await self._get_data(
            f"{settings.lrt_base_url}/getSchedule", f"lrt schedule {station_id}",
            params={"station_id": station_id},
        ))
        entries = []
        for item in items:
            if not isinstance(item, dict):
                continue
            entries.append(ScheduleEntry(
                destination=str(item.get("dest_tc") or item.get("destination") or ""),
                eta=str(item.get("eta") or ""),
            ))
        return entries
