"""Reduce raw per-stop arrival estimates to minutes until the next arrival."""

import datetime
import logging
from collections.abc import Iterable

from buslive.core.transit_client import EtaRecord

logger = logging.getLogger(__name__)

NO_SERVICE_TEXT = "no scheduled service"


def eta_text(minutes: int | None) -> str:
    if minutes is None:
        return NO_SERVICE_TEXT
    return f"{minutes} min"


class EtaAggregator:
    """Soonest upcoming arrival per stop."""

    def aggregate(
        self,
        eta_records: Iterable[EtaRecord],
        known_stop_ids: Iterable[str],
        now: datetime.datetime | None = None,
    ) -> dict[str, int | None]:
        """Minutes remaining until the next arrival at each known stop.

        Arrivals already in the past are ignored; a stop without any
        upcoming arrival maps to None.
        """
        if now is None:
            now = datetime.datetime.now(datetime.timezone.utc)

        soonest: dict[str, datetime.datetime] = {}
        for record in eta_records:
            if record.arrival < now:
                continue
            current = soonest.get(record.stop_id)
            if current is None or record.arrival < current:
                soonest[record.stop_id] = record.arrival

        result: dict[str, int | None] = {}
        for stop_id in known_stop_ids:
            arrival = soonest.get(stop_id)
            if arrival is None:
                result[stop_id] = None
                continue
            seconds = (arrival - now).total_seconds()
            result[stop_id] = max(0, int(seconds // 60))
        return result
