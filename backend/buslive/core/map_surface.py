"""Map rendering surface.

Drawing primitives are recorded synchronously as operations and as
layer state; ``flush`` sends the operations collected since the last
flush to the broadcaster in one message, together with the full layer
state for clients that connect later.
"""

import itertools
import logging
from collections.abc import Sequence

from shapely.geometry import MultiPoint

from buslive.core.broadcaster import Broadcaster

logger = logging.getLogger(__name__)

Coordinate = tuple[float, float]


def bounds_of(coordinates: Sequence[Coordinate]) -> list[list[float]] | None:
    """[[south, west], [north, east]] around the coordinates, or None if empty."""
    if not coordinates:
        return None
    # Shapely uses (x, y) = (lon, lat)
    min_lon, min_lat, max_lon, max_lat = MultiPoint([(lon, lat) for lat, lon in coordinates]).bounds
    return [[min_lat, min_lon], [max_lat, max_lon]]


class MapSurface:
    """Records map operations and keeps the current layer state."""

    def __init__(self, broadcaster: Broadcaster | None = None) -> None:
        self._broadcaster = broadcaster
        self._pending: list[dict] = []
        self._handles = itertools.count(1)

        self.stop_markers: list[dict] = []
        self.polyline: dict | None = None
        self.bounds: list[list[float]] | None = None
        # marker handle -> {"lat", "lon", "label", "style"}
        self.markers: dict[str, dict] = {}

    def _emit(self, op: str, **fields) -> None:
        self._pending.append({"op": op, **fields})

    def draw_stop_marker(self, coordinate: Coordinate, label: str) -> None:
        marker = {"lat": coordinate[0], "lon": coordinate[1], "label": label}
        self.stop_markers.append(marker)
        self._emit("draw_stop_marker", **marker)

    def draw_polyline(self, coordinates: Sequence[Coordinate], color: str = "blue") -> None:
        points = [[lat, lon] for lat, lon in coordinates]
        self.polyline = {"points": points, "color": color}
        self._emit("draw_polyline", points=points, color=color)

    def fit_bounds(self, coordinates: Sequence[Coordinate]) -> None:
        bounds = bounds_of(coordinates)
        if bounds is None:
            return
        self.bounds = bounds
        self._emit("fit_bounds", bounds=bounds)

    def create_vehicle_marker(self, coordinate: Coordinate, label: str, style_tag: str) -> str:
        handle = f"m{next(self._handles)}"
        marker = {"lat": coordinate[0], "lon": coordinate[1], "label": label, "style": style_tag}
        self.markers[handle] = marker
        self._emit("create_marker", handle=handle, **marker)
        return handle

    def move_marker(self, handle: str, coordinate: Coordinate) -> None:
        marker = self.markers.get(handle)
        if marker is None:
            logger.warning("Move requested for unknown marker %s", handle)
            return
        marker["lat"], marker["lon"] = coordinate
        self._emit("move_marker", handle=handle, lat=coordinate[0], lon=coordinate[1])

    def remove_marker(self, handle: str) -> None:
        if self.markers.pop(handle, None) is None:
            logger.warning("Remove requested for unknown marker %s", handle)
            return
        self._emit("remove_marker", handle=handle)

    def clear_all_decorations(self) -> None:
        """Remove stop markers, the route line and any vehicle markers still drawn."""
        self.stop_markers = []
        self.polyline = None
        self.bounds = None
        self.markers.clear()
        self._emit("clear_all")

    def snapshot(self) -> dict:
        return {
            "type": "snapshot",
            "stops": self.stop_markers,
            "polyline": self.polyline,
            "bounds": self.bounds,
            "markers": [{"handle": h, **m} for h, m in self.markers.items()],
        }

    def drain(self) -> list[dict]:
        ops, self._pending = self._pending, []
        return ops

    async def flush(self) -> None:
        ops = self.drain()
        if not ops or self._broadcaster is None:
            return
        await self._broadcaster.publish({"type": "update", "ops": ops}, self.snapshot())
