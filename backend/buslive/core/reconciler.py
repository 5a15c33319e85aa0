"""Keep the vehicle markers on the map in step with the latest entity set."""

import logging
from collections.abc import Iterable

from buslive.core.map_surface import MapSurface
from buslive.schemas.vehicle import DisplayedVehicle, ReconcileSummary, SourceKind, VehicleEntity

logger = logging.getLogger(__name__)

MARKER_STYLES = {
    SourceKind.GPS: "bus-icon",
    SourceKind.ESTIMATED: "bus-icon estimated",
}


class EntityReconciler:
    """Owns the displayed entity set: identity key -> marker handle.

    After every ``reconcile`` the displayed keys are exactly the keys of
    the entities passed in; markers are moved in place when a key
    survives, created for new keys and removed for vanished ones.
    """

    def __init__(self, surface: MapSurface) -> None:
        self.surface = surface
        self._displayed: dict[str, str] = {}
        self._entities: dict[str, VehicleEntity] = {}

    @property
    def displayed_keys(self) -> set[str]:
        return set(self._displayed)

    def handle_for(self, identity_key: str) -> str | None:
        return self._displayed.get(identity_key)

    def displayed(self) -> list[DisplayedVehicle]:
        return [
            DisplayedVehicle(
                identity_key=key,
                marker=handle,
                lat=self._entities[key].lat,
                lon=self._entities[key].lon,
                source_kind=self._entities[key].source_kind,
                label=self._entities[key].label,
            )
            for key, handle in self._displayed.items()
        ]

    def reconcile(self, new_entities: Iterable[VehicleEntity]) -> ReconcileSummary:
        incoming: dict[str, VehicleEntity] = {}
        for entity in new_entities:
            incoming[entity.identity_key] = entity

        summary = ReconcileSummary()
        next_displayed: dict[str, str] = {}

        for key, entity in incoming.items():
            handle = self._displayed.get(key)
            if handle is None:
                handle = self.surface.create_vehicle_marker(
                    entity.coordinate, entity.label, MARKER_STYLES[entity.source_kind],
                )
                summary.created.append(key)
            elif self._entities[key].coordinate != entity.coordinate:
                self.surface.move_marker(handle, entity.coordinate)
                summary.updated.append(key)
            next_displayed[key] = handle

        for key, handle in self._displayed.items():
            if key not in incoming:
                self.surface.remove_marker(handle)
                summary.removed.append(key)

        self._displayed = next_displayed
        self._entities = incoming

        if summary.created or summary.removed:
            logger.debug(
                "Reconciled %d entities: +%d ~%d -%d",
                len(incoming), len(summary.created), len(summary.updated), len(summary.removed),
            )
        return summary

    def clear_reset(self) -> None:
        """Remove every displayed marker, unconditionally."""
        for handle in self._displayed.values():
            self.surface.remove_marker(handle)
        self._displayed = {}
        self._entities = {}
