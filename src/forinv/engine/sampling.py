"""Sample-plot capture sequence: species, then diameter, then height."""

from __future__ import annotations

import enum
import logging
from dataclasses import replace
from typing import Callable, Optional

from ..config import InventoryConfig
from ..exceptions import InvalidState, NotFoundError, ValidationError
from ..ledger.storage import RecordStore
from ..records.models import GpsFix, Project, SampleTree
from ..records.normalization import normalize_diameter, normalize_height


logger = logging.getLogger(__name__)


class CaptureState(str, enum.Enum):
    IDLE = "idle"
    SPECIES_SELECTED = "species_selected"
    DIAMETER_CAPTURED = "diameter_captured"


class SampleCapture:
    """Drive one sample tree at a time from species choice to a stored record.

    A diameter without a height is never persisted: selecting another species,
    switching area or clearing the selection discards it.
    """

    def __init__(
        self,
        store: RecordStore,
        config: InventoryConfig,
        on_committed: Optional[Callable[[SampleTree], None]] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.on_committed = on_committed
        self.operator = ""
        self._project: Optional[Project] = None
        self._area = config.sampling_areas[0]
        self._species: Optional[str] = None
        self._pending: Optional[SampleTree] = None

    @property
    def state(self) -> CaptureState:
        if self._pending is not None:
            return CaptureState.DIAMETER_CAPTURED
        if self._species is not None:
            return CaptureState.SPECIES_SELECTED
        return CaptureState.IDLE

    @property
    def area(self) -> str:
        return self._area

    @property
    def species(self) -> Optional[str]:
        return self._species

    @property
    def pending(self) -> Optional[SampleTree]:
        return self._pending

    def bind(self, project: Project) -> None:
        """Attach to a freshly loaded project and start from IDLE."""

        self._project = project
        self._species = None
        self._discard("project switched")

    def select_area(self, area: str) -> None:
        if area not in self.config.sampling_areas:
            raise ValidationError(f"unknown sampling area '{area}'")
        if area != self._area:
            self._discard(f"area switched to {area}")
        self._area = area

    def select_species(self, species_id: str) -> None:
        project = self._require_project()
        if species_id not in project.species_catalog:
            raise NotFoundError("species", f"{species_id} in project {project.name}")
        self._discard(f"species switched to {species_id}")
        self._species = species_id

    def clear_species(self) -> None:
        self._discard("species cleared")
        self._species = None

    def capture_diameter(
        self, value, *, custom: bool = False, gps: Optional[GpsFix] = None
    ) -> SampleTree:
        if self._species is None:
            raise InvalidState("select a species before capturing a diameter")
        if self._pending is not None:
            raise InvalidState("a diameter is already captured; enter its height first")
        diameter = normalize_diameter(value, self.config, custom=custom)
        self._pending = SampleTree(
            area=self._area,
            species=self._species,
            diameter_class=diameter,
            height=None,
            operator=self.operator,
            gps=gps,
        )
        return self._pending

    def capture_height(self, value) -> SampleTree:
        if self._pending is None:
            raise InvalidState("capture a diameter before entering a height")
        project = self._require_project()
        height = normalize_height(value, self.config)
        stored = self.store.add_sample_tree(
            project.id, replace(self._pending, height=height)
        )
        self._pending = None
        logger.info(
            "sample tree %s: %s d=%d h=%.1f in %s",
            stored.id,
            stored.species,
            stored.diameter_class,
            stored.height,
            stored.area,
        )
        if self.on_committed is not None:
            self.on_committed(stored)
        return stored

    def on_species_removed(self, species_id: str) -> None:
        if self._species == species_id:
            self.clear_species()

    def refresh_catalog(self, project: Project) -> None:
        self._project = project

    def _require_project(self) -> Project:
        if self._project is None:
            raise InvalidState("no current project")
        return self._project

    def _discard(self, reason: str) -> None:
        if self._pending is not None:
            logger.info(
                "discarding uncommitted %s d=%d (%s)",
                self._pending.species,
                self._pending.diameter_class,
                reason,
            )
        self._pending = None
