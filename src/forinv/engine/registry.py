"""Current-project registry and the session context it owns."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from ..config import ConfigBundle
from ..exceptions import InvalidState, InvariantViolation, NotFoundError
from ..ledger.storage import INVENTORY_KIND, SAMPLE_KIND, RecordStore
from ..records.models import (
    GpsFix,
    HeightSummary,
    InventoryTree,
    Project,
    SampleTree,
    SpeciesDefinition,
)
from ..records.normalization import normalize_area_ha, normalize_diameter
from . import statistics
from .sampling import SampleCapture


logger = logging.getLogger(__name__)

SETTING_CURRENT_PROJECT = "currentProject"
SETTING_OPERATOR_NAME = "operatorName"


@dataclass
class SessionContext:
    """In-memory view of the current project.

    ``operator_name`` and ``inventory_area_ha`` may hold edits that only reach
    the store on :meth:`ProjectRegistry.save_current_session`.
    """

    project: Optional[Project] = None
    operator_name: str = ""
    inventory_area_ha: Optional[float] = None
    sample_trees: List[SampleTree] = field(default_factory=list)
    inventory_trees: List[InventoryTree] = field(default_factory=list)
    height_averages: Dict[str, HeightSummary] = field(default_factory=dict)
    selected_inventory_species: Optional[str] = None
    summary: Optional[statistics.InventorySummary] = None

    def sample_trees_by_area(self) -> Dict[str, List[SampleTree]]:
        grouped: Dict[str, List[SampleTree]] = defaultdict(list)
        for tree in self.sample_trees:
            grouped[tree.area].append(tree)
        return dict(grouped)


class ProjectRegistry:
    def __init__(self, store: RecordStore, config: Optional[ConfigBundle] = None) -> None:
        self.store = store
        self.config = config or store.config
        self.session = SessionContext()
        self.capture = SampleCapture(
            store, self.config.inventory, on_committed=self._on_sample_committed
        )

    # ------------------------------------------------------------------
    # lifecycle
    def start(self) -> Project:
        """Resume the last used project, or the most recent one.

        A default project is created only when the store holds none.
        """

        projects = self.projects
        if not projects:
            operator = self.store.get_setting(
                SETTING_OPERATOR_NAME, self.config.inventory.default_operator
            )
            project_id = self.store.create_project(
                self.config.inventory.default_project_name, operator=operator
            )
            logger.info("created default project %s", project_id)
            self._activate(project_id)
            return self.current_project

        remembered = self.store.get_setting(SETTING_CURRENT_PROJECT)
        known = {project.id for project in projects}
        target = remembered if remembered in known else projects[0].id
        self._activate(target)
        return self.current_project

    def close(self) -> None:
        self.save_current_session()

    @property
    def projects(self) -> List[Project]:
        return sorted(
            self.store.list_projects(),
            key=lambda project: project.updated_at,
            reverse=True,
        )

    @property
    def current_project(self) -> Project:
        if self.session.project is None:
            raise InvalidState("no current project")
        return self.session.project

    # ------------------------------------------------------------------
    # project commands
    def set_current_project(self, project_id: str) -> Project:
        self.store.get_project(project_id)
        if self.session.project is not None:
            self.save_current_session()
        self._activate(project_id)
        return self.current_project

    def create_project(
        self,
        name: str,
        *,
        operator: Optional[str] = None,
        description: str = "",
        location: str = "",
        inventory_area_ha: Optional[float] = None,
        switch: bool = True,
    ) -> Project:
        if operator is None:
            operator = self.session.operator_name or self.config.inventory.default_operator
        project_id = self.store.create_project(
            name,
            operator=operator,
            description=description,
            location=location,
            inventory_area_ha=inventory_area_ha,
        )
        if switch:
            return self.set_current_project(project_id)
        return self.store.get_project(project_id)

    def delete_project(self, project_id: str) -> None:
        project = self.store.get_project(project_id)
        remaining = [p for p in self.projects if p.id != project_id]
        if not remaining:
            raise InvariantViolation(
                f"cannot delete {project.name}: it is the only project"
            )
        was_current = (
            self.session.project is not None and self.session.project.id == project_id
        )
        self.store.delete_project(project_id)
        if was_current:
            self.session = SessionContext()
            self._activate(remaining[0].id)

    def duplicate_project(self, project_id: str, *, switch: bool = False) -> Project:
        if self.session.project is not None and self.session.project.id == project_id:
            self.save_current_session()
        source = self.store.get_project(project_id)
        snapshot = self.store.export_project(project_id)
        copy_id = self.store.import_project(snapshot, name=f"{source.name} (copy)")
        if switch:
            return self.set_current_project(copy_id)
        return self.store.get_project(copy_id)

    def update_project(self, project_id: str, **fields) -> Project:
        updated = self.store.update_project(project_id, **fields)
        if self.session.project is not None and self.session.project.id == project_id:
            if fields.get("operator") is not None:
                self.set_operator_name(updated.operator)
            if fields.get("inventory_area_ha") is not None:
                self.session.inventory_area_ha = updated.inventory_area_ha
            self._reload()
        return updated

    def save_current_session(self) -> None:
        """Flush session-level edits and the height summaries to the store."""

        session = self.session
        if session.project is None:
            return
        project = self.store.get_project(session.project.id)
        changes = {}
        if session.operator_name != project.operator:
            changes["operator"] = session.operator_name
        if (
            session.inventory_area_ha is not None
            and session.inventory_area_ha != project.inventory_area_ha
        ):
            changes["inventory_area_ha"] = session.inventory_area_ha
        if changes:
            self.store.update_project(project.id, **changes)
        if self.store.get_height_averages(project.id) != session.height_averages:
            self.store.save_height_averages(project.id, session.height_averages)
        if self.store.get_setting(SETTING_OPERATOR_NAME) != session.operator_name:
            self.store.set_setting(SETTING_OPERATOR_NAME, session.operator_name)
        logger.debug("saved session for project %s", project.id)

    # ------------------------------------------------------------------
    # session commands
    def set_inventory_area(self, value) -> statistics.InventorySummary:
        self.session.inventory_area_ha = normalize_area_ha(value)
        return self._recompute()

    def set_operator_name(self, name: str) -> None:
        self.session.operator_name = (name or "").strip()
        self.capture.operator = self.session.operator_name

    def select_area(self, area: str) -> None:
        self.capture.select_area(area)

    def select_inventory_species(self, species_id: Optional[str]) -> None:
        if species_id is not None and species_id not in self.current_project.species_catalog:
            raise NotFoundError(
                "species", f"{species_id} in project {self.current_project.name}"
            )
        self.session.selected_inventory_species = species_id

    def record_inventory_tree(
        self,
        diameter,
        *,
        species_id: Optional[str] = None,
        custom: bool = False,
        gps: Optional[GpsFix] = None,
    ) -> InventoryTree:
        species = species_id or self.session.selected_inventory_species
        if species is None:
            raise InvalidState("select a species before recording an inventory tree")
        diameter_class = normalize_diameter(diameter, self.config.inventory, custom=custom)
        stored = self.store.add_inventory_tree(
            self.current_project.id,
            InventoryTree(
                species=species,
                diameter_class=diameter_class,
                operator=self.session.operator_name,
                gps=gps,
            ),
        )
        self._reload()
        return stored

    def delete_sample_tree(self, tree_id: str) -> SampleTree:
        removed = self.store.delete_sample_tree(tree_id)
        self._reload()
        return removed

    def delete_inventory_tree(self, tree_id: str) -> InventoryTree:
        removed = self.store.delete_inventory_tree(tree_id)
        self._reload()
        return removed

    def clear_inventory(self) -> int:
        removed = self.store.delete_inventory_trees(self.current_project.id)
        self._reload()
        return removed

    def add_species(self, name: str, **fields) -> SpeciesDefinition:
        definition = self.store.add_species(self.current_project.id, name, **fields)
        self._reload()
        return definition

    def update_species(self, species_id: str, **fields) -> SpeciesDefinition:
        definition = self.store.update_species(self.current_project.id, species_id, **fields)
        self._reload()
        return definition

    def remove_species(self, species_id: str) -> None:
        self.store.remove_species(self.current_project.id, species_id)
        self.capture.on_species_removed(species_id)
        if self.session.selected_inventory_species == species_id:
            self.session.selected_inventory_species = None
        self._reload()

    def mark_synced(
        self,
        sample_ids: Iterable[str] = (),
        inventory_ids: Iterable[str] = (),
        *,
        synced_at: Optional[str] = None,
    ) -> int:
        """Record a confirmed delivery of the given trees of the current project."""

        project_id = self.current_project.id
        marked = self.store.mark_synced(
            project_id, sample_ids, SAMPLE_KIND, synced_at=synced_at
        )
        marked += self.store.mark_synced(
            project_id, inventory_ids, INVENTORY_KIND, synced_at=synced_at
        )
        self._reload()
        return marked

    # ------------------------------------------------------------------
    # accessors
    def summary(self) -> statistics.InventorySummary:
        if self.session.summary is None:
            return self._recompute()
        return self.session.summary

    def species_breakdown(self) -> Dict[str, statistics.SpeciesBreakdown]:
        return statistics.species_breakdown(
            self.session.inventory_trees,
            self.current_project.species_catalog,
            self.session.height_averages,
        )

    # ------------------------------------------------------------------
    def _activate(self, project_id: str) -> None:
        project = self.store.get_project(project_id)
        operator = (
            project.operator
            or self.store.get_setting(SETTING_OPERATOR_NAME)
            or self.config.inventory.default_operator
        )
        self.session = SessionContext(
            project=project,
            operator_name=operator,
            inventory_area_ha=project.inventory_area_ha,
        )
        self.capture.bind(project)
        self.capture.operator = operator
        if self.store.get_setting(SETTING_CURRENT_PROJECT) != project_id:
            self.store.set_setting(SETTING_CURRENT_PROJECT, project_id)
        self._reload()
        logger.info("current project is %s (%s)", project.name, project.id)

    def _reload(self) -> None:
        session = self.session
        project = self.store.get_project(self.current_project.id)
        session.project = project
        self.capture.refresh_catalog(project)
        session.sample_trees = self.store.list_sample_trees(project.id)
        session.inventory_trees = self.store.list_inventory_trees(project.id)
        session.height_averages = statistics.height_averages(session.sample_trees)
        self._recompute()

    def _recompute(self) -> statistics.InventorySummary:
        session = self.session
        session.summary = statistics.summarize_inventory(
            self.current_project,
            session.sample_trees,
            session.inventory_trees,
            session.height_averages,
            area_ha=session.inventory_area_ha,
        )
        return session.summary

    def _on_sample_committed(self, tree: SampleTree) -> None:
        self._reload()
