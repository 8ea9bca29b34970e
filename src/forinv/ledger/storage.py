"""Filesystem-backed record store for inventory projects.

The whole persisted state lives in numbered *generations*
(``generations/0001``, ``generations/0002`` ...). Every mutating operation
stages its changes on a copy of the in-memory state, writes a complete new
generation next to the current one and then swaps the ``CURRENT`` pointer
with an atomic rename. A failure at any point leaves the previous generation
and the in-memory state untouched, so compound operations such as a project
delete with cascade or a project import are all-or-nothing.
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import os
import shutil
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional

import pandas as pd

from ..config import ConfigBundle, SpeciesPreset
from ..engine.statistics import height_averages
from ..exceptions import NotFoundError, StorageError, ValidationError
from ..records.models import (
    PROJECT_ACTIVE,
    GpsFix,
    HeightSummary,
    InventoryTree,
    Project,
    SampleTree,
    SpeciesDefinition,
)
from ..records.normalization import (
    normalize_area_ha,
    normalize_default_height,
    normalize_form_factor,
    slugify_species,
)
from ..records.snapshot import (
    FORMAT_VERSION,
    build_snapshot,
    document_height_averages,
    document_inventory_trees,
    document_sample_trees,
    document_species,
    parse_snapshot,
)


logger = logging.getLogger(__name__)

PROJECTS_FILE = "projects.json"
SAMPLE_TREES_FILE = "sample_trees.csv"
INVENTORY_TREES_FILE = "inventory_trees.csv"
HEIGHT_AVERAGES_FILE = "height_averages.csv"
SETTINGS_FILE = "settings.json"
MANIFEST_FILE = "manifest.json"

SAMPLE_TREE_COLUMNS = [
    "id",
    "project_id",
    "area",
    "species",
    "diameter_class",
    "height",
    "timestamp",
    "operator",
    "gps_lat",
    "gps_lng",
    "gps_accuracy",
    "synced_at",
]
INVENTORY_TREE_COLUMNS = [
    "id",
    "project_id",
    "species",
    "diameter_class",
    "timestamp",
    "operator",
    "gps_lat",
    "gps_lng",
    "gps_accuracy",
    "synced_at",
]
HEIGHT_AVERAGE_COLUMNS = ["project_id", "species", "average", "count", "min", "max"]

SAMPLE_KIND = "sample"
INVENTORY_KIND = "inventory"
TREE_KINDS = (SAMPLE_KIND, INVENTORY_KIND)


@dataclass
class _StoreState:
    projects: Dict[str, Project] = field(default_factory=dict)
    sample_trees: Dict[str, SampleTree] = field(default_factory=dict)
    inventory_trees: Dict[str, InventoryTree] = field(default_factory=dict)
    height_averages: Dict[str, Dict[str, HeightSummary]] = field(default_factory=dict)
    settings: Dict[str, Any] = field(default_factory=dict)

    def copy(self) -> "_StoreState":
        return copy.deepcopy(self)


class RecordStore:
    """Project-scoped CRUD over projects, trees, height summaries and settings."""

    def __init__(self, root: Path, config: Optional[ConfigBundle] = None) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.config = config or ConfigBundle()
        self.generations_dir = self.root / "generations"
        self.generations_dir.mkdir(exist_ok=True)
        self.current_pointer = self.root / "CURRENT"
        self._discard_incomplete_generations()
        self._state = self._load_current()

    # ------------------------------------------------------------------
    # projects
    def create_project(
        self,
        name: str,
        *,
        operator: str = "",
        description: str = "",
        location: str = "",
        inventory_area_ha: Optional[float] = None,
        species: Optional[Iterable[SpeciesDefinition]] = None,
    ) -> str:
        name = (name or "").strip()
        if not name:
            raise ValidationError("project name must not be empty")
        area = normalize_area_ha(
            self.config.inventory.default_area_ha
            if inventory_area_ha is None
            else inventory_area_ha
        )
        if species is None:
            catalog = self.default_catalog()
        else:
            catalog = _catalog_from(species)

        now = _now()
        project = Project(
            id=_new_id(),
            name=name,
            operator=(operator or "").strip(),
            inventory_area_ha=area,
            created_at=now,
            updated_at=now,
            description=(description or "").strip(),
            location=(location or "").strip(),
            species_catalog=catalog,
        )
        with self._transaction() as state:
            state.projects[project.id] = project
        logger.info("created project %s (%s)", project.id, project.name)
        return project.id

    def get_project(self, project_id: str) -> Project:
        return copy.deepcopy(self._require_project(self._state, project_id))

    def list_projects(self) -> List[Project]:
        return [
            copy.deepcopy(project)
            for project in self._state.projects.values()
            if project.status == PROJECT_ACTIVE
        ]

    def update_project(
        self,
        project_id: str,
        *,
        name: Optional[str] = None,
        operator: Optional[str] = None,
        description: Optional[str] = None,
        location: Optional[str] = None,
        inventory_area_ha: Optional[float] = None,
    ) -> Project:
        with self._transaction() as state:
            project = self._require_project(state, project_id)
            if name is not None:
                if not name.strip():
                    raise ValidationError("project name must not be empty")
                project.name = name.strip()
            if operator is not None:
                project.operator = operator.strip()
            if description is not None:
                project.description = description.strip()
            if location is not None:
                project.location = location.strip()
            if inventory_area_ha is not None:
                project.inventory_area_ha = normalize_area_ha(inventory_area_ha)
            project.updated_at = _now()
        return self.get_project(project_id)

    def delete_project(self, project_id: str) -> None:
        with self._transaction() as state:
            self._require_project(state, project_id)
            samples = _drop_where(state.sample_trees, lambda tree: tree.project_id == project_id)
            inventory = _drop_where(
                state.inventory_trees, lambda tree: tree.project_id == project_id
            )
            state.height_averages.pop(project_id, None)
            del state.projects[project_id]
        logger.info(
            "deleted project %s with %d sample and %d inventory trees",
            project_id,
            samples,
            inventory,
        )

    # ------------------------------------------------------------------
    # species catalog
    def default_catalog(self) -> Dict[str, SpeciesDefinition]:
        return _catalog_from(
            _species_from_preset(preset, self.config)
            for preset in self.config.inventory.default_species
        )

    def add_species(
        self,
        project_id: str,
        name: str,
        *,
        icon: str = "🌳",
        form_factor: float = 0.45,
        default_height: Optional[float] = None,
    ) -> SpeciesDefinition:
        definition = SpeciesDefinition(
            id=slugify_species(name),
            name=name.strip(),
            icon=icon,
            form_factor=normalize_form_factor(form_factor),
            default_height=normalize_default_height(
                default_height, self.config.inventory
            ),
        )
        with self._transaction() as state:
            project = self._require_project(state, project_id)
            if definition.id in project.species_catalog:
                raise ValidationError(
                    f"species id {definition.id} already exists in project {project.name}"
                )
            project.species_catalog[definition.id] = definition
            project.updated_at = _now()
        return copy.deepcopy(definition)

    def update_species(
        self,
        project_id: str,
        species_id: str,
        *,
        icon: Optional[str] = None,
        form_factor: Optional[float] = None,
        default_height: Optional[float] = None,
        clear_default_height: bool = False,
    ) -> SpeciesDefinition:
        with self._transaction() as state:
            project = self._require_project(state, project_id)
            species = _require_species(project, species_id)
            if icon is not None:
                species.icon = icon
            if form_factor is not None:
                species.form_factor = normalize_form_factor(form_factor)
            if clear_default_height:
                species.default_height = None
            elif default_height is not None:
                species.default_height = normalize_default_height(
                    default_height, self.config.inventory
                )
            project.updated_at = _now()
            updated = copy.deepcopy(species)
        return updated

    def remove_species(self, project_id: str, species_id: str) -> None:
        """Drop a species and every tree and height summary that uses it."""

        with self._transaction() as state:
            project = self._require_project(state, project_id)
            _require_species(project, species_id)
            del project.species_catalog[species_id]

            def matches(tree) -> bool:
                return tree.project_id == project_id and tree.species == species_id

            samples = _drop_where(state.sample_trees, matches)
            inventory = _drop_where(state.inventory_trees, matches)
            self._rebuild_cache(state, project_id)
            project.updated_at = _now()
        logger.info(
            "removed species %s from project %s (%d sample, %d inventory trees)",
            species_id,
            project_id,
            samples,
            inventory,
        )

    # ------------------------------------------------------------------
    # sample trees
    def add_sample_tree(self, project_id: str, tree: SampleTree) -> SampleTree:
        if tree.area not in self.config.inventory.sampling_areas:
            raise ValidationError(f"unknown sampling area '{tree.area}'")
        _check_diameter(tree.diameter_class)
        if tree.height is None or tree.height <= 0:
            raise ValidationError("sample tree height must be positive")

        with self._transaction() as state:
            project = self._require_project(state, project_id)
            _require_species(project, tree.species)
            stored = replace(
                tree,
                id=_new_id(),
                project_id=project_id,
                timestamp=tree.timestamp or _now(),
                height=float(tree.height),
                synced_at=None,
            )
            state.sample_trees[stored.id] = stored
            self._rebuild_cache(state, project_id)
            project.updated_at = _now()
        logger.debug("stored sample tree %s in project %s", stored.id, project_id)
        return copy.deepcopy(stored)

    def delete_sample_tree(self, tree_id: str) -> SampleTree:
        with self._transaction() as state:
            tree = state.sample_trees.pop(tree_id, None)
            if tree is None:
                raise NotFoundError("sample tree", tree_id)
            self._rebuild_cache(state, tree.project_id)
            _touch(state, tree.project_id)
        return tree

    def list_sample_trees(
        self, project_id: str, area: Optional[str] = None
    ) -> List[SampleTree]:
        self._require_project(self._state, project_id)
        if area is not None and area not in self.config.inventory.sampling_areas:
            raise ValidationError(f"unknown sampling area '{area}'")
        return [
            copy.deepcopy(tree)
            for tree in self._state.sample_trees.values()
            if tree.project_id == project_id and (area is None or tree.area == area)
        ]

    # ------------------------------------------------------------------
    # inventory trees
    def add_inventory_tree(self, project_id: str, tree: InventoryTree) -> InventoryTree:
        _check_diameter(tree.diameter_class)
        with self._transaction() as state:
            project = self._require_project(state, project_id)
            _require_species(project, tree.species)
            stored = replace(
                tree,
                id=_new_id(),
                project_id=project_id,
                timestamp=tree.timestamp or _now(),
                synced_at=None,
            )
            state.inventory_trees[stored.id] = stored
            project.updated_at = _now()
        return copy.deepcopy(stored)

    def delete_inventory_tree(self, tree_id: str) -> InventoryTree:
        with self._transaction() as state:
            tree = state.inventory_trees.pop(tree_id, None)
            if tree is None:
                raise NotFoundError("inventory tree", tree_id)
            _touch(state, tree.project_id)
        return tree

    def delete_inventory_trees(self, project_id: str) -> int:
        with self._transaction() as state:
            self._require_project(state, project_id)
            removed = _drop_where(
                state.inventory_trees, lambda tree: tree.project_id == project_id
            )
            _touch(state, project_id)
        logger.info("cleared %d inventory trees from project %s", removed, project_id)
        return removed

    def list_inventory_trees(self, project_id: str) -> List[InventoryTree]:
        self._require_project(self._state, project_id)
        return [
            copy.deepcopy(tree)
            for tree in self._state.inventory_trees.values()
            if tree.project_id == project_id
        ]

    # ------------------------------------------------------------------
    # sync status
    def mark_synced(
        self,
        project_id: str,
        tree_ids: Iterable[str],
        kind: str,
        *,
        synced_at: Optional[str] = None,
    ) -> int:
        """Stamp trees of *kind* as delivered to the spreadsheet.

        Every id must belong to *project_id*; nothing is stamped otherwise.
        Sync status is bookkeeping and leaves the project's ``updated_at``
        alone.
        """

        if kind not in TREE_KINDS:
            raise ValidationError(f"unknown tree kind '{kind}'")
        tree_ids = list(tree_ids)
        if not tree_ids:
            self._require_project(self._state, project_id)
            return 0
        stamp = synced_at or _now()
        with self._transaction() as state:
            self._require_project(state, project_id)
            records = state.sample_trees if kind == SAMPLE_KIND else state.inventory_trees
            marked = 0
            for tree_id in tree_ids:
                tree = records.get(tree_id)
                if tree is None or tree.project_id != project_id:
                    raise NotFoundError(f"{kind} tree", tree_id)
                tree.synced_at = stamp
                marked += 1
        logger.info("marked %d %s trees of project %s as synced", marked, kind, project_id)
        return marked

    def list_unsynced(self, project_id: str) -> Dict[str, List[Any]]:
        return {
            SAMPLE_KIND: [
                tree for tree in self.list_sample_trees(project_id) if tree.synced_at is None
            ],
            INVENTORY_KIND: [
                tree
                for tree in self.list_inventory_trees(project_id)
                if tree.synced_at is None
            ],
        }

    # ------------------------------------------------------------------
    # height summaries
    def get_height_averages(self, project_id: str) -> Dict[str, HeightSummary]:
        self._require_project(self._state, project_id)
        return dict(self._state.height_averages.get(project_id, {}))

    def save_height_averages(
        self, project_id: str, averages: Mapping[str, HeightSummary]
    ) -> None:
        with self._transaction() as state:
            self._require_project(state, project_id)
            state.height_averages[project_id] = dict(averages)

    def rebuild_height_averages(self, project_id: str) -> Dict[str, HeightSummary]:
        with self._transaction() as state:
            self._require_project(state, project_id)
            self._rebuild_cache(state, project_id)
        return self.get_height_averages(project_id)

    # ------------------------------------------------------------------
    # export / import
    def export_project(self, project_id: str) -> Dict[str, Any]:
        project = self.get_project(project_id)
        return build_snapshot(
            project,
            self.list_sample_trees(project_id),
            self.list_inventory_trees(project_id),
            self.get_height_averages(project_id),
            exported_at=_now(),
        )

    def export_all(self) -> Dict[str, Any]:
        return {
            "formatVersion": FORMAT_VERSION,
            "exportedAt": _now(),
            "projects": [self.export_project(project.id) for project in self.list_projects()],
        }

    def import_project(
        self, snapshot: Mapping[str, Any], *, name: Optional[str] = None
    ) -> str:
        """Insert a snapshot as a brand-new project and return its id."""

        document = parse_snapshot(snapshot)
        areas = self.config.inventory.sampling_areas
        for idx, entry in enumerate(document.sample_trees):
            if entry.area not in areas:
                raise ValidationError(
                    f"invalid snapshot: sampleTrees[{idx}].area '{entry.area}' is not a sampling area"
                )

        now = _now()
        meta = document.project
        project = Project(
            id=_new_id(),
            name=(name or meta.name).strip(),
            operator=meta.operator,
            inventory_area_ha=meta.inventory_area_ha,
            created_at=now,
            updated_at=now,
            description=meta.description,
            location=meta.location,
            species_catalog=document_species(document),
        )
        with self._transaction() as state:
            state.projects[project.id] = project
            for tree in document_sample_trees(document):
                stored = replace(
                    tree,
                    id=_new_id(),
                    project_id=project.id,
                    timestamp=tree.timestamp or now,
                    synced_at=None,
                )
                state.sample_trees[stored.id] = stored
            for tree in document_inventory_trees(document):
                stored = replace(
                    tree,
                    id=_new_id(),
                    project_id=project.id,
                    timestamp=tree.timestamp or now,
                    synced_at=None,
                )
                state.inventory_trees[stored.id] = stored
            rebuilt = self._rebuild_cache(state, project.id)

        cached = document_height_averages(document)
        if cached and cached != rebuilt:
            logger.warning(
                "snapshot height averages for %s disagree with its sample trees; "
                "using recomputed values",
                project.name,
            )
        logger.info(
            "imported project %s as %s (%d sample, %d inventory trees)",
            meta.name,
            project.id,
            len(document.sample_trees),
            len(document.inventory_trees),
        )
        return project.id

    # ------------------------------------------------------------------
    # settings
    def get_setting(self, key: str, default: Any = None) -> Any:
        if key not in self._state.settings:
            return default
        return copy.deepcopy(self._state.settings[key])

    def set_setting(self, key: str, value: Any) -> None:
        try:
            json.dumps(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"setting {key} is not JSON serializable") from exc
        with self._transaction() as state:
            state.settings[key] = copy.deepcopy(value)

    def database_stats(self) -> Dict[str, int]:
        return {
            "projects": len(self.list_projects()),
            "sample_trees": len(self._state.sample_trees),
            "inventory_trees": len(self._state.inventory_trees),
            "generation": self.current_generation() or 0,
        }

    # ------------------------------------------------------------------
    # generations
    def current_generation(self) -> Optional[int]:
        if not self.current_pointer.exists():
            return None
        text = self.current_pointer.read_text(encoding="utf-8").strip()
        return int(text) if text.isdigit() else None

    def list_generations(self) -> List[int]:
        return sorted(
            int(path.name)
            for path in self.generations_dir.iterdir()
            if path.is_dir() and path.name.isdigit()
        )

    @contextmanager
    def _transaction(self) -> Iterator[_StoreState]:
        staged = self._state.copy()
        yield staged
        self._commit(staged)
        self._state = staged

    def _commit(self, state: _StoreState) -> None:
        seq = self._next_generation_seq()
        final_dir = self.generations_dir / f"{seq:04d}"
        staging_dir = self.generations_dir / f".staging-{seq:04d}"
        try:
            staging_dir.mkdir(parents=True)
            self._write_generation(staging_dir, state, seq)
            staging_dir.rename(final_dir)
            pointer_tmp = self.root / "CURRENT.tmp"
            pointer_tmp.write_text(f"{seq:04d}\n", encoding="utf-8")
            os.replace(pointer_tmp, self.current_pointer)
        except OSError as exc:
            shutil.rmtree(staging_dir, ignore_errors=True)
            raise StorageError(f"failed to commit generation {seq}: {exc}") from exc
        self._prune_generations(seq)

    def _write_generation(self, target: Path, state: _StoreState, seq: int) -> None:
        projects_path = target / PROJECTS_FILE
        projects_path.write_text(
            json.dumps(
                [_project_to_record(project) for project in state.projects.values()],
                indent=2,
                ensure_ascii=False,
            )
            + "\n",
            encoding="utf-8",
        )

        pd.DataFrame(
            [_sample_to_row(tree) for tree in state.sample_trees.values()],
            columns=SAMPLE_TREE_COLUMNS,
        ).to_csv(target / SAMPLE_TREES_FILE, index=False)
        pd.DataFrame(
            [_inventory_to_row(tree) for tree in state.inventory_trees.values()],
            columns=INVENTORY_TREE_COLUMNS,
        ).to_csv(target / INVENTORY_TREES_FILE, index=False)
        pd.DataFrame(
            [
                _summary_to_row(project_id, summary)
                for project_id, summaries in state.height_averages.items()
                for summary in summaries.values()
            ],
            columns=HEIGHT_AVERAGE_COLUMNS,
        ).to_csv(target / HEIGHT_AVERAGES_FILE, index=False)

        (target / SETTINGS_FILE).write_text(
            json.dumps(state.settings, indent=2, sort_keys=True, ensure_ascii=False) + "\n",
            encoding="utf-8",
        )

        artifacts = [
            PROJECTS_FILE,
            SAMPLE_TREES_FILE,
            INVENTORY_TREES_FILE,
            HEIGHT_AVERAGES_FILE,
            SETTINGS_FILE,
        ]
        manifest = {
            "generation_seq": seq,
            "created_at": _now(),
            "row_counts": {
                "projects": len(state.projects),
                "sample_trees": len(state.sample_trees),
                "inventory_trees": len(state.inventory_trees),
                "height_averages": sum(len(v) for v in state.height_averages.values()),
            },
            "artifact_checksums": {
                name: _sha256_file(target / name) for name in artifacts
            },
            "artifact_sizes": {
                name: (target / name).stat().st_size for name in artifacts
            },
        }
        (target / MANIFEST_FILE).write_text(
            json.dumps(manifest, indent=2, sort_keys=True) + "\n", encoding="utf-8"
        )

    def _load_current(self) -> _StoreState:
        seq = self.current_generation()
        if seq is None:
            return _StoreState()
        source = self.generations_dir / f"{seq:04d}"
        try:
            manifest = json.loads((source / MANIFEST_FILE).read_text(encoding="utf-8"))
            for name, expected in manifest["artifact_checksums"].items():
                if _sha256_file(source / name) != expected:
                    raise StorageError(f"generation {seq}: checksum mismatch for {name}")
            return _read_generation(source)
        except (OSError, KeyError, ValueError) as exc:
            raise StorageError(f"failed to load generation {seq}: {exc}") from exc

    def _next_generation_seq(self) -> int:
        existing = self.list_generations()
        return (max(existing) + 1) if existing else 1

    def _prune_generations(self, current: int) -> None:
        keep = self.config.storage.keep_generations
        for seq in self.list_generations():
            if seq <= current - keep:
                shutil.rmtree(self.generations_dir / f"{seq:04d}", ignore_errors=True)

    def _discard_incomplete_generations(self) -> None:
        current = self.current_generation()
        for path in self.generations_dir.iterdir():
            if path.name.startswith(".staging-"):
                shutil.rmtree(path, ignore_errors=True)
            elif path.name.isdigit() and current is not None and int(path.name) > current:
                # renamed but the pointer swap never happened
                shutil.rmtree(path, ignore_errors=True)

    # ------------------------------------------------------------------
    @staticmethod
    def _require_project(state: _StoreState, project_id: str) -> Project:
        project = state.projects.get(project_id)
        if project is None or project.status != PROJECT_ACTIVE:
            raise NotFoundError("project", str(project_id))
        return project

    @staticmethod
    def _rebuild_cache(state: _StoreState, project_id: str) -> Dict[str, HeightSummary]:
        rebuilt = height_averages(
            tree for tree in state.sample_trees.values() if tree.project_id == project_id
        )
        if rebuilt:
            state.height_averages[project_id] = rebuilt
        else:
            state.height_averages.pop(project_id, None)
        return rebuilt


def _read_generation(source: Path) -> _StoreState:
    state = _StoreState()
    for record in json.loads((source / PROJECTS_FILE).read_text(encoding="utf-8")):
        project = _project_from_record(record)
        state.projects[project.id] = project
    for row in _read_rows(source / SAMPLE_TREES_FILE):
        tree = _sample_from_row(row)
        state.sample_trees[tree.id] = tree
    for row in _read_rows(source / INVENTORY_TREES_FILE):
        tree = _inventory_from_row(row)
        state.inventory_trees[tree.id] = tree
    for row in _read_rows(source / HEIGHT_AVERAGES_FILE):
        summary = HeightSummary(
            species=row["species"],
            average=float(row["average"]),
            count=int(row["count"]),
            min=float(row["min"]),
            max=float(row["max"]),
        )
        state.height_averages.setdefault(row["project_id"], {})[summary.species] = summary
    state.settings = json.loads((source / SETTINGS_FILE).read_text(encoding="utf-8"))
    return state


def _read_rows(path: Path) -> List[Dict[str, str]]:
    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    return df.to_dict(orient="records")


def _project_to_record(project: Project) -> dict:
    return {
        "id": project.id,
        "name": project.name,
        "operator": project.operator,
        "description": project.description,
        "location": project.location,
        "inventory_area_ha": project.inventory_area_ha,
        "created_at": project.created_at,
        "updated_at": project.updated_at,
        "status": project.status,
        "species_catalog": [
            {
                "id": species.id,
                "name": species.name,
                "icon": species.icon,
                "form_factor": species.form_factor,
                "default_height": species.default_height,
            }
            for species in project.species_catalog.values()
        ],
    }


def _project_from_record(record: dict) -> Project:
    return Project(
        id=record["id"],
        name=record["name"],
        operator=record.get("operator", ""),
        inventory_area_ha=float(record["inventory_area_ha"]),
        created_at=record["created_at"],
        updated_at=record["updated_at"],
        description=record.get("description", ""),
        location=record.get("location", ""),
        status=record.get("status", PROJECT_ACTIVE),
        species_catalog={
            entry["id"]: SpeciesDefinition(
                id=entry["id"],
                name=entry["name"],
                icon=entry.get("icon", ""),
                form_factor=float(entry["form_factor"]),
                default_height=entry.get("default_height"),
            )
            for entry in record.get("species_catalog", [])
        },
    )


def _sample_to_row(tree: SampleTree) -> dict:
    return {
        "id": tree.id,
        "project_id": tree.project_id,
        "area": tree.area,
        "species": tree.species,
        "diameter_class": str(tree.diameter_class),
        "height": _format_float(tree.height),
        "timestamp": tree.timestamp,
        "operator": tree.operator,
        **_gps_columns(tree.gps),
        "synced_at": tree.synced_at or "",
    }


def _sample_from_row(row: Dict[str, str]) -> SampleTree:
    return SampleTree(
        id=row["id"],
        project_id=row["project_id"],
        area=row["area"],
        species=row["species"],
        diameter_class=int(row["diameter_class"]),
        height=_maybe_float(row["height"]),
        timestamp=row["timestamp"] or None,
        operator=row["operator"],
        gps=_gps_from_row(row),
        synced_at=row.get("synced_at") or None,
    )


def _inventory_to_row(tree: InventoryTree) -> dict:
    return {
        "id": tree.id,
        "project_id": tree.project_id,
        "species": tree.species,
        "diameter_class": str(tree.diameter_class),
        "timestamp": tree.timestamp,
        "operator": tree.operator,
        **_gps_columns(tree.gps),
        "synced_at": tree.synced_at or "",
    }


def _inventory_from_row(row: Dict[str, str]) -> InventoryTree:
    return InventoryTree(
        id=row["id"],
        project_id=row["project_id"],
        species=row["species"],
        diameter_class=int(row["diameter_class"]),
        timestamp=row["timestamp"] or None,
        operator=row["operator"],
        gps=_gps_from_row(row),
        synced_at=row.get("synced_at") or None,
    )


def _summary_to_row(project_id: str, summary: HeightSummary) -> dict:
    return {
        "project_id": project_id,
        "species": summary.species,
        "average": _format_float(summary.average),
        "count": str(summary.count),
        "min": _format_float(summary.min),
        "max": _format_float(summary.max),
    }


def _gps_columns(gps: Optional[GpsFix]) -> dict:
    if gps is None:
        return {"gps_lat": "", "gps_lng": "", "gps_accuracy": ""}
    return {
        "gps_lat": _format_float(gps.lat),
        "gps_lng": _format_float(gps.lng),
        "gps_accuracy": _format_float(gps.accuracy),
    }


def _gps_from_row(row: Dict[str, str]) -> Optional[GpsFix]:
    lat = _maybe_float(row.get("gps_lat", ""))
    lng = _maybe_float(row.get("gps_lng", ""))
    if lat is None or lng is None:
        return None
    return GpsFix(lat=lat, lng=lng, accuracy=_maybe_float(row.get("gps_accuracy", "")))


def _format_float(value: Optional[float]) -> str:
    # repr keeps the shortest text that round-trips exactly
    return "" if value is None else repr(float(value))


def _maybe_float(value: str) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


def _species_from_preset(preset: SpeciesPreset, config: ConfigBundle) -> SpeciesDefinition:
    return SpeciesDefinition(
        id=slugify_species(preset.name),
        name=preset.name,
        icon=preset.icon,
        form_factor=normalize_form_factor(preset.form_factor),
        default_height=normalize_default_height(preset.default_height, config.inventory),
    )


def _catalog_from(species: Iterable[SpeciesDefinition]) -> Dict[str, SpeciesDefinition]:
    catalog: Dict[str, SpeciesDefinition] = {}
    for definition in species:
        if definition.id in catalog:
            raise ValidationError(f"duplicate species id {definition.id}")
        if not (0 < definition.form_factor <= 1):
            raise ValidationError(f"species {definition.id}: form factor must be within (0, 1]")
        catalog[definition.id] = copy.deepcopy(definition)
    return catalog


def _require_species(project: Project, species_id: str) -> SpeciesDefinition:
    species = project.species_catalog.get(species_id)
    if species is None:
        raise NotFoundError("species", f"{species_id} in project {project.name}")
    return species


def _check_diameter(value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"diameter class must be a positive integer, got {value!r}")


def _drop_where(records: Dict[str, Any], predicate) -> int:
    doomed = [key for key, record in records.items() if predicate(record)]
    for key in doomed:
        del records[key]
    return len(doomed)


def _touch(state: _StoreState, project_id: Optional[str]) -> None:
    project = state.projects.get(project_id) if project_id else None
    if project is not None:
        project.updated_at = _now()


def _sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(8192), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _new_id() -> str:
    return uuid.uuid4().hex


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
