"""Self-contained per-project snapshot document used for export and import."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from ..config import format_validation_errors
from ..exceptions import ValidationError
from .models import (
    GpsFix,
    HeightSummary,
    InventoryTree,
    Project,
    SampleTree,
    SpeciesDefinition,
)


FORMAT_VERSION = "2.0.0"
SUPPORTED_MAJOR = "2"


class _DocumentModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GpsEntry(_DocumentModel):
    lat: float
    lng: float
    accuracy: Optional[float] = None


class SpeciesEntry(_DocumentModel):
    name: str
    icon: str = ""
    form_factor: float = Field(gt=0, le=1)
    default_height: Optional[float] = Field(default=None, gt=0)


class ProjectEntry(_DocumentModel):
    name: str = Field(min_length=1)
    description: str = ""
    operator: str = ""
    location: str = ""
    inventory_area_ha: float = Field(gt=0)
    species_catalog: Dict[str, SpeciesEntry] = Field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class SampleTreeEntry(_DocumentModel):
    area: str
    species: str
    diameter_class: int = Field(gt=0)
    height: float = Field(gt=0)
    timestamp: Optional[str] = None
    operator: str = ""
    gps: Optional[GpsEntry] = None


class InventoryTreeEntry(_DocumentModel):
    species: str
    diameter_class: int = Field(gt=0)
    timestamp: Optional[str] = None
    operator: str = ""
    gps: Optional[GpsEntry] = None


class HeightAverageEntry(_DocumentModel):
    average: float
    count: int = Field(ge=1)
    min: float
    max: float


class SnapshotDocument(_DocumentModel):
    format_version: str
    exported_at: Optional[str] = None
    project: ProjectEntry
    sample_trees: List[SampleTreeEntry]
    inventory_trees: List[InventoryTreeEntry]
    height_averages: Dict[str, HeightAverageEntry] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def accept_legacy_version_key(cls, data: Any) -> Any:
        if isinstance(data, dict) and "formatVersion" not in data and "version" in data:
            data = dict(data)
            data["formatVersion"] = data.pop("version")
        return data

    @model_validator(mode="after")
    def check_references(self) -> "SnapshotDocument":
        if self.format_version.split(".")[0] != SUPPORTED_MAJOR:
            raise ValueError(f"unsupported format version {self.format_version}")
        catalog = self.project.species_catalog
        for kind, trees in (
            ("sampleTrees", self.sample_trees),
            ("inventoryTrees", self.inventory_trees),
        ):
            for idx, tree in enumerate(trees):
                if tree.species not in catalog:
                    raise ValueError(
                        f"{kind}[{idx}].species {tree.species} not in speciesCatalog"
                    )
        return self


def parse_snapshot(data: Mapping[str, Any]) -> SnapshotDocument:
    """Validate a decoded snapshot, raising ValidationError on a bad document."""

    if not isinstance(data, Mapping):
        raise ValidationError("snapshot must be a JSON object")
    try:
        return SnapshotDocument.model_validate(dict(data))
    except PydanticValidationError as exc:
        raise ValidationError(
            f"invalid snapshot: {format_validation_errors(exc)}"
        ) from exc


def build_snapshot(
    project: Project,
    sample_trees: List[SampleTree],
    inventory_trees: List[InventoryTree],
    height_averages: Mapping[str, HeightSummary],
    exported_at: str,
) -> Dict[str, Any]:
    document = SnapshotDocument(
        format_version=FORMAT_VERSION,
        exported_at=exported_at,
        project=ProjectEntry(
            name=project.name,
            description=project.description,
            operator=project.operator,
            location=project.location,
            inventory_area_ha=project.inventory_area_ha,
            species_catalog={
                species.id: SpeciesEntry(
                    name=species.name,
                    icon=species.icon,
                    form_factor=species.form_factor,
                    default_height=species.default_height,
                )
                for species in project.species_catalog.values()
            },
            created_at=project.created_at,
            updated_at=project.updated_at,
        ),
        sample_trees=[
            SampleTreeEntry(
                area=tree.area,
                species=tree.species,
                diameter_class=tree.diameter_class,
                height=tree.height,
                timestamp=tree.timestamp,
                operator=tree.operator,
                gps=_gps_entry(tree.gps),
            )
            for tree in sample_trees
        ],
        inventory_trees=[
            InventoryTreeEntry(
                species=tree.species,
                diameter_class=tree.diameter_class,
                timestamp=tree.timestamp,
                operator=tree.operator,
                gps=_gps_entry(tree.gps),
            )
            for tree in inventory_trees
        ],
        height_averages={
            species: HeightAverageEntry(
                average=summary.average,
                count=summary.count,
                min=summary.min,
                max=summary.max,
            )
            for species, summary in height_averages.items()
        },
    )
    return document.model_dump(by_alias=True, exclude_none=True)


def document_species(document: SnapshotDocument) -> Dict[str, SpeciesDefinition]:
    return {
        species_id: SpeciesDefinition(
            id=species_id,
            name=entry.name,
            icon=entry.icon,
            form_factor=entry.form_factor,
            default_height=entry.default_height,
        )
        for species_id, entry in document.project.species_catalog.items()
    }


def document_sample_trees(document: SnapshotDocument) -> List[SampleTree]:
    return [
        SampleTree(
            area=entry.area,
            species=entry.species,
            diameter_class=entry.diameter_class,
            height=entry.height,
            operator=entry.operator,
            timestamp=entry.timestamp,
            gps=_gps_fix(entry.gps),
        )
        for entry in document.sample_trees
    ]


def document_inventory_trees(document: SnapshotDocument) -> List[InventoryTree]:
    return [
        InventoryTree(
            species=entry.species,
            diameter_class=entry.diameter_class,
            operator=entry.operator,
            timestamp=entry.timestamp,
            gps=_gps_fix(entry.gps),
        )
        for entry in document.inventory_trees
    ]


def document_height_averages(document: SnapshotDocument) -> Dict[str, HeightSummary]:
    return {
        species: HeightSummary(
            species=species,
            average=entry.average,
            count=entry.count,
            min=entry.min,
            max=entry.max,
        )
        for species, entry in document.height_averages.items()
    }


def _gps_entry(gps: Optional[GpsFix]) -> Optional[GpsEntry]:
    if gps is None:
        return None
    return GpsEntry(lat=gps.lat, lng=gps.lng, accuracy=gps.accuracy)


def _gps_fix(entry: Optional[GpsEntry]) -> Optional[GpsFix]:
    if entry is None:
        return None
    return GpsFix(lat=entry.lat, lng=entry.lng, accuracy=entry.accuracy)
