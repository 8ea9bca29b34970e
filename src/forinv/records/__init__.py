"""Inventory record types, input normalization and snapshot documents."""

from .models import (
    PROJECT_ACTIVE,
    PROJECT_DELETED,
    GpsFix,
    HeightSummary,
    InventoryTree,
    Project,
    SampleTree,
    SpeciesDefinition,
)
from .normalization import (
    normalize_area_ha,
    normalize_default_height,
    normalize_diameter,
    normalize_form_factor,
    normalize_height,
    slugify_species,
)
from .snapshot import FORMAT_VERSION, SnapshotDocument, build_snapshot, parse_snapshot

__all__ = [
    "PROJECT_ACTIVE",
    "PROJECT_DELETED",
    "FORMAT_VERSION",
    "GpsFix",
    "HeightSummary",
    "InventoryTree",
    "Project",
    "SampleTree",
    "SnapshotDocument",
    "SpeciesDefinition",
    "build_snapshot",
    "normalize_area_ha",
    "normalize_default_height",
    "normalize_diameter",
    "normalize_form_factor",
    "normalize_height",
    "parse_snapshot",
    "slugify_species",
]
