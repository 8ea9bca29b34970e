"""Inventory calculations, exports and outbound sync.

The session-level components live in :mod:`forinv.engine.registry` and
:mod:`forinv.engine.sampling`; they depend on the record store and are not
re-exported here.
"""

from .exports import export_csv, export_csv_frames
from .statistics import (
    InventorySummary,
    SpeciesBreakdown,
    basal_area,
    height_averages,
    inventory_tree_volume,
    per_hectare,
    sample_tree_volume,
    species_breakdown,
    stems_per_hectare,
    summarize_inventory,
    total_basal_area,
    total_volume,
)
from .sync import SheetsSync, build_sync_payload

__all__ = [
    "InventorySummary",
    "SheetsSync",
    "SpeciesBreakdown",
    "basal_area",
    "build_sync_payload",
    "export_csv",
    "export_csv_frames",
    "height_averages",
    "inventory_tree_volume",
    "per_hectare",
    "sample_tree_volume",
    "species_breakdown",
    "stems_per_hectare",
    "summarize_inventory",
    "total_basal_area",
    "total_volume",
]
