"""Pure inventory calculations.

Every function here is side-effect free and deterministic: recomputing from
the same records always yields the same figures, so any persisted height
summary is only a cache of :func:`height_averages`.

Units: diameters in centimetres, heights in metres, basal area in m², volume
in m³, areas in hectares.
"""

from __future__ import annotations

import math
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Mapping, Optional

from ..records.models import (
    HeightSummary,
    InventoryTree,
    Project,
    SampleTree,
    SpeciesDefinition,
)


def basal_area(diameter_cm: float) -> float:
    """Cross-sectional area at breast height: π × (d / 200)²."""

    return math.pi * (diameter_cm / 200) ** 2


def sample_tree_volume(
    species: SpeciesDefinition, diameter_cm: float, height_m: float
) -> float:
    return basal_area(diameter_cm) * height_m * species.form_factor


def height_averages(sample_trees: Iterable[SampleTree]) -> Dict[str, HeightSummary]:
    """Group complete sample trees by species into count/average/min/max.

    Species without a single complete sample are absent from the result.
    """

    heights: Dict[str, List[float]] = defaultdict(list)
    for tree in sample_trees:
        if tree.species and tree.is_complete:
            heights[tree.species].append(float(tree.height))

    summaries: Dict[str, HeightSummary] = {}
    for species in sorted(heights):
        values = heights[species]
        summaries[species] = HeightSummary(
            species=species,
            average=math.fsum(values) / len(values),
            count=len(values),
            min=min(values),
            max=max(values),
        )
    return summaries


def resolve_height(
    species: SpeciesDefinition, averages: Mapping[str, HeightSummary]
) -> Optional[float]:
    summary = averages.get(species.id)
    if summary is not None:
        return summary.average
    return species.default_height


def inventory_tree_volume(
    species: SpeciesDefinition,
    diameter_cm: float,
    averages: Mapping[str, HeightSummary],
) -> float:
    """Volume from the sampled average height, else the species default.

    A species with neither contributes zero volume.
    """

    height = resolve_height(species, averages)
    if height is None:
        return 0.0
    return basal_area(diameter_cm) * height * species.form_factor


def total_basal_area(inventory_trees: Iterable[InventoryTree]) -> float:
    return math.fsum(basal_area(tree.diameter_class) for tree in inventory_trees)


def total_volume(
    inventory_trees: Iterable[InventoryTree],
    catalog: Mapping[str, SpeciesDefinition],
    averages: Mapping[str, HeightSummary],
) -> float:
    return math.fsum(
        _tree_volume(tree, catalog, averages) for tree in inventory_trees
    )


def per_hectare(total: float, area_ha: Optional[float]) -> float:
    if not area_ha or area_ha <= 0:
        return 0.0
    return total / area_ha


def stems_per_hectare(count: int, area_ha: Optional[float]) -> int:
    """Stem density rounded half up to a whole number of stems."""

    if not area_ha or area_ha <= 0:
        return 0
    density = Decimal(count) / Decimal(str(area_ha))
    return int(density.to_integral_value(rounding=ROUND_HALF_UP))


@dataclass
class SpeciesBreakdown:
    species: str
    count: int = 0
    percentage: float = 0.0
    basal_area: float = 0.0
    volume: float = 0.0
    diameter_classes: Counter = field(default_factory=Counter)

    def as_dict(self) -> dict:
        return {
            "species": self.species,
            "count": self.count,
            "percentage": self.percentage,
            "basal_area": self.basal_area,
            "volume": self.volume,
            "diameter_classes": {
                str(diameter): self.diameter_classes[diameter]
                for diameter in sorted(self.diameter_classes)
            },
        }


def species_breakdown(
    inventory_trees: Iterable[InventoryTree],
    catalog: Mapping[str, SpeciesDefinition],
    averages: Mapping[str, HeightSummary],
) -> Dict[str, SpeciesBreakdown]:
    trees = list(inventory_trees)
    grouped: Dict[str, SpeciesBreakdown] = {}
    basal: Dict[str, List[float]] = defaultdict(list)
    volumes: Dict[str, List[float]] = defaultdict(list)
    for tree in trees:
        entry = grouped.setdefault(tree.species, SpeciesBreakdown(species=tree.species))
        entry.count += 1
        entry.diameter_classes[tree.diameter_class] += 1
        basal[tree.species].append(basal_area(tree.diameter_class))
        volumes[tree.species].append(_tree_volume(tree, catalog, averages))

    total = len(trees)
    for species, entry in grouped.items():
        entry.percentage = entry.count / total * 100 if total else 0.0
        entry.basal_area = math.fsum(basal[species])
        entry.volume = math.fsum(volumes[species])
    return dict(sorted(grouped.items(), key=lambda item: (-item[1].count, item[0])))


@dataclass
class InventorySummary:
    project_id: str
    sample_trees: int
    inventory_trees: int
    species_with_heights: int
    inventory_area_ha: float
    total_basal_area: float
    total_volume: float
    basal_area_per_ha: float
    volume_per_ha: float
    trees_per_ha: int
    species_without_height: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "sample_trees": self.sample_trees,
            "inventory_trees": self.inventory_trees,
            "species_with_heights": self.species_with_heights,
            "inventory_area_ha": self.inventory_area_ha,
            "total_basal_area": self.total_basal_area,
            "total_volume": self.total_volume,
            "basal_area_per_ha": self.basal_area_per_ha,
            "volume_per_ha": self.volume_per_ha,
            "trees_per_ha": self.trees_per_ha,
            "species_without_height": list(self.species_without_height),
        }


def summarize_inventory(
    project: Project,
    sample_trees: Iterable[SampleTree],
    inventory_trees: Iterable[InventoryTree],
    averages: Mapping[str, HeightSummary],
    *,
    area_ha: Optional[float] = None,
) -> InventorySummary:
    """Stand-level totals and per-hectare figures for one project.

    *area_ha* overrides the project's stored area, for session edits that
    have not been saved yet.
    """

    samples = list(sample_trees)
    trees = list(inventory_trees)
    area = project.inventory_area_ha if area_ha is None else area_ha
    catalog = project.species_catalog
    basal_total = total_basal_area(trees)
    volume_total = total_volume(trees, catalog, averages)

    missing = sorted(
        {
            tree.species
            for tree in trees
            if tree.species not in catalog
            or resolve_height(catalog[tree.species], averages) is None
        }
    )

    return InventorySummary(
        project_id=project.id,
        sample_trees=sum(1 for tree in samples if tree.is_complete),
        inventory_trees=len(trees),
        species_with_heights=len(averages),
        inventory_area_ha=area,
        total_basal_area=basal_total,
        total_volume=volume_total,
        basal_area_per_ha=per_hectare(basal_total, area),
        volume_per_ha=per_hectare(volume_total, area),
        trees_per_ha=stems_per_hectare(len(trees), area),
        species_without_height=missing,
    )


def _tree_volume(
    tree: InventoryTree,
    catalog: Mapping[str, SpeciesDefinition],
    averages: Mapping[str, HeightSummary],
) -> float:
    species = catalog.get(tree.species)
    if species is None:
        return 0.0
    return inventory_tree_volume(species, tree.diameter_class, averages)
