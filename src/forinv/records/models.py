"""Data models for persisted inventory records."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional


PROJECT_ACTIVE = "active"
PROJECT_DELETED = "deleted"


@dataclass(frozen=True)
class GpsFix:
    lat: float
    lng: float
    accuracy: Optional[float] = None


@dataclass
class SpeciesDefinition:
    id: str
    name: str
    icon: str
    form_factor: float
    default_height: Optional[float] = None


@dataclass
class Project:
    id: str
    name: str
    operator: str
    inventory_area_ha: float
    created_at: str
    updated_at: str
    description: str = ""
    location: str = ""
    species_catalog: Dict[str, SpeciesDefinition] = field(default_factory=dict)
    status: str = PROJECT_ACTIVE

    def species(self, species_id: str) -> Optional[SpeciesDefinition]:
        return self.species_catalog.get(species_id)


@dataclass
class SampleTree:
    area: str
    species: str
    diameter_class: int
    height: Optional[float]
    operator: str = ""
    timestamp: Optional[str] = None
    gps: Optional[GpsFix] = None
    id: Optional[str] = None
    project_id: Optional[str] = None
    synced_at: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return self.height is not None and self.height > 0


@dataclass
class InventoryTree:
    species: str
    diameter_class: int
    operator: str = ""
    timestamp: Optional[str] = None
    gps: Optional[GpsFix] = None
    id: Optional[str] = None
    project_id: Optional[str] = None
    synced_at: Optional[str] = None


@dataclass(frozen=True)
class HeightSummary:
    species: str
    average: float
    count: int
    min: float
    max: float
