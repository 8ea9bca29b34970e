"""Pydantic models describing configuration files."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class SpeciesPreset(BaseModel):
    name: str
    icon: str = "🌲"
    form_factor: float = 0.45
    default_height: Optional[float] = None

    @model_validator(mode="after")
    def check_ranges(self) -> "SpeciesPreset":
        if not self.name.strip():
            raise ValueError("name must not be empty")
        if not (0 < self.form_factor <= 1):
            raise ValueError("form_factor must be within (0, 1]")
        if self.default_height is not None and self.default_height <= 0:
            raise ValueError("default_height must be positive")
        return self


def _default_species() -> List[SpeciesPreset]:
    return [
        SpeciesPreset(name="Pino Domestico", icon="🌲", form_factor=0.45),
        SpeciesPreset(name="Pino Marittimo", icon="🌲", form_factor=0.42),
        SpeciesPreset(name="Pino d'Aleppo", icon="🌲", form_factor=0.40),
        SpeciesPreset(name="Cipresso Comune", icon="🌳", form_factor=0.48),
        SpeciesPreset(name="Altro", icon="🌳", form_factor=0.45),
    ]


class InventoryConfig(BaseModel):
    sampling_areas: List[str] = Field(
        default_factory=lambda: [f"area{idx}" for idx in range(1, 6)]
    )
    diameter_class_width: int = 5
    diameter_classes: List[int] = Field(
        default_factory=lambda: list(range(10, 65, 5))
    )
    custom_diameter_min_exclusive: int = 60
    custom_diameter_max: int = 200
    max_height_m: float = 50.0
    default_area_ha: float = 30.0
    default_operator: str = "Operatore"
    default_project_name: str = "Progetto di Default"
    default_species: List[SpeciesPreset] = Field(default_factory=_default_species)

    @model_validator(mode="after")
    def check_values(self) -> "InventoryConfig":
        if not self.sampling_areas:
            raise ValueError("sampling_areas must not be empty")
        if len(set(self.sampling_areas)) != len(self.sampling_areas):
            raise ValueError("sampling_areas must be unique")
        if self.diameter_class_width <= 0:
            raise ValueError("diameter_class_width must be positive")
        if not self.diameter_classes:
            raise ValueError("diameter_classes must not be empty")
        if any(value <= 0 for value in self.diameter_classes):
            raise ValueError("diameter_classes must be positive")
        if sorted(set(self.diameter_classes)) != self.diameter_classes:
            raise ValueError("diameter_classes must be strictly increasing")
        if self.custom_diameter_min_exclusive < 0:
            raise ValueError("custom_diameter_min_exclusive must be >= 0")
        if self.custom_diameter_max <= self.custom_diameter_min_exclusive:
            raise ValueError(
                "custom_diameter_max must exceed custom_diameter_min_exclusive"
            )
        if self.max_height_m <= 0:
            raise ValueError("max_height_m must be positive")
        if self.default_area_ha <= 0:
            raise ValueError("default_area_ha must be positive")
        return self


class StorageConfig(BaseModel):
    keep_generations: int = 3

    @model_validator(mode="after")
    def check_keep(self) -> "StorageConfig":
        if self.keep_generations < 1:
            raise ValueError("keep_generations must be >= 1")
        return self


class SyncConfig(BaseModel):
    endpoint: Optional[str] = None
    timeout_s: float = 30.0
    extension_s: float = 20.0

    @model_validator(mode="after")
    def check_timeouts(self) -> "SyncConfig":
        if self.timeout_s <= 0:
            raise ValueError("timeout_s must be positive")
        if self.extension_s < 0:
            raise ValueError("extension_s must be >= 0")
        return self


class ConfigBundle(BaseModel):
    inventory: InventoryConfig = Field(default_factory=InventoryConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
