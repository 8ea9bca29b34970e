"""Public configuration API."""

from .loader import ConfigFiles, format_validation_errors, load_config_bundle
from .models import (
    ConfigBundle,
    InventoryConfig,
    SpeciesPreset,
    StorageConfig,
    SyncConfig,
)

__all__ = [
    "ConfigFiles",
    "ConfigBundle",
    "InventoryConfig",
    "SpeciesPreset",
    "StorageConfig",
    "SyncConfig",
    "format_validation_errors",
    "load_config_bundle",
]
