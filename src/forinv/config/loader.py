"""Functions for reading and validating configuration files."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional, Type

try:  # Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore

from pydantic import BaseModel, ValidationError

from ..exceptions import ConfigError
from .models import ConfigBundle, InventoryConfig, StorageConfig, SyncConfig


class ConfigFiles:
    """Canonical configuration filenames."""

    INVENTORY = "inventory.toml"
    STORAGE = "storage.toml"
    SYNC = "sync.toml"


def load_config_bundle(root: Optional[Path]) -> ConfigBundle:
    """Load configuration files from *root*; absent files fall back to defaults."""

    if root is None:
        return ConfigBundle()
    root = Path(root)
    if not root.is_dir():
        raise ConfigError(root, "configuration directory not found")
    inventory = _load_toml(root / ConfigFiles.INVENTORY, InventoryConfig)
    storage = _load_toml(root / ConfigFiles.STORAGE, StorageConfig)
    sync = _load_toml(root / ConfigFiles.SYNC, SyncConfig)
    return ConfigBundle(inventory=inventory, storage=storage, sync=sync)


def _load_toml(path: Path, model: Type[BaseModel]) -> Any:
    if not path.exists():
        return model()
    try:
        with path.open("rb") as fh:
            data = tomllib.load(fh)
    except (tomllib.TOMLDecodeError, OSError) as exc:
        raise ConfigError(path, f"failed to read TOML: {exc}") from exc

    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(path, format_validation_errors(exc)) from exc


def format_validation_errors(error: ValidationError) -> str:
    messages = []
    for err in error.errors(include_context=False):
        loc = _format_location(err.get("loc", ()))
        msg = err.get("msg", "invalid value")
        if loc:
            messages.append(f"{loc}: {msg}")
        else:
            messages.append(msg)
    return "; ".join(messages)


def _format_location(loc: tuple[Any, ...]) -> str:
    if not loc:
        return ""

    parts: list[str] = []
    for entry in loc:
        if isinstance(entry, int):
            if not parts:
                parts.append(f"[{entry}]")
            else:
                parts[-1] = parts[-1] + f"[{entry}]"
        else:
            parts.append(str(entry))
    return ".".join(parts)
