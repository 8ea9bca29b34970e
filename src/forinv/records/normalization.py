"""Input-boundary normalization for operator-entered values."""

from __future__ import annotations

import math
import re
import unicodedata
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional, Union

from ..config import InventoryConfig
from ..exceptions import ValidationError


Number = Union[int, float, str, Decimal]

_SLUG_SEPARATORS = re.compile(r"[^a-z0-9]+")


def slugify_species(name: str) -> str:
    """Derive the catalog id for a species display name.

    ``"Pino d'Aleppo"`` becomes ``"pino-d-aleppo"``; accents are folded so
    ``"Faggio Élite"`` and ``"Faggio Elite"`` share an id.
    """

    folded = unicodedata.normalize("NFKD", name or "")
    ascii_only = folded.encode("ascii", "ignore").decode("ascii").lower()
    slug = _SLUG_SEPARATORS.sub("-", ascii_only).strip("-")
    if not slug:
        raise ValidationError(f"species name '{name}' does not yield a usable id")
    return slug


def normalize_diameter(
    value: Number, config: InventoryConfig, *, custom: bool = False
) -> int:
    """Return the diameter class in cm for a measured or chosen diameter.

    Standard values are snapped to the configured class width: with width 5,
    D in (7.5, 12.5] maps to 10. Custom values bypass the class list but must
    fall within the configured custom bounds.
    """

    number = _parse_number("diameter", value)
    if number <= 0:
        raise ValidationError("diameter must be positive")

    if custom:
        diameter = int(number.to_integral_value(rounding=ROUND_HALF_UP))
        low = config.custom_diameter_min_exclusive
        high = config.custom_diameter_max
        if not (low < diameter <= high):
            raise ValidationError(
                f"custom diameter must be greater than {low} and at most {high} cm"
            )
        return diameter

    width = Decimal(config.diameter_class_width)
    steps = ((number - width / 2) / width).to_integral_value(rounding=ROUND_CEILING)
    diameter_class = int(steps * width)
    if diameter_class not in config.diameter_classes:
        raise ValidationError(
            f"diameter {number} cm is outside the standard classes "
            f"{config.diameter_classes[0]}-{config.diameter_classes[-1]}; "
            "record it as a custom diameter"
        )
    return diameter_class


def normalize_height(value: Number, config: InventoryConfig) -> float:
    number = _parse_number("height", value)
    height = float(number)
    if not (0 < height <= config.max_height_m):
        raise ValidationError(
            f"height must be within (0, {config.max_height_m:g}] m"
        )
    return height


def normalize_default_height(
    value: Optional[Number], config: InventoryConfig
) -> Optional[float]:
    if value is None or value == "":
        return None
    return normalize_height(value, config)


def normalize_form_factor(value: Number) -> float:
    number = float(_parse_number("form factor", value))
    if not (0 < number <= 1):
        raise ValidationError("form factor must be within (0, 1]")
    return number


def normalize_area_ha(value: Number) -> float:
    number = float(_parse_number("inventory area", value))
    if number <= 0:
        raise ValidationError("inventory area must be positive hectares")
    return number


def _parse_number(label: str, value: Number) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"invalid {label} '{value}'")
    if isinstance(value, float) and not math.isfinite(value):
        raise ValidationError(f"invalid {label} '{value}'")
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValidationError(f"invalid {label} '{value}'") from exc
    if not number.is_finite():
        raise ValidationError(f"invalid {label} '{value}'")
    return number
