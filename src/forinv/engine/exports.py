"""Sectioned CSV rendering of a project snapshot."""

from __future__ import annotations

import io
from typing import Any, Dict, Mapping, Optional

import pandas as pd

from ..records.snapshot import parse_snapshot


PROJECT_SECTION = "INFORMAZIONI_PROGETTO"
SAMPLE_SECTION = "AREE_DI_SAGGIO"
INVENTORY_SECTION = "PIEDILISTA"

PROJECT_COLUMNS = ["Nome", "Descrizione", "Operatore", "Localita", "Area_ha", "Creato_il"]
SAMPLE_COLUMNS = [
    "Area",
    "Specie",
    "Classe_Diam",
    "Altezza_m",
    "GPS_Lat",
    "GPS_Lng",
    "Timestamp",
    "Operatore",
]
INVENTORY_COLUMNS = [
    "Specie",
    "Classe_Diam",
    "GPS_Lat",
    "GPS_Lng",
    "Timestamp",
    "Operatore",
]


def export_csv(snapshot: Mapping[str, Any]) -> str:
    """Render a snapshot as one CSV text with a titled block per section.

    Species are shown by display name. Empty tree sections are omitted.
    """

    document = parse_snapshot(snapshot)
    names = {
        species_id: entry.name
        for species_id, entry in document.project.species_catalog.items()
    }
    project = document.project

    buffer = io.StringIO()
    _write_section(
        buffer,
        PROJECT_SECTION,
        pd.DataFrame(
            [
                {
                    "Nome": project.name,
                    "Descrizione": project.description,
                    "Operatore": project.operator,
                    "Localita": project.location,
                    "Area_ha": project.inventory_area_ha,
                    "Creato_il": project.created_at or "",
                }
            ],
            columns=PROJECT_COLUMNS,
        ),
    )

    if document.sample_trees:
        rows = [
            {
                "Area": tree.area,
                "Specie": names.get(tree.species, tree.species),
                "Classe_Diam": tree.diameter_class,
                "Altezza_m": tree.height,
                "GPS_Lat": _coordinate(tree.gps.lat if tree.gps else None),
                "GPS_Lng": _coordinate(tree.gps.lng if tree.gps else None),
                "Timestamp": tree.timestamp or "",
                "Operatore": tree.operator,
            }
            for tree in document.sample_trees
        ]
        _write_section(buffer, SAMPLE_SECTION, pd.DataFrame(rows, columns=SAMPLE_COLUMNS))

    if document.inventory_trees:
        rows = [
            {
                "Specie": names.get(tree.species, tree.species),
                "Classe_Diam": tree.diameter_class,
                "GPS_Lat": _coordinate(tree.gps.lat if tree.gps else None),
                "GPS_Lng": _coordinate(tree.gps.lng if tree.gps else None),
                "Timestamp": tree.timestamp or "",
                "Operatore": tree.operator,
            }
            for tree in document.inventory_trees
        ]
        _write_section(
            buffer, INVENTORY_SECTION, pd.DataFrame(rows, columns=INVENTORY_COLUMNS)
        )

    return buffer.getvalue()


def export_csv_frames(snapshot: Mapping[str, Any]) -> Dict[str, pd.DataFrame]:
    """Split a rendered export back into one DataFrame per section."""

    sections: Dict[str, list] = {}
    current: Optional[str] = None
    for line in export_csv(snapshot).splitlines():
        if line in (PROJECT_SECTION, SAMPLE_SECTION, INVENTORY_SECTION):
            current = line
            sections[current] = []
        elif line and current is not None:
            sections[current].append(line)
    return {
        name: pd.read_csv(io.StringIO("\n".join(lines)), dtype=str, keep_default_na=False)
        for name, lines in sections.items()
    }


def _write_section(buffer: io.StringIO, title: str, frame: pd.DataFrame) -> None:
    buffer.write(f"{title}\n")
    frame.to_csv(buffer, index=False, lineterminator="\n")
    buffer.write("\n")


def _coordinate(value: Optional[float]) -> str:
    return "" if value is None else f"{value:.6f}"
