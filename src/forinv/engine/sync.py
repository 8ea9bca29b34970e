"""Outbound sync: payload assembly and the spreadsheet form transport."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

import httpx

from ..config import SyncConfig
from ..exceptions import SyncError, TransportTimeout
from ..records.snapshot import (
    document_inventory_trees,
    document_sample_trees,
    document_species,
    parse_snapshot,
)
from . import statistics


logger = logging.getLogger(__name__)


def build_sync_payload(
    snapshot: Mapping[str, Any], *, timestamp: Optional[str] = None
) -> Dict[str, Any]:
    """Assemble the document sent to the spreadsheet endpoint.

    Pure apart from the default *timestamp*; every figure derives from the
    snapshot's trees. The snapshot's ``heightAverages`` section is a cache and
    is recomputed from its sample trees.
    """

    document = parse_snapshot(snapshot)
    catalog = document_species(document)
    averages = statistics.height_averages(document_sample_trees(document))
    inventory = document_inventory_trees(document)
    area = document.project.inventory_area_ha

    basal_total = statistics.total_basal_area(inventory)
    volume_total = statistics.total_volume(inventory, catalog, averages)
    sample_trees = list(snapshot.get("sampleTrees", []))

    return {
        "timestamp": timestamp or datetime.now(timezone.utc).isoformat(),
        "operator": document.project.operator,
        "inventoryAreaHa": area,
        "totalSampleTrees": len(document.sample_trees),
        "totalInventoryTrees": len(inventory),
        "totalBasalArea": basal_total,
        "totalVolume": volume_total,
        "basalAreaPerHa": statistics.per_hectare(basal_total, area),
        "volumePerHa": statistics.per_hectare(volume_total, area),
        "treesPerHa": statistics.stems_per_hectare(len(inventory), area),
        "speciesHeightAverages": {
            species: {
                "average": summary.average,
                "count": summary.count,
                "min": summary.min,
                "max": summary.max,
            }
            for species, summary in averages.items()
        },
        "sampleTrees": sample_trees,
        "heightMeasurements": [
            {
                "area": tree.get("area"),
                "species": tree.get("species"),
                "height": tree.get("height"),
                "timestamp": tree.get("timestamp"),
                "operator": tree.get("operator", ""),
                "gps": tree.get("gps"),
            }
            for tree in sample_trees
        ],
        "inventoryTrees": list(snapshot.get("inventoryTrees", [])),
        "projectInfo": {
            "name": document.project.name,
            "description": document.project.description,
            "location": document.project.location,
        },
    }


class SheetsSync:
    """Post a sync payload as the ``data`` form field of the configured endpoint.

    The wait is bounded: after ``timeout_s`` a warning is logged and the wait
    is extended once by ``extension_s``; if the request is still running it is
    cancelled and :class:`TransportTimeout` reports an ambiguous outcome.
    """

    def __init__(
        self, config: SyncConfig, client: Optional[httpx.AsyncClient] = None
    ) -> None:
        self.config = config
        self._client = client

    async def push(self, payload: Mapping[str, Any]) -> int:
        if not self.config.endpoint:
            raise SyncError("no sync endpoint configured")

        client = self._client or httpx.AsyncClient(timeout=None)
        try:
            task = asyncio.ensure_future(self._post(client, payload))
            try:
                return await asyncio.wait_for(
                    asyncio.shield(task), timeout=self.config.timeout_s
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "no response after %.0fs; waiting %.0fs more",
                    self.config.timeout_s,
                    self.config.extension_s,
                )
            try:
                return await asyncio.wait_for(task, timeout=self.config.extension_s)
            except asyncio.TimeoutError as exc:
                raise TransportTimeout(
                    self.config.timeout_s + self.config.extension_s
                ) from exc
        finally:
            if self._client is None:
                await client.aclose()

    async def _post(self, client: httpx.AsyncClient, payload: Mapping[str, Any]) -> int:
        try:
            response = await client.post(
                self.config.endpoint, data={"data": json.dumps(payload)}
            )
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise TransportTimeout(self.config.timeout_s) from exc
        except httpx.HTTPError as exc:
            raise SyncError(f"sync request failed: {exc}") from exc
        logger.info("sync accepted by %s (%d)", self.config.endpoint, response.status_code)
        return response.status_code
