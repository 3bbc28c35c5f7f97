# services/hierarchy_generation.py
"""
Local hierarchy generation: fills hierarchical_meter_readings from meter_readings.

  leaf meters   -> copied row per direct reading     (source='copied')
  parent meters -> sum over leaf descendants per ts  (source='hierarchical_aggregation')

Rows are upserted on (meter, reading_timestamp, source), so re-running a period
rewrites the same rows instead of adding new ones.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Sequence

from tortoise.transactions import in_transaction

from models import HierarchicalMeterReading, HierarchicalSource, Meter, MeterReading
from services.hierarchy import ConnectionsMap, leaf_descendants

logger = logging.getLogger("uvicorn")


def _number(v: Any) -> Optional[float]:
    if isinstance(v, bool):
        return None
    try:
        return float(v)
    except (TypeError, ValueError, OverflowError):
        return None


async def copy_leaf_meters(
    site_id: int,
    date_from: datetime,
    date_to: datetime,
    connections_map: ConnectionsMap,
) -> int:
    meter_ids = await Meter.filter(site_id=site_id).values_list("id", flat=True)
    leaves = [mid for mid in meter_ids if not connections_map.get(mid)]
    if not leaves:
        return 0

    rows = await MeterReading.filter(
        meter_id__in=leaves,
        reading_timestamp__gte=date_from,
        reading_timestamp__lte=date_to,
    ).order_by("meter_id", "reading_timestamp").values(
        "meter_id", "reading_timestamp", "kwh_value", "kva_value", "imported_fields"
    )

    written = 0
    async with in_transaction():
        for r in rows:
            await HierarchicalMeterReading.update_or_create(
                defaults=dict(
                    kwh_value=r["kwh_value"] or 0.0,
                    kva_value=r["kva_value"],
                    imported_fields=r["imported_fields"] or {},
                ),
                meter_id=r["meter_id"],
                reading_timestamp=r["reading_timestamp"],
                source=HierarchicalSource.COPIED,
            )
            written += 1

    logger.info(f"[hierarchy] copied {written} readings for {len(leaves)} leaf meters (site={site_id})")
    return written


async def generate_parent(
    parent_id: int,
    child_ids: Sequence[int],
    date_from: datetime,
    date_to: datetime,
    columns: Iterable[str] = (),
    connections_map: Optional[ConnectionsMap] = None,
) -> int:
    """Sum raw direct readings of every leaf under parent_id, per timestamp."""
    leaves = leaf_descendants(child_ids, connections_map or {})
    if not leaves:
        return 0

    rows = await MeterReading.filter(
        meter_id__in=leaves,
        reading_timestamp__gte=date_from,
        reading_timestamp__lte=date_to,
    ).order_by("reading_timestamp").values("reading_timestamp", "kwh_value", "kva_value", "imported_fields")

    requested = list(columns)
    buckets: Dict[datetime, Dict[str, Any]] = {}
    for r in rows:
        b = buckets.setdefault(
            r["reading_timestamp"],
            {"kwh": 0.0, "kva": None, "fields": {c: 0.0 for c in requested}},
        )
        b["kwh"] += r["kwh_value"] or 0.0
        if r["kva_value"] is not None:
            b["kva"] = (b["kva"] or 0.0) + r["kva_value"]
        fields_ = r["imported_fields"] if isinstance(r["imported_fields"], dict) else {}
        for key, raw in fields_.items():
            v = _number(raw)
            if v is not None:
                b["fields"][key] = b["fields"].get(key, 0.0) + v

    written = 0
    async with in_transaction():
        for ts, b in buckets.items():
            await HierarchicalMeterReading.update_or_create(
                defaults=dict(kwh_value=b["kwh"], kva_value=b["kva"], imported_fields=b["fields"]),
                meter_id=parent_id,
                reading_timestamp=ts,
                source=HierarchicalSource.HIERARCHICAL_AGGREGATION,
            )
            written += 1

    logger.info(f"[hierarchy] parent {parent_id}: {written} readings from {len(leaves)} leaf meters")
    return written


class LocalHierarchyGenerator:
    """Default generator used by the job orchestrator."""

    async def copy_leaf_meters(self, site_id, date_from, date_to, connections_map) -> int:
        return await copy_leaf_meters(site_id, date_from, date_to, connections_map)

    async def generate_parent(self, parent_id, child_ids, date_from, date_to, columns, connections_map) -> int:
        return await generate_parent(parent_id, child_ids, date_from, date_to, columns, connections_map)
