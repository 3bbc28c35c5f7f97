# services/aggregation.py
"""
Per-meter reading aggregation over the two reading sources.

  direct        -> meter_readings (uploaded)
  hierarchical  -> hierarchical_meter_readings, filtered by source tag:
                   parents read 'hierarchical_aggregation' rows, leaves read 'copied' rows

Every row goes through the sanitizer before it is folded into the running sums.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence

from models import HierarchicalSource
from schemas import ColumnOperation, CorrectionRecord, MeterConfig, MeterInfo, MeterResult, SourceTotals
from services import config
from services.sanitizer import is_apparent_power_field, sanitize_reading_fields

logger = logging.getLogger("uvicorn")


class ReadingSource(str, Enum):
    DIRECT = "direct"
    HIERARCHICAL = "hierarchical"


class ReadingPageFetcher(Protocol):
    async def fetch_readings_page(
        self,
        meter_id: int,
        source: ReadingSource,
        tag: Optional[HierarchicalSource],
        date_from: datetime,
        date_to: datetime,
        offset: int,
        limit: int,
    ) -> List[Dict[str, Any]]: ...


async def fetch_readings(
    store: ReadingPageFetcher,
    meter_id: int,
    source: ReadingSource,
    date_from: datetime,
    date_to: datetime,
    *,
    tag: Optional[HierarchicalSource] = None,
    page_size: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """
    Ordered, exhaustive scan: ascending timestamp, fixed page size, stop on a short page.
    A failing page ends the scan and whatever was read so far is returned.
    """
    size = page_size or config.READING_PAGE_SIZE
    rows: List[Dict[str, Any]] = []
    offset = 0
    while True:
        try:
            page = await store.fetch_readings_page(meter_id, source, tag, date_from, date_to, offset, size)
        except Exception as e:
            logger.warning(f"[recon] reading page failed meter={meter_id} source={source.value} offset={offset}: {e}")
            break
        if not page:
            break
        rows.extend(page)
        if len(page) < size:
            break
        offset += size
    return rows


def column_mode(column: str, meter_config: MeterConfig) -> ColumnOperation:
    op = meter_config.column_operations.get(column)
    if op is not None:
        return op
    return ColumnOperation.MAX if is_apparent_power_field(column) else ColumnOperation.SUM


def process_readings(
    readings: Sequence[Dict[str, Any]],
    meter: MeterInfo,
    meter_config: MeterConfig,
    corrections: List[CorrectionRecord],
    source: ReadingSource = ReadingSource.DIRECT,
) -> SourceTotals:
    raw_total = 0.0
    column_totals: Dict[str, float] = {}
    column_max_values: Dict[str, float] = {}

    first_new = len(corrections)
    cleaned = sanitize_reading_fields(
        readings, corrections, meter_id=meter.id, meter_number=meter.meter_number
    )
    for corr in corrections[first_new:]:
        corr.source = source.value
    for kwh, fields_ in cleaned:
        raw_total += kwh
        for key, value in fields_.items():
            adjusted = value * meter_config.factor_for(key)
            if column_mode(key, meter_config) is ColumnOperation.MAX:
                column_max_values[key] = max(column_max_values.get(key, 0.0), adjusted)
            else:
                column_totals[key] = column_totals.get(key, 0.0) + adjusted

    # operator-defined total: selected energy columns only
    selected_total = sum(
        column_totals.get(col, 0.0)
        for col in meter_config.selected_columns
        if not is_apparent_power_field(col)
    )

    return SourceTotals(
        total_kwh=selected_total or raw_total,
        column_totals=column_totals,
        column_max_values=column_max_values,
        readings_count=len(readings),
    )


async def aggregate_meter(
    store: ReadingPageFetcher,
    meter: MeterInfo,
    is_parent: bool,
    date_from: datetime,
    date_to: datetime,
    meter_config: MeterConfig,
    corrections: List[CorrectionRecord],
) -> MeterResult:
    """Both views for one meter; the legacy view is derived on MeterResult."""
    tag = HierarchicalSource.HIERARCHICAL_AGGREGATION if is_parent else HierarchicalSource.COPIED

    direct_rows, hier_rows = await asyncio.gather(
        fetch_readings(store, meter.id, ReadingSource.DIRECT, date_from, date_to),
        fetch_readings(store, meter.id, ReadingSource.HIERARCHICAL, date_from, date_to, tag=tag),
    )

    direct = process_readings(direct_rows, meter, meter_config, corrections)
    hierarchical = process_readings(hier_rows, meter, meter_config, corrections, ReadingSource.HIERARCHICAL)

    return MeterResult(
        id=meter.id,
        meter_number=meter.meter_number,
        meter_type=meter.meter_type,
        name=meter.name,
        location=meter.location,
        assignment=meter_config.assignment_for(meter.id),
        is_parent=is_parent,
        direct=direct,
        hierarchical=hierarchical,
        tariff_structure_id=meter.tariff_structure_id,
        assigned_tariff_name=meter.assigned_tariff_name,
    )
