# services/reconciliation.py
from __future__ import annotations

import logging
import math
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from schemas import MeterResult, ReconciliationSummary
from services import config

logger = logging.getLogger("uvicorn")


class MeterCategory(str, Enum):
    GRID_SUPPLY = "grid_supply"
    BULK = "bulk"
    SOLAR = "solar"
    CHECK = "check"
    TENANT = "tenant"
    DISTRIBUTION = "distribution"
    OTHER = "other"
    UNASSIGNED = "unassigned"


_BY_ASSIGNMENT: Dict[str, MeterCategory] = {
    "grid_supply": MeterCategory.GRID_SUPPLY,
    "bulk": MeterCategory.BULK,
    "solar_energy": MeterCategory.SOLAR,
    "check": MeterCategory.CHECK,
    "tenant": MeterCategory.TENANT,
    "distribution": MeterCategory.DISTRIBUTION,
}

_BY_METER_TYPE: Dict[str, MeterCategory] = {
    "council": MeterCategory.GRID_SUPPLY,
    "council_meter": MeterCategory.GRID_SUPPLY,
    "bulk": MeterCategory.BULK,
    "bulk_meter": MeterCategory.BULK,
    "solar": MeterCategory.SOLAR,
    "solar_meter": MeterCategory.SOLAR,
    "check": MeterCategory.CHECK,
    "check_meter": MeterCategory.CHECK,
    "tenant": MeterCategory.TENANT,
    "tenant_meter": MeterCategory.TENANT,
    "distribution": MeterCategory.DISTRIBUTION,
}


def classify_meter(assignment: Optional[str], meter_type: Optional[str]) -> MeterCategory:
    """Assignment label wins; meter type is the fallback."""
    a = (assignment or "").strip().lower()
    t = (meter_type or "").strip().lower()
    if a in _BY_ASSIGNMENT:
        return _BY_ASSIGNMENT[a]
    if t in _BY_METER_TYPE:
        return _BY_METER_TYPE[t]
    if not a or a == "unassigned":
        return MeterCategory.UNASSIGNED
    return MeterCategory.OTHER


def safe_sum(values: Iterable[Tuple[str, float]]) -> float:
    """Sum (label, value) pairs, skipping non-finite or implausibly large values."""
    total = 0.0
    for label, v in values:
        if not math.isfinite(v) or abs(v) > config.TOTAL_SANITY_BOUND:
            logger.warning(f"[recon] skipping corrupt total for meter {label}: {v}")
            continue
        total += v
    return total


def clamp_recovery_rate(tenant_total: float, total_supply: float) -> float:
    if total_supply <= 0:
        return 0.0
    rate = tenant_total / total_supply * 100
    if not math.isfinite(rate):
        return 0.0
    bound = config.RECOVERY_RATE_BOUND
    return max(-bound, min(bound, rate))


def build_reconciliation(
    results: Sequence[MeterResult],
    revenue_enabled: bool = False,
) -> ReconciliationSummary:
    buckets: Dict[MeterCategory, List[MeterResult]] = {c: [] for c in MeterCategory}
    for m in results:
        buckets[classify_meter(m.assignment, m.meter_type)].append(m)

    def kwh(cat: MeterCategory) -> float:
        return safe_sum((m.meter_number, m.total_kwh) for m in buckets[cat])

    def cost(cat: MeterCategory) -> float:
        return safe_sum((m.meter_number, m.chosen_cost.total_cost) for m in buckets[cat])

    grid = kwh(MeterCategory.GRID_SUPPLY)
    bulk = kwh(MeterCategory.BULK)
    solar = kwh(MeterCategory.SOLAR)
    tenant = kwh(MeterCategory.TENANT)
    check = kwh(MeterCategory.CHECK)

    total_supply = grid + max(0.0, solar)
    distribution_total = bulk + tenant + check

    summary = ReconciliationSummary(
        categories={c.value: [m.id for m in ms] for c, ms in buckets.items()},
        grid_supply_total=grid,
        bulk_total=bulk,
        solar_total=solar,
        tenant_total=tenant,
        check_total=check,
        distribution_meter_total=kwh(MeterCategory.DISTRIBUTION),
        total_supply=total_supply,
        distribution_total=distribution_total,
        discrepancy=total_supply - tenant,
        distribution_discrepancy=total_supply - distribution_total,
        recovery_rate=clamp_recovery_rate(tenant, total_supply),
        revenue_enabled=revenue_enabled,
    )

    if revenue_enabled:
        tenant_cost = cost(MeterCategory.TENANT)
        summary.grid_supply_cost = cost(MeterCategory.GRID_SUPPLY)
        summary.solar_cost = cost(MeterCategory.SOLAR)
        summary.tenant_cost = tenant_cost
        summary.total_revenue = tenant_cost
        summary.avg_cost_per_kwh = tenant_cost / tenant if tenant > 0 else 0.0

    logger.info(
        f"[recon] supply={total_supply:.2f} kWh tenant={tenant:.2f} kWh "
        f"discrepancy={summary.discrepancy:.2f} recovery={summary.recovery_rate:.2f}%"
    )
    return summary
