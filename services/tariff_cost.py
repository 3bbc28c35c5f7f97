# services/tariff_cost.py
"""
Tariff pricing for one metering view of one meter.

Energy (first that applies):
  1) block tariff      -> progressive bands in block_number order, cents/kWh
  2) energy_both_seasons
  3) energy_low_season / energy_high_season (high only when the whole window is high season)
Fixed:   basic_monthly + basic_charge, prorated per calendar month
Demand:  max kVA x demand_{high,low}_season (high when any month of the window is high season)
"""
from __future__ import annotations

import calendar
import logging
from datetime import date, datetime
from typing import Iterable, List, Optional, Protocol, Sequence, Union

from models import ChargeType
from schemas import CostResult, MeterInfo, MeterResult, TariffBlockRead, TariffChargeRead, TariffStructureRead
from services import config
from services.sanitizer import is_apparent_power_field

logger = logging.getLogger("uvicorn")

DateLike = Union[date, datetime]


class TariffStore(Protocol):
    async def resolve_tariff_periods(
        self, supply_authority_id: int, tariff_name: str, date_from: datetime, date_to: datetime
    ) -> List[int]: ...

    async def load_tariff(self, tariff_id: int) -> Optional[TariffStructureRead]: ...


def _as_date(d: DateLike) -> date:
    return d.date() if isinstance(d, datetime) else d


def _months(date_from: DateLike, date_to: DateLike) -> List[int]:
    """Calendar months (1..12) touched by the window, in order."""
    start, end = _as_date(date_from), _as_date(date_to)
    out: List[int] = []
    y, m = start.year, start.month
    while (y, m) <= (end.year, end.month):
        out.append(m)
        y, m = (y + 1, 1) if m == 12 else (y, m + 1)
    return out


def _find_charge(charges: Iterable[TariffChargeRead], charge_type: ChargeType) -> Optional[TariffChargeRead]:
    return next((c for c in charges if c.charge_type == charge_type), None)


# ---------- tariff resolution ----------

async def resolve_tariff_id(
    store: TariffStore,
    meter: Union[MeterInfo, MeterResult],
    supply_authority_id: Optional[int],
    date_from: datetime,
    date_to: datetime,
) -> Optional[int]:
    if meter.tariff_structure_id:
        return meter.tariff_structure_id
    if meter.assigned_tariff_name and supply_authority_id is not None:
        ids = await store.resolve_tariff_periods(
            supply_authority_id, meter.assigned_tariff_name, date_from, date_to
        )
        if ids:
            return ids[0]
    return None


# ---------- components ----------

def block_energy_cost(blocks: Sequence[TariffBlockRead], quantity: float) -> float:
    cost = 0.0
    remaining = quantity
    for block in sorted(blocks, key=lambda b: b.block_number):
        size = float("inf") if block.kwh_to is None else block.kwh_to - block.kwh_from
        in_block = min(remaining, size)
        if in_block > 0:
            cost += in_block * block.energy_charge_cents / 100
            remaining -= in_block
        if remaining <= 0:
            break
    return cost


def flat_energy_cost(
    charges: Sequence[TariffChargeRead],
    quantity: float,
    date_from: DateLike,
    date_to: DateLike,
) -> Optional[float]:
    """None when the tariff carries no energy charge at all."""
    both = _find_charge(charges, ChargeType.ENERGY_BOTH_SEASONS)
    if both:
        return quantity * both.charge_amount / 100

    low = _find_charge(charges, ChargeType.ENERGY_LOW_SEASON)
    high = _find_charge(charges, ChargeType.ENERGY_HIGH_SEASON)
    if not (low or high):
        return None

    start_m, end_m = _as_date(date_from).month, _as_date(date_to).month
    entirely_high = start_m in config.HIGH_SEASON_MONTHS and end_m in config.HIGH_SEASON_MONTHS
    charge = high if (entirely_high and high) else (low or high)
    return quantity * charge.charge_amount / 100


def prorate_monthly_charge(monthly: float, date_from: DateLike, date_to: DateLike) -> float:
    """monthly x (days of the window in month) / (days in month), summed over months. Days are inclusive."""
    start, end = _as_date(date_from), _as_date(date_to)
    if monthly == 0 or end < start:
        return 0.0

    total = 0.0
    current = start
    while current <= end:
        days_in_month = calendar.monthrange(current.year, current.month)[1]
        month_end = current.replace(day=days_in_month)
        seg_end = min(end, month_end)
        days = (seg_end - current).days + 1
        total += monthly * days / days_in_month
        current = date(current.year + 1, 1, 1) if current.month == 12 else date(current.year, current.month + 1, 1)
    return total


def demand_charge(
    charges: Sequence[TariffChargeRead],
    max_kva: float,
    date_from: DateLike,
    date_to: DateLike,
) -> float:
    if max_kva <= 0:
        return 0.0
    high_season = any(m in config.HIGH_SEASON_MONTHS for m in _months(date_from, date_to))
    charge = _find_charge(
        charges, ChargeType.DEMAND_HIGH_SEASON if high_season else ChargeType.DEMAND_LOW_SEASON
    )
    return max_kva * charge.charge_amount if charge else 0.0


def max_demand_from_columns(column_max_values: dict) -> float:
    return max(
        (v for k, v in column_max_values.items() if is_apparent_power_field(k)),
        default=0.0,
    )


def calculate_cost(
    tariff: Optional[TariffStructureRead],
    date_from: DateLike,
    date_to: DateLike,
    quantity: float,
    max_kva: float = 0.0,
) -> CostResult:
    if tariff is None:
        return CostResult(has_error=True, error_message="Tariff structure not found")

    try:
        error = None
        if tariff.blocks:
            energy = block_energy_cost(tariff.blocks, quantity)
        else:
            energy = flat_energy_cost(tariff.charges, quantity, date_from, date_to)
            if energy is None:
                energy = 0.0
                error = f"Tariff '{tariff.name}' has no energy pricing"

        monthly = sum(
            c.charge_amount
            for c in tariff.charges
            if c.charge_type in (ChargeType.BASIC_MONTHLY, ChargeType.BASIC_CHARGE)
        )
        fixed = prorate_monthly_charge(monthly, date_from, date_to)
        demand = demand_charge(tariff.charges, max_kva, date_from, date_to)
    except Exception as e:
        return CostResult(has_error=True, error_message=str(e))

    total = energy + fixed + demand
    return CostResult(
        energy_cost=energy,
        fixed_charges=fixed,
        demand_charges=demand,
        total_cost=total,
        avg_cost_per_kwh=total / quantity if quantity > 0 else 0.0,
        has_error=error is not None,
        error_message=error,
    )


# ---------- batch ----------

async def price_meter_results(
    store: TariffStore,
    results: Sequence[MeterResult],
    supply_authority_id: Optional[int],
    date_from: datetime,
    date_to: datetime,
) -> None:
    """Fill direct_cost / hierarchical_cost in place. Failures stay on the meter."""
    for meter in results:
        if not (meter.tariff_structure_id or meter.assigned_tariff_name):
            continue
        try:
            tariff_id = await resolve_tariff_id(store, meter, supply_authority_id, date_from, date_to)
            if not tariff_id:
                meter.cost_calculation_error = "No matching tariff found"
                continue
            meter.tariff_structure_id = tariff_id
            tariff = await store.load_tariff(tariff_id)
            if tariff is None:
                meter.cost_calculation_error = "Tariff structure not found"
                meter.direct_cost = calculate_cost(None, date_from, date_to, 0.0)
                meter.hierarchical_cost = calculate_cost(None, date_from, date_to, 0.0)
                logger.warning(f"[tariff] {meter.meter_number}: tariff structure {tariff_id} not found")
                continue

            for view, attr in ((meter.direct, "direct_cost"), (meter.hierarchical, "hierarchical_cost")):
                if view.total_kwh <= 0:
                    continue
                cost = calculate_cost(
                    tariff, date_from, date_to, view.total_kwh,
                    max_demand_from_columns(view.column_max_values),
                )
                setattr(meter, attr, cost)
                if cost.has_error and not meter.cost_calculation_error:
                    meter.cost_calculation_error = cost.error_message

            logger.info(
                f"[tariff] {meter.meter_number}: direct={meter.direct_cost.total_cost:.2f} "
                f"hierarchical={meter.hierarchical_cost.total_cost:.2f}"
            )
        except Exception as e:
            logger.warning(f"[tariff] cost calculation failed for {meter.meter_number}: {e}")
            meter.cost_calculation_error = str(e)
