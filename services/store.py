# services/store.py
"""
Tortoise-backed data access for the reconciliation engine.

Each method is an independent read or write. Only a run's meter results and
corrections are written as batches; nothing here spans a multi-row transaction.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from tortoise.expressions import Q

from models import (
    HierarchicalMeterReading,
    HierarchicalSource,
    JobStatus,
    Meter,
    MeterConnection,
    MeterReading,
    ReadingCorrection,
    ReconciliationJob,
    ReconciliationMeterResult,
    ReconciliationRun,
    Site,
    TariffStructure,
)
from schemas import (
    CorrectionRecord,
    JobState,
    MeterInfo,
    MeterResult,
    ReconciliationRequest,
    ReconciliationSummary,
    TariffBlockRead,
    TariffChargeRead,
    TariffStructureRead,
)
from services.aggregation import ReadingSource
from services.reconciliation import classify_meter

logger = logging.getLogger("uvicorn")

_READING_COLS = ("reading_timestamp", "kwh_value", "kva_value", "imported_fields")


def _val(v: Any) -> Any:
    return getattr(v, "value", v)


def _finite(v: float) -> float:
    return v if math.isfinite(v) else 0.0


class ReconciliationStore:
    # ---------- site topology ----------
    async def load_supply_authority_id(self, site_id: int) -> Optional[int]:
        site = await Site.get(id=site_id)  # DoesNotExist -> fatal for the job
        return site.supply_authority_id

    async def load_meters(self, site_id: int) -> List[MeterInfo]:
        rows = await Meter.filter(site_id=site_id).order_by("meter_number")
        return [
            MeterInfo(
                id=m.id,
                meter_number=m.meter_number,
                meter_type=_val(m.meter_type),
                name=m.name,
                location=m.location,
                tariff_structure_id=m.tariff_structure_id,
                assigned_tariff_name=m.assigned_tariff_name,
            )
            for m in rows
        ]

    async def load_connections(self, site_id: int) -> List[Tuple[int, int]]:
        rows = await MeterConnection.filter(parent_meter__site_id=site_id).order_by("id").values_list(
            "parent_meter_id", "child_meter_id"
        )
        return [(p, c) for p, c in rows]

    # ---------- readings ----------
    async def fetch_readings_page(
        self,
        meter_id: int,
        source: ReadingSource,
        tag: Optional[HierarchicalSource],
        date_from: datetime,
        date_to: datetime,
        offset: int,
        limit: int,
    ) -> List[Dict[str, Any]]:
        model = MeterReading if source == ReadingSource.DIRECT else HierarchicalMeterReading
        qs = model.filter(
            meter_id=meter_id,
            reading_timestamp__gte=date_from,
            reading_timestamp__lte=date_to,
        )
        if source == ReadingSource.HIERARCHICAL and tag is not None:
            qs = qs.filter(source=tag)
        return await qs.order_by("reading_timestamp", "id").offset(offset).limit(limit).values(*_READING_COLS)

    # ---------- tariffs ----------
    async def resolve_tariff_periods(
        self,
        supply_authority_id: int,
        tariff_name: str,
        date_from: datetime,
        date_to: datetime,
    ) -> List[int]:
        """Active tariffs with this name whose effective window overlaps the period, oldest first."""
        return await (
            TariffStructure.filter(
                supply_authority_id=supply_authority_id,
                name=tariff_name,
                active=True,
                effective_from__lte=date_to.date(),
            )
            .filter(Q(effective_to__isnull=True) | Q(effective_to__gte=date_from.date()))
            .order_by("effective_from", "id")
            .values_list("id", flat=True)
        )

    async def load_tariff(self, tariff_id: int) -> Optional[TariffStructureRead]:
        t = await TariffStructure.get_or_none(id=tariff_id).prefetch_related("blocks", "charges")
        if not t:
            return None
        return TariffStructureRead(
            id=t.id,
            name=t.name,
            tariff_type=t.tariff_type,
            effective_from=t.effective_from,
            effective_to=t.effective_to,
            blocks=[TariffBlockRead.model_validate(b) for b in t.blocks],
            charges=[
                TariffChargeRead(charge_type=_val(c.charge_type), charge_amount=c.charge_amount, unit=c.unit)
                for c in t.charges
            ],
        )

    # ---------- jobs ----------
    async def create_job(self, request: ReconciliationRequest) -> UUID:
        job = await ReconciliationJob.create(
            site_id=request.site_id,
            status=JobStatus.RUNNING,
            total_periods=len(request.document_period_ids),
            completed_periods=0,
            document_period_ids=list(request.document_period_ids),
            request=request.model_dump(mode="json", by_alias=True),
            enable_revenue=request.enable_revenue,
        )
        return job.id

    async def get_job_status(self, job_id: UUID) -> Optional[JobStatus]:
        job = await ReconciliationJob.get_or_none(id=job_id)
        return JobStatus(_val(job.status)) if job else None

    async def save_job_state(self, job_id: UUID, state: JobState) -> None:
        job = await ReconciliationJob.get_or_none(id=job_id)
        if not job:
            logger.warning(f"[job] {job_id} vanished, state not saved")
            return
        job.total_periods = state.total_periods
        job.completed_periods = state.completed_periods
        job.current_period = state.current_period
        job.error_message = state.error_message
        update_fields = ["total_periods", "completed_periods", "current_period", "error_message", "updated_at"]
        # progress writes leave status alone so a concurrent cancel survives
        if state.status != JobStatus.RUNNING:
            job.status = state.status
            update_fields.append("status")
        await job.save(update_fields=update_fields)

    async def cancel_job(self, job_id: UUID) -> bool:
        n = await ReconciliationJob.filter(id=job_id, status=JobStatus.RUNNING).update(status=JobStatus.CANCELLED)
        return n > 0

    # ---------- results ----------
    async def save_run(
        self,
        site_id: int,
        job_id: Optional[UUID],
        run_name: str,
        date_from: datetime,
        date_to: datetime,
        summary: ReconciliationSummary,
        corrections_count: int = 0,
    ) -> UUID:
        run = await ReconciliationRun.create(
            site_id=site_id,
            job_id=job_id,
            run_name=run_name,
            date_from=date_from,
            date_to=date_to,
            bulk_total=_finite(summary.grid_supply_total),
            solar_total=_finite(summary.solar_total),
            tenant_total=_finite(summary.tenant_total),
            check_total=_finite(summary.check_total),
            bulk_meter_total=_finite(summary.bulk_total),
            total_supply=_finite(summary.total_supply),
            distribution_total=_finite(summary.distribution_total),
            discrepancy=_finite(summary.discrepancy),
            recovery_rate=_finite(summary.recovery_rate),
            revenue_enabled=summary.revenue_enabled,
            grid_supply_cost=_finite(summary.grid_supply_cost),
            solar_cost=_finite(summary.solar_cost),
            tenant_cost=_finite(summary.tenant_cost),
            total_revenue=_finite(summary.total_revenue),
            avg_cost_per_kwh=_finite(summary.avg_cost_per_kwh),
            corrections_count=corrections_count,
        )
        return run.id

    async def save_meter_results(self, run_id: UUID, results: Sequence[MeterResult]) -> int:
        rows = []
        for m in results:
            legacy = m.chosen
            rows.append(
                ReconciliationMeterResult(
                    run_id=run_id,
                    meter_id=m.id,
                    meter_number=m.meter_number,
                    meter_type=m.meter_type,
                    meter_name=m.name,
                    location=m.location,
                    assignment=m.assignment,
                    category=classify_meter(m.assignment, m.meter_type).value,
                    total_kwh=_finite(legacy.total_kwh),
                    total_kwh_positive=max(0.0, _finite(legacy.total_kwh)),
                    total_kwh_negative=min(0.0, _finite(legacy.total_kwh)),
                    column_totals=legacy.column_totals,
                    column_max_values=legacy.column_max_values,
                    readings_count=legacy.readings_count,
                    direct_total_kwh=_finite(m.direct.total_kwh),
                    direct_readings_count=m.direct.readings_count,
                    direct_column_totals=m.direct.column_totals,
                    direct_column_max_values=m.direct.column_max_values,
                    hierarchical_total=_finite(m.hierarchical.total_kwh),
                    hierarchical_readings_count=m.hierarchical.readings_count,
                    hierarchical_column_totals=m.hierarchical.column_totals,
                    hierarchical_column_max_values=m.hierarchical.column_max_values,
                    direct_energy_cost=m.direct_cost.energy_cost,
                    direct_fixed_charges=m.direct_cost.fixed_charges,
                    direct_demand_charges=m.direct_cost.demand_charges,
                    direct_total_cost=m.direct_cost.total_cost,
                    direct_avg_cost_per_kwh=m.direct_cost.avg_cost_per_kwh,
                    hierarchical_energy_cost=m.hierarchical_cost.energy_cost,
                    hierarchical_fixed_charges=m.hierarchical_cost.fixed_charges,
                    hierarchical_demand_charges=m.hierarchical_cost.demand_charges,
                    hierarchical_total_cost=m.hierarchical_cost.total_cost,
                    hierarchical_avg_cost_per_kwh=m.hierarchical_cost.avg_cost_per_kwh,
                    has_error=m.has_error,
                    error_message=m.error_message,
                    tariff_structure_id=m.tariff_structure_id,
                    tariff_name=m.assigned_tariff_name,
                    cost_calculation_error=m.cost_calculation_error,
                )
            )
        if rows:
            await ReconciliationMeterResult.bulk_create(rows)
        return len(rows)

    async def save_corrections(self, run_id: UUID, corrections: Sequence[CorrectionRecord]) -> int:
        rows = [
            ReadingCorrection(
                run_id=run_id,
                meter_id=c.meter_id,
                meter_number=c.meter_number,
                field_name=c.field_name,
                source=c.source,
                reading_timestamp=c.timestamp,
                original_value=_finite(c.original_value),
                corrected_value=c.corrected_value,
                reason=c.reason,
            )
            for c in corrections
        ]
        if rows:
            await ReadingCorrection.bulk_create(rows)
        return len(rows)
