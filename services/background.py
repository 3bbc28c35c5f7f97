from __future__ import annotations

import asyncio
import logging
from datetime import datetime, time, timedelta
from typing import Iterable, List, Optional, Protocol, Set, Tuple
from uuid import UUID

from models import JobStatus
from schemas import CorrectionRecord, JobState, MeterInfo, PeriodRange, ReconciliationRequest
from services import config
from services.aggregation import aggregate_meter
from services.hierarchy import ConnectionsMap, build_connections_map, find_cycle, is_parent, order_parents
from services.hierarchy_generation import LocalHierarchyGenerator
from services.reconciliation import build_reconciliation
from services.store import ReconciliationStore
from services.tariff_cost import price_meter_results

logger = logging.getLogger("uvicorn")

# strong refs so running jobs are not garbage collected mid-flight
_background_tasks: Set[asyncio.Task] = set()


class ReconciliationSetupError(RuntimeError):
    """The job cannot start or continue: site, meters or connections unavailable."""


class HierarchyGenerator(Protocol):
    async def copy_leaf_meters(
        self, site_id: int, date_from: datetime, date_to: datetime, connections_map: ConnectionsMap
    ) -> int: ...

    async def generate_parent(
        self,
        parent_id: int,
        child_ids: List[int],
        date_from: datetime,
        date_to: datetime,
        columns: Iterable[str],
        connections_map: ConnectionsMap,
    ) -> int: ...


def period_window(period: PeriodRange) -> Tuple[datetime, datetime]:
    """[period_start 00:00, (period_end - 1 day) 23:59]; period_end is exclusive."""
    date_from = datetime.combine(period.period_start, time(0, 0))
    date_to = datetime.combine(period.period_end - timedelta(days=1), time(23, 59))
    return date_from, date_to


# ---------- one period ----------

async def generate_hierarchy(
    generator: HierarchyGenerator,
    site_id: int,
    meters: List[MeterInfo],
    connections_map: ConnectionsMap,
    columns: List[str],
    date_from: datetime,
    date_to: datetime,
) -> None:
    """Leaf copy first, then parents bottom-up. Failures are logged and skipped."""
    try:
        n = await generator.copy_leaf_meters(site_id, date_from, date_to, connections_map)
        logger.info(f"[hierarchy] leaf meters copied: {n} readings")
    except Exception as e:
        logger.warning(f"[hierarchy] leaf meter copy failed: {e}")

    parents = [m for m in meters if is_parent(m.id, connections_map)]
    for parent in order_parents(parents, connections_map):
        try:
            await generator.generate_parent(
                parent.id,
                list(connections_map.get(parent.id) or []),
                date_from,
                date_to,
                columns,
                connections_map,
            )
        except Exception as e:
            logger.warning(f"[hierarchy] generation failed for {parent.meter_number}: {e}")


async def reconcile_period(
    store: ReconciliationStore,
    generator: HierarchyGenerator,
    job_id: Optional[UUID],
    request: ReconciliationRequest,
    period: PeriodRange,
    meters: List[MeterInfo],
    connections_map: ConnectionsMap,
    supply_authority_id: Optional[int],
) -> UUID:
    date_from, date_to = period_window(period)
    meter_config = request.meter_config

    await generate_hierarchy(
        generator, request.site_id, meters, connections_map,
        meter_config.selected_columns, date_from, date_to,
    )

    corrections: List[CorrectionRecord] = []
    results = []
    for meter in meters:
        results.append(
            await aggregate_meter(
                store, meter, is_parent(meter.id, connections_map),
                date_from, date_to, meter_config, corrections,
            )
        )

    if request.enable_revenue:
        await price_meter_results(store, results, supply_authority_id, date_from, date_to)

    summary = build_reconciliation(results, request.enable_revenue)

    run_id = await store.save_run(
        request.site_id, job_id, period.file_name, date_from, date_to, summary, len(corrections)
    )
    await store.save_meter_results(run_id, results)
    await store.save_corrections(run_id, corrections)
    logger.info(
        f"[recon] saved run {run_id} ({period.file_name}): {len(results)} meters, {len(corrections)} corrections"
    )
    return run_id


# ---------- job ----------

async def _load_setup(store: ReconciliationStore, site_id: int):
    try:
        supply_authority_id = await store.load_supply_authority_id(site_id)
        meters = await store.load_meters(site_id)
        connections = await store.load_connections(site_id)
    except Exception as e:
        raise ReconciliationSetupError(f"Failed to load site {site_id}: {e}") from e

    connections_map = build_connections_map(connections)
    cycle = find_cycle(connections_map)
    if cycle:
        logger.warning(f"[job] meter connections contain a cycle: {' -> '.join(map(str, cycle))}")
    return meters, connections_map, supply_authority_id


async def run_reconciliation_job(
    job_id: UUID,
    request: ReconciliationRequest,
    store: ReconciliationStore,
    generator: HierarchyGenerator,
) -> JobState:
    """
    Process every requested period in order and write the job's terminal state once.

      - cancellation is polled before each period
      - a failing period is recorded by name and the job moves on
      - complete if any period succeeded, failed if none did, cancelled if the user stopped it
    """
    period_ids = list(request.document_period_ids)
    state = JobState(total_periods=len(period_ids))
    logger.info(f"[job] {job_id} started: site={request.site_id} periods={len(period_ids)}")

    try:
        meters, connections_map, supply_authority_id = await _load_setup(store, request.site_id)

        ranges = {p.id: p for p in request.document_date_ranges}
        cancelled = False
        for i, period_id in enumerate(period_ids):
            period = ranges.get(period_id)
            if period is None:
                logger.warning(f"[job] {job_id} period {period_id} has no date range, skipping")
                continue

            if await store.get_job_status(job_id) == JobStatus.CANCELLED:
                logger.info(f"[job] {job_id} cancelled, stopping before {period.file_name}")
                cancelled = True
                break

            state.current_period = period.file_name
            await store.save_job_state(job_id, state)
            logger.info(f"[job] {job_id} period {i + 1}/{len(period_ids)}: {period.file_name}")

            try:
                await reconcile_period(
                    store, generator, job_id, request, period,
                    meters, connections_map, supply_authority_id,
                )
                state.success_count += 1
            except Exception:
                logger.exception(f"[job] {job_id} period {period.file_name} failed")
                state.failed_periods.append(period.file_name)
            state.completed_periods += 1

            if i < len(period_ids) - 1 and config.PERIOD_DELAY_SECONDS > 0:
                await asyncio.sleep(config.PERIOD_DELAY_SECONDS)

        if not cancelled and await store.get_job_status(job_id) == JobStatus.CANCELLED:
            cancelled = True

        if cancelled:
            state.status = JobStatus.CANCELLED
        elif state.success_count == 0:
            state.status = JobStatus.FAILED
        else:
            state.status = JobStatus.COMPLETE

        state.current_period = None
        if state.failed_periods:
            state.error_message = f"Failed periods: {', '.join(state.failed_periods)}"
        elif state.status == JobStatus.FAILED:
            state.error_message = "No periods were processed"
    except Exception as e:
        logger.exception(f"[job] {job_id} fatal error")
        state.status = JobStatus.FAILED
        state.current_period = None
        state.error_message = str(e)

    try:
        await store.save_job_state(job_id, state)
    except Exception as e:
        logger.error(f"[job] {job_id} could not write final state {state.status.value}: {e}")

    logger.info(
        f"[job] {job_id} {state.status.value}: success={state.success_count} failed={len(state.failed_periods)}"
    )
    return state


async def start_reconciliation(
    request: ReconciliationRequest,
    *,
    store: Optional[ReconciliationStore] = None,
    generator: Optional[HierarchyGenerator] = None,
) -> UUID:
    """Create the job row and schedule the run; returns as soon as the job exists."""
    if not request.document_period_ids:
        raise ReconciliationSetupError("No document periods selected")

    store = store or ReconciliationStore()
    generator = generator or LocalHierarchyGenerator()

    job_id = await store.create_job(request)
    task = asyncio.create_task(run_reconciliation_job(job_id, request, store, generator))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return job_id


async def cancel_job(job_id: UUID, store: Optional[ReconciliationStore] = None) -> bool:
    """Flip a running job to cancelled; the task stops at its next period boundary."""
    ok = await (store or ReconciliationStore()).cancel_job(job_id)
    if ok:
        logger.info(f"[job] {job_id} cancel requested")
    return ok
