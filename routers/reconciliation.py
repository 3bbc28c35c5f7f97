# routers/reconciliation.py
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException

from models import JobStatus, ReadingCorrection, ReconciliationJob, ReconciliationMeterResult, ReconciliationRun
from schemas import CorrectionRead, JobRead, MeterResultRead, ReconciliationRequest, ReconciliationStarted, RunRead
from api_utils import RAListParams, parse_sort, apply_filter_map, paginate_and_respond, respond_item
from services import background

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])

RUN_SORTS = {"id", "run_name", "date_from", "date_to", "recovery_rate", "discrepancy", "created_at"}
RESULT_SORTS = {"meter_number", "meter_type", "category", "total_kwh", "hierarchical_total", "direct_total_kwh"}
CORRECTION_SORTS = {"meter_number", "field_name", "reading_timestamp", "original_value"}


def _as_int(v):
    try:
        return int(v)
    except Exception:
        return None


async def _get_run(run_id: UUID) -> ReconciliationRun:
    run = await ReconciliationRun.get_or_none(id=run_id)
    if not run:
        raise HTTPException(404, "Reconciliation run not found")
    return run


# ---------- jobs ----------

@router.post("/bulk", response_model=ReconciliationStarted, status_code=202)
async def start_bulk_reconciliation(payload: ReconciliationRequest):
    try:
        job_id = await background.start_reconciliation(payload)
    except background.ReconciliationSetupError as e:
        raise HTTPException(422, str(e))
    return ReconciliationStarted(jobId=job_id)


@router.get("/jobs/{job_id}", response_model=JobRead)
async def get_job(job_id: UUID):
    job = await ReconciliationJob.get_or_none(id=job_id)
    if not job:
        raise HTTPException(404, "Job not found")
    return respond_item(job, JobRead.model_validate)


@router.post("/jobs/{job_id}/cancel", response_model=JobRead)
async def cancel_job(job_id: UUID):
    job = await ReconciliationJob.get_or_none(id=job_id)
    if not job:
        raise HTTPException(404, "Job not found")
    if job.status != JobStatus.RUNNING:
        raise HTTPException(409, f"Job is {job.status.value}, only running jobs can be cancelled")
    if not await background.cancel_job(job_id):
        raise HTTPException(409, "Job finished before it could be cancelled")
    job = await ReconciliationJob.get(id=job_id)
    return respond_item(job, JobRead.model_validate)


# ---------- runs ----------

@router.get("/runs", response_model=list[RunRead])
async def list_runs(params: RAListParams = Depends()):
    fmap = {
        "site_id": lambda q, v: q.filter(site_id=_as_int(v)) if _as_int(v) is not None else q,
        "job_id": lambda q, v: q.filter(job_id=str(v)),
        "run_name": lambda q, v: q.filter(run_name__icontains=str(v)),
    }
    qs = apply_filter_map(ReconciliationRun.all(), params.filters, fmap)
    order = parse_sort(params.sort, RUN_SORTS, default="-date_from")
    return await paginate_and_respond(qs, params.skip, params.limit, order, RunRead.model_validate)


@router.get("/runs/{run_id}", response_model=RunRead)
async def get_run(run_id: UUID):
    run = await _get_run(run_id)
    return respond_item(run, RunRead.model_validate)


@router.get("/runs/{run_id}/meter-results", response_model=list[MeterResultRead])
async def list_meter_results(run_id: UUID, params: RAListParams = Depends()):
    await _get_run(run_id)
    fmap = {
        "category": lambda q, v: q.filter(category=str(v)),
        "meter_number": lambda q, v: q.filter(meter_number__icontains=str(v)),
        "has_error": lambda q, v: q.filter(has_error=bool(v)),
    }
    qs = apply_filter_map(ReconciliationMeterResult.filter(run_id=run_id), params.filters, fmap)
    order = parse_sort(params.sort, RESULT_SORTS, default="meter_number")
    return await paginate_and_respond(qs, params.skip, params.limit, order, MeterResultRead.model_validate)


@router.get("/runs/{run_id}/corrections", response_model=list[CorrectionRead])
async def list_corrections(run_id: UUID, params: RAListParams = Depends()):
    await _get_run(run_id)
    fmap = {
        "meter_id": lambda q, v: q.filter(meter_id=_as_int(v)) if _as_int(v) is not None else q,
        "field_name": lambda q, v: q.filter(field_name=str(v)),
        "source": lambda q, v: q.filter(source=str(v)),
    }
    qs = apply_filter_map(ReadingCorrection.filter(run_id=run_id), params.filters, fmap)
    order = parse_sort(params.sort, CORRECTION_SORTS, default="reading_timestamp")
    return await paginate_and_respond(qs, params.skip, params.limit, order, CorrectionRead.model_validate)
