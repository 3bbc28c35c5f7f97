import os
import sys

# Ensure the repo root is on sys.path so imports like `import models` work.
ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import uuid
from datetime import date, datetime, timedelta

import pytest

from models import JobStatus
from schemas import (
    CostResult,
    MeterInfo,
    MeterResult,
    PeriodRange,
    ReconciliationRequest,
    SourceTotals,
)
from services import config


class FakeStore:
    """In-memory stand-in for ReconciliationStore."""

    def __init__(self, meters=None, connections=None, supply_authority_id=1):
        self.meters = list(meters or [])
        self.connections = list(connections or [])
        self.supply_authority_id = supply_authority_id
        # (meter_id, "direct"|"hierarchical", tag value or None) -> [reading dict]
        self.readings = {}
        self.tariffs = {}
        self.tariff_periods = {}

        self.statuses = {}
        self.saved_states = []
        self.runs = []
        self.meter_results = {}
        self.corrections = {}
        self.page_calls = []

        self.fail_setup = False
        self.fail_page_at = {}   # meter_id -> offset that raises
        self.fail_runs = set()   # run names whose save raises

    # ---- topology ----
    async def load_supply_authority_id(self, site_id):
        if self.fail_setup:
            raise RuntimeError("site lookup failed")
        return self.supply_authority_id

    async def load_meters(self, site_id):
        return list(self.meters)

    async def load_connections(self, site_id):
        return list(self.connections)

    # ---- readings ----
    def add_readings(self, meter_id, source, rows, tag=None):
        self.readings.setdefault((meter_id, source, tag), []).extend(rows)

    async def fetch_readings_page(self, meter_id, source, tag, date_from, date_to, offset, limit):
        self.page_calls.append((meter_id, source.value, tag.value if tag else None, offset))
        if self.fail_page_at.get(meter_id) == offset:
            raise RuntimeError("connection reset")
        if tag is not None:
            rows = self.readings.get((meter_id, source.value, tag.value), [])
        else:
            rows = [r for (mid, src, _), rs in self.readings.items() if mid == meter_id and src == source.value for r in rs]
        rows = [r for r in rows if date_from <= r["reading_timestamp"] <= date_to]
        rows.sort(key=lambda r: r["reading_timestamp"])
        return rows[offset: offset + limit]

    # ---- tariffs ----
    async def resolve_tariff_periods(self, supply_authority_id, tariff_name, date_from, date_to):
        return list(self.tariff_periods.get((supply_authority_id, tariff_name), []))

    async def load_tariff(self, tariff_id):
        return self.tariffs.get(tariff_id)

    # ---- jobs ----
    async def create_job(self, request):
        job_id = uuid.uuid4()
        self.statuses[job_id] = JobStatus.RUNNING
        return job_id

    async def get_job_status(self, job_id):
        return self.statuses.get(job_id, JobStatus.RUNNING)

    async def save_job_state(self, job_id, state):
        self.saved_states.append(state.model_copy(deep=True))
        if state.status != JobStatus.RUNNING:
            self.statuses[job_id] = state.status

    async def cancel_job(self, job_id):
        if self.statuses.get(job_id) == JobStatus.RUNNING:
            self.statuses[job_id] = JobStatus.CANCELLED
            return True
        return False

    # ---- results ----
    async def save_run(self, site_id, job_id, run_name, date_from, date_to, summary, corrections_count=0):
        if run_name in self.fail_runs:
            raise RuntimeError(f"insert failed for {run_name}")
        run_id = uuid.uuid4()
        self.runs.append(
            dict(id=run_id, name=run_name, date_from=date_from, date_to=date_to,
                 summary=summary, corrections_count=corrections_count)
        )
        return run_id

    async def save_meter_results(self, run_id, results):
        self.meter_results[run_id] = list(results)
        return len(results)

    async def save_corrections(self, run_id, corrections):
        self.corrections[run_id] = list(corrections)
        return len(corrections)


class FakeGenerator:
    def __init__(self, fail_copy=False, fail_parents=()):
        self.calls = []
        self.fail_copy = fail_copy
        self.fail_parents = set(fail_parents)

    async def copy_leaf_meters(self, site_id, date_from, date_to, connections_map):
        self.calls.append(("copy", site_id))
        if self.fail_copy:
            raise RuntimeError("copy failed")
        return 0

    async def generate_parent(self, parent_id, child_ids, date_from, date_to, columns, connections_map):
        self.calls.append(("parent", parent_id))
        if parent_id in self.fail_parents:
            raise RuntimeError("generation failed")
        return 0


@pytest.fixture(autouse=True)
def no_period_delay(monkeypatch):
    monkeypatch.setattr(config, "PERIOD_DELAY_SECONDS", 0)


@pytest.fixture
def fake_store():
    return FakeStore


@pytest.fixture
def fake_generator():
    return FakeGenerator


@pytest.fixture
def make_meter():
    def _make(id, meter_number=None, meter_type="tenant", **kw) -> MeterInfo:
        return MeterInfo(id=id, meter_number=meter_number or f"M{id}", meter_type=meter_type, **kw)

    return _make


@pytest.fixture
def make_reading():
    def _make(ts: datetime, kwh: float = 0.0, **fields):
        return {"reading_timestamp": ts, "kwh_value": kwh, "kva_value": None, "imported_fields": dict(fields)}

    return _make


@pytest.fixture
def half_hours():
    def _make(start: datetime, n: int):
        return [start + timedelta(minutes=30 * i) for i in range(n)]

    return _make


@pytest.fixture
def make_result():
    def _make(
        id,
        total,
        assignment="tenant",
        meter_type="tenant",
        is_parent=False,
        cost=0.0,
        hierarchical_total=None,
        hierarchical_cost=None,
    ) -> MeterResult:
        return MeterResult(
            id=id,
            meter_number=f"M{id}",
            meter_type=meter_type,
            assignment=assignment,
            is_parent=is_parent,
            direct=SourceTotals(total_kwh=total, readings_count=1),
            hierarchical=SourceTotals(
                total_kwh=total if hierarchical_total is None else hierarchical_total, readings_count=1
            ),
            direct_cost=CostResult(total_cost=cost),
            hierarchical_cost=CostResult(total_cost=cost if hierarchical_cost is None else hierarchical_cost),
        )

    return _make


@pytest.fixture
def make_request():
    def _make(periods=None, **kw) -> ReconciliationRequest:
        periods = periods or [("jan", "January", date(2025, 1, 1), date(2025, 2, 1))]
        return ReconciliationRequest(
            site_id=kw.pop("site_id", 1),
            document_period_ids=kw.pop("period_ids", [p[0] for p in periods]),
            document_date_ranges=[
                PeriodRange(id=pid, file_name=name, period_start=start, period_end=end)
                for pid, name, start, end in periods
            ],
            **kw,
        )

    return _make
