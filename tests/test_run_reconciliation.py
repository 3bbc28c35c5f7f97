import json
import uuid
from datetime import date, datetime

import pytest

import run_reconciliation
from models import JobStatus
from schemas import JobRead

REQUEST_YAML = """\
siteId: 3
enableRevenue: true
documentPeriodIds: [jan]
documentDateRanges:
  - {id: jan, file_name: January 2025, period_start: 2025-01-01, period_end: 2025-02-01}
meterConfig:
  selectedColumns: [P1, P2]
  columnOperations: {S: max}
  meterAssignments: {"7": grid_supply}
"""


def _job(status: JobStatus) -> JobRead:
    now = datetime(2025, 2, 1, 8, 0)
    return JobRead(
        id=uuid.uuid4(), site_id=3, status=status, total_periods=1, completed_periods=1,
        enable_revenue=True, created_at=now, updated_at=now,
    )


def test_load_request_from_yaml(tmp_path):
    path = tmp_path / "request.yaml"
    path.write_text(REQUEST_YAML, encoding="utf-8")

    req = run_reconciliation.load_request(str(path))

    assert req.site_id == 3
    assert req.enable_revenue
    assert req.document_date_ranges[0].period_start == date(2025, 1, 1)
    assert req.meter_config.selected_columns == ["P1", "P2"]
    assert req.meter_config.column_operations["S"].value == "max"
    assert req.meter_config.assignment_for(7) == "grid_supply"


def test_load_request_from_json(tmp_path):
    path = tmp_path / "request.json"
    path.write_text(json.dumps({
        "siteId": 5,
        "documentPeriodIds": ["feb"],
        "documentDateRanges": [
            {"id": "feb", "file_name": "February", "period_start": "2025-02-01", "period_end": "2025-03-01"}
        ],
    }), encoding="utf-8")

    req = run_reconciliation.load_request(str(path))

    assert req.site_id == 5
    assert not req.enable_revenue
    assert req.document_period_ids == ["feb"]


@pytest.mark.parametrize("status, code", [(JobStatus.COMPLETE, 0), (JobStatus.FAILED, 2), (JobStatus.CANCELLED, 2)])
def test_exit_code_follows_job_status(tmp_path, monkeypatch, capsys, status, code):
    path = tmp_path / "request.yaml"
    path.write_text(REQUEST_YAML, encoding="utf-8")
    seen = {}

    async def _run(request, db_url):
        seen["site_id"], seen["db_url"] = request.site_id, db_url
        return _job(status)

    monkeypatch.setattr(run_reconciliation, "_run", _run)

    assert run_reconciliation.main([str(path), "--db-url", "sqlite://:memory:", "--no-delay"]) == code
    assert seen == {"site_id": 3, "db_url": "sqlite://:memory:"}
    assert json.loads(capsys.readouterr().out)["status"] == status.value


def test_unreadable_request_exits_1(tmp_path, capsys):
    assert run_reconciliation.main([str(tmp_path / "missing.yaml")]) == 1
    assert "Failed to load request" in capsys.readouterr().err
