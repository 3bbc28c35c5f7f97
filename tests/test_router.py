import uuid

import pytest
from fastapi.testclient import TestClient

from models import Site
from services import background, config
from services.store import ReconciliationStore

PAYLOAD = {
    "siteId": 1,
    "documentPeriodIds": ["jan"],
    "documentDateRanges": [
        {"id": "jan", "file_name": "January", "period_start": "2025-01-01", "period_end": "2025-02-01"}
    ],
    "enableRevenue": True,
    "meterConfig": {"selectedColumns": ["P1"], "columnOperations": {"S": "max"}},
}


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(config, "DB_URL", "sqlite://:memory:")
    from main import app

    with TestClient(app) as c:
        yield c


@pytest.fixture
def job_without_task(monkeypatch):
    """POST /bulk creates the job row but does not schedule the run."""

    async def _start(request, **kw):
        await Site.get_or_create(id=request.site_id, defaults={"name": "Test site"})
        return await ReconciliationStore().create_job(request)

    monkeypatch.setattr(background, "start_reconciliation", _start)


def test_start_returns_job_id(client, monkeypatch):
    job_id = uuid.uuid4()
    seen = {}

    async def _start(request, **kw):
        seen["request"] = request
        return job_id

    monkeypatch.setattr(background, "start_reconciliation", _start)
    resp = client.post("/reconciliation/bulk", json=PAYLOAD)

    assert resp.status_code == 202
    body = resp.json()
    assert body["success"] is True
    assert body["jobId"] == str(job_id)
    assert seen["request"].meter_config.column_operations["S"].value == "max"


def test_invalid_period_is_rejected(client):
    bad = dict(PAYLOAD, documentDateRanges=[
        {"id": "jan", "file_name": "January", "period_start": "2025-02-01", "period_end": "2025-01-01"}
    ])
    assert client.post("/reconciliation/bulk", json=bad).status_code == 422


def test_empty_period_list_is_rejected(client):
    resp = client.post("/reconciliation/bulk", json=dict(PAYLOAD, documentPeriodIds=[]))
    assert resp.status_code == 422


def test_unknown_job_and_run(client):
    missing = uuid.uuid4()
    assert client.get(f"/reconciliation/jobs/{missing}").status_code == 404
    assert client.post(f"/reconciliation/jobs/{missing}/cancel").status_code == 404
    assert client.get(f"/reconciliation/runs/{missing}").status_code == 404
    assert client.get(f"/reconciliation/runs/{missing}/meter-results").status_code == 404


def test_empty_run_list_has_content_range(client):
    resp = client.get("/reconciliation/runs", params={"range": "[0,9]"})
    assert resp.status_code == 206
    assert resp.json() == []
    assert resp.headers["Content-Range"] == "items 0-0/0"


def test_job_poll_and_cancel(client, job_without_task):
    job_id = client.post("/reconciliation/bulk", json=PAYLOAD).json()["jobId"]

    job = client.get(f"/reconciliation/jobs/{job_id}").json()
    assert job["status"] == "running"
    assert job["total_periods"] == 1
    assert job["document_period_ids"] == ["jan"]

    resp = client.post(f"/reconciliation/jobs/{job_id}/cancel")
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"

    assert client.post(f"/reconciliation/jobs/{job_id}/cancel").status_code == 409
