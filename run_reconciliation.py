#!/usr/bin/env python3
"""Run one bulk reconciliation in the foreground from a YAML (or JSON) request file.

Example request file:

    siteId: 1
    enableRevenue: true
    documentPeriodIds: [jan]
    documentDateRanges:
      - {id: jan, file_name: January 2025, period_start: 2025-01-01, period_end: 2025-02-01}
    meterConfig:
      selectedColumns: [P1, P2]
      columnOperations: {S: max}
      meterAssignments: {"3": grid_supply, "7": tenant}
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

import yaml  # pip install pyyaml
from tortoise import Tortoise

from main import init_db
from models import ReconciliationJob
from schemas import JobRead, ReconciliationRequest
from services import background, config
from services.hierarchy_generation import LocalHierarchyGenerator
from services.store import ReconciliationStore

logger = logging.getLogger("uvicorn")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a meter reconciliation job from a request file.")
    parser.add_argument("request", help="Path to the request file (.yaml, .yml or .json).")
    parser.add_argument("--db-url", default=None, help=f"Database URL (default: {config.DB_URL}).")
    parser.add_argument("--no-delay", action="store_true", help="Skip the pause between periods.")
    return parser.parse_args(argv)


def load_request(path: str) -> ReconciliationRequest:
    text = Path(path).read_text(encoding="utf-8")
    payload = json.loads(text) if path.endswith(".json") else (yaml.safe_load(text) or {})
    return ReconciliationRequest.model_validate(payload)


async def _run(request: ReconciliationRequest, db_url: str | None) -> JobRead:
    await init_db(db_url)
    try:
        store = ReconciliationStore()
        job_id = await store.create_job(request)
        await background.run_reconciliation_job(job_id, request, store, LocalHierarchyGenerator())
        return JobRead.model_validate(await ReconciliationJob.get(id=job_id))
    finally:
        await Tortoise.close_connections()


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    args = parse_args(argv)
    try:
        request = load_request(args.request)
    except Exception as exc:
        print(f"Failed to load request: {exc}", file=sys.stderr)
        return 1

    if args.no_delay:
        config.PERIOD_DELAY_SECONDS = 0

    job = asyncio.run(_run(request, args.db_url))
    print(job.model_dump_json(indent=2))
    return 0 if job.status.value == "complete" else 2


if __name__ == "__main__":
    raise SystemExit(main())
