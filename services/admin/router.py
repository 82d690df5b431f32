"""
services/admin/router.py
Admin-only endpoints: trigger reconciliation, inspect the run log and
archive old intake rows. Guarded by the X-Admin-Key header.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query

from config.redis_client import RedisCache, get_redis
from config.settings import settings
from services.ledger.base import IntakeLog, LedgerStorage, RunLog
from services.ledger.storage import get_intake_log, get_ledger_storage, get_run_log
from services.reconciliation.engine import ReconciliationEngine
from shared.errors import ReconciliationAborted
from shared.middleware.auth import require_admin
from shared.schemas.schemas import (
    ArchiveResponse,
    ReconcileRequest,
    ReconcileResponse,
    RunListResponse,
)
from tasks.ledger_tasks import reconcile_ledger, send_admin_alert

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(require_admin)])


def get_reconciliation_engine(
    ledger: LedgerStorage = Depends(get_ledger_storage),
    intake: IntakeLog = Depends(get_intake_log),
    runs: RunLog = Depends(get_run_log),
    redis=Depends(get_redis),
) -> ReconciliationEngine:
    return ReconciliationEngine(ledger, intake, runs, RedisCache(redis))


# ── Reconciliation ─────────────────────────────────────────────────────────────

@router.post("/reconcile", response_model=ReconcileResponse, status_code=202)
async def trigger_reconciliation(
    data: Optional[ReconcileRequest] = None,
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
):
    """
    Queue a reconciliation run on the ledger worker, or with run_inline
    execute it inside this request. full_refresh re-renders every shard
    even when nothing is unsynced.
    """
    data = data or ReconcileRequest()
    if not data.run_inline:
        task = reconcile_ledger.delay(full_refresh=data.full_refresh)
        logger.info(f"Queued reconciliation task {task.id} (full_refresh={data.full_refresh})")
        return ReconcileResponse(queued=True, task_id=task.id)

    try:
        run = await engine.run(full_refresh=data.full_refresh)
    except ReconciliationAborted as e:
        send_admin_alert.delay(
            subject=f"Ledger reconciliation aborted in {e.state}",
            body=f"<p>A manually triggered run aborted in <b>{e.state}</b>.</p><p>{e}</p>",
        )
        raise
    return ReconcileResponse(queued=False, run=run)


@router.get("/reconcile/runs", response_model=RunListResponse)
async def list_reconciliation_runs(
    limit: int = Query(20, ge=1, le=200),
    runs: RunLog = Depends(get_run_log),
):
    """Most recent runs first, with the state each one reached."""
    return RunListResponse(
        runs=await runs.recent(limit),
        fetched_at=datetime.now(timezone.utc),
    )


# ── Archiving ──────────────────────────────────────────────────────────────────

@router.post("/archive", response_model=ArchiveResponse)
async def archive_intake(
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
):
    """Move synced intake rows older than ARCHIVE_AFTER_DAYS to the archive."""
    booked_before = date.today() - timedelta(days=settings.ARCHIVE_AFTER_DAYS)
    moved = await engine.archive(booked_before)
    return ArchiveResponse(archived=moved, booked_before=booked_before)
