"""
tasks/ledger_tasks.py
Celery tasks for the booking ledger: periodic reconciliation, nightly
intake archiving and operator alerts.

Each task drives the async services through asyncio.run() with its own
NullPool session and Redis client, both torn down before it returns.

Usage from a route:
    from tasks.ledger_tasks import reconcile_ledger
    reconcile_ledger.delay(full_refresh=True)
"""

import asyncio
import logging
from datetime import date, timedelta

import redis.asyncio as aioredis
import resend

from config.database import task_session
from config.redis_client import RedisCache
from config.settings import settings
from services.ledger.storage import SqlIntakeLog, SqlLedgerStorage, SqlRunLog
from services.reconciliation.engine import ReconciliationEngine
from shared.errors import LedgerError, ReconciliationAborted, ReconciliationBusy
from shared.utils.metrics import RECONCILIATION_RUNS
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


# ── Async bodies ───────────────────────────────────────────────────────────────

async def _with_engine(action):
    client = aioredis.from_url(settings.REDIS_URL, encoding="utf-8", decode_responses=True)
    try:
        async with task_session() as session:
            engine = ReconciliationEngine(
                ledger=SqlLedgerStorage(session),
                intake=SqlIntakeLog(session),
                runs=SqlRunLog(session),
                cache=RedisCache(client),
            )
            return await action(engine)
    finally:
        await client.aclose()


async def _reconcile(full_refresh: bool) -> dict:
    run = await _with_engine(lambda engine: engine.run(full_refresh=full_refresh))
    return run.model_dump(mode="json")


async def _archive(booked_before: date) -> int:
    return await _with_engine(lambda engine: engine.archive(booked_before))


# ── Tasks ──────────────────────────────────────────────────────────────────────

@celery_app.task(bind=True, max_retries=5, default_retry_delay=60)
def reconcile_ledger(self, full_refresh: bool = False):
    """
    Beat task: runs every RECONCILE_INTERVAL_SECONDS.
    A busy run lock is retried after 60s. An aborted run leaves every intake
    row unsynced, alerts the operator and is retried with back-off, as is a
    run that could not start because storage or the lock service is down.
    """
    try:
        result = asyncio.run(_reconcile(full_refresh))
    except ReconciliationBusy as e:
        RECONCILIATION_RUNS.labels(state="BUSY").inc()
        raise self.retry(exc=e, countdown=60)
    except ReconciliationAborted as e:
        RECONCILIATION_RUNS.labels(state="ABORTED").inc()
        logger.error(f"reconcile_ledger aborted in {e.state}: {e}")
        send_admin_alert.delay(
            subject=f"Ledger reconciliation aborted in {e.state}",
            body=(
                f"<p>A reconciliation run aborted in state <b>{e.state}</b>.</p>"
                f"<p>{e}</p>"
                "<p>No intake rows were marked synced; the run will be retried.</p>"
            ),
        )
        raise self.retry(exc=e, countdown=120 * (2 ** self.request.retries))
    except LedgerError as e:
        RECONCILIATION_RUNS.labels(state="UNAVAILABLE").inc()
        logger.error(f"reconcile_ledger could not run: {e.kind}: {e}")
        if self.request.retries >= self.max_retries:
            send_admin_alert.delay(
                subject="Ledger reconciliation cannot run",
                body=f"<p>Reconciliation failed to start after {self.max_retries} retries.</p><p>{e}</p>",
            )
        raise self.retry(exc=e, countdown=120 * (2 ** self.request.retries))

    RECONCILIATION_RUNS.labels(state=result["state"]).inc()
    logger.info(
        f"reconcile_ledger: {result['state']} collected={result['collected']} "
        f"synced={result['marked_synced']} shards={result['shards_written']}"
    )
    return result


@celery_app.task(bind=True, max_retries=3, default_retry_delay=300)
def archive_intake(self):
    """
    Beat task: runs nightly.
    Archives synced intake rows booked more than ARCHIVE_AFTER_DAYS ago.
    """
    booked_before = date.today() - timedelta(days=settings.ARCHIVE_AFTER_DAYS)
    try:
        moved = asyncio.run(_archive(booked_before))
    except ReconciliationBusy as e:
        raise self.retry(exc=e, countdown=60)
    except LedgerError as e:
        logger.error(f"archive_intake failed: {e.kind}: {e}")
        raise self.retry(exc=e, countdown=300 * (2 ** self.request.retries))
    logger.info(f"archive_intake: archived {moved} rows booked before {booked_before}")
    return moved


@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def send_admin_alert(self, subject: str, body: str) -> bool:
    """
    E-mail the operator through Resend. Delivery failures are retried and
    finally logged, never raised.
    """
    if not settings.RESEND_API_KEY or not settings.ADMIN_EMAIL:
        logger.warning(f"Admin alert not sent (Resend or ADMIN_EMAIL not configured): {subject}")
        return False

    try:
        resend.api_key = settings.RESEND_API_KEY
        resend.Emails.send({
            "from": settings.EMAIL_FROM,
            "to": settings.ADMIN_EMAIL,
            "subject": subject,
            "html": body,
        })
        return True
    except Exception as e:
        if self.request.retries >= self.max_retries:
            logger.error(f"Admin alert delivery failed after retries: {subject}: {e}")
            return False
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))
