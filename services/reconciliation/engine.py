"""
services/reconciliation/engine.py
Reconciliation run: sweeps unsynced intake rows into the fortnight shards.

States: COLLECT → GROUP → PURGE → DISTRIBUTE → DEDUP → SORT → RENDER
        → COMMIT → MARK_SYNCED → COMPLETE | ABORTED

Runs are serialized by the run-wide Redis lock, which admission also waits
on. Intake rows are only marked synced once every shard commit succeeded,
and only if their revision did not move during the run.
"""

import logging
from collections import OrderedDict
from datetime import date, datetime, timezone
from typing import Dict, List, Optional

from redis.exceptions import RedisError

from config.redis_client import RECONCILE_LOCK, LockNotAcquired, RedisCache, snapshot_key
from config.settings import settings
from services.ledger.base import IntakeLog, LedgerStorage, RunLog
from services.reconciliation import pipeline
from shared.errors import LedgerError, ReconciliationAborted, ReconciliationBusy, StorageUnavailable
from shared.models.models import RunState
from shared.schemas.records import BookingRecord, IntakeEntry, LedgerLine, RunInfo

logger = logging.getLogger(__name__)


class ReconciliationEngine:

    def __init__(
        self,
        ledger: LedgerStorage,
        intake: IntakeLog,
        runs: RunLog,
        cache: RedisCache,
        today: Optional[date] = None,
    ):
        self.ledger = ledger
        self.intake = intake
        self.runs = runs
        self.cache = cache
        self.today = today

    @property
    def default_year(self) -> int:
        return (self.today or date.today()).year

    async def run(self, full_refresh: bool = False) -> RunInfo:
        """
        Execute one run under the run-wide lock. Raises ReconciliationBusy if
        another run holds it, ReconciliationAborted if any stage fails and
        StorageUnavailable if the lock service or the run log is down.
        """
        try:
            async with self.cache.hold(RECONCILE_LOCK, ttl=settings.RECONCILE_LOCK_TTL):
                return await self._run_locked(full_refresh)
        except LockNotAcquired as e:
            logger.info("Reconciliation skipped: another run holds the lock")
            raise ReconciliationBusy("Another reconciliation run is in progress") from e
        except (RedisError, OSError) as e:
            raise StorageUnavailable(f"Lock service unavailable: {e}") from e

    async def _run_locked(self, full_refresh: bool) -> RunInfo:
        run = await self.runs.start(full_refresh)
        logger.info(f"Reconciliation {run.id} started (full_refresh={full_refresh})")
        try:
            await self._execute(run, full_refresh)
        except Exception as e:
            failed_state = run.state
            await self._abort(run, e)
            raise ReconciliationAborted(f"Aborted in {failed_state}: {e}", state=failed_state) from e

        run.state = RunState.COMPLETE.value
        run.finished_at = datetime.now(timezone.utc)
        await self.runs.finish(run)
        logger.info(
            f"Reconciliation {run.id} complete: collected={run.collected} "
            f"shards={run.shards_written} synced={run.marked_synced}"
        )
        return run

    async def _abort(self, run: RunInfo, error: Exception) -> None:
        logger.error(f"Reconciliation {run.id} aborted in {run.state}: {error}", exc_info=True)
        run.error = f"{run.state}: {type(error).__name__}: {error}"
        run.state = RunState.ABORTED.value
        run.finished_at = datetime.now(timezone.utc)
        try:
            await self.runs.finish(run)
        except LedgerError as log_error:
            logger.error(f"Could not record aborted run {run.id}: {log_error}")

    async def _execute(self, run: RunInfo, full_refresh: bool) -> None:
        year = self.default_year

        # ── COLLECT ──
        run.state = RunState.COLLECT.value
        unsynced = await self.intake.list_unsynced()
        run.collected = len(unsynced)
        if not unsynced and not full_refresh:
            logger.info(f"Reconciliation {run.id}: nothing to sync")
            return

        # ── GROUP ──
        # A reprocessed group is purged everywhere, so all its siblings are reinserted
        run.state = RunState.GROUP.value
        grouped = pipeline.group_entries(unsynced)
        processed: "OrderedDict[int, IntakeEntry]" = OrderedDict()
        for code, members in grouped.groups.items():
            for entry in members + await self.intake.find_by_reference(code):
                processed.setdefault(entry.id, entry)
        for entry in grouped.manual:
            processed.setdefault(entry.id, entry)
        incoming: List[BookingRecord] = [e.record for e in processed.values()]

        # ── PURGE ──
        run.state = RunState.PURGE.value
        shards = {s.name: s for s in await self.ledger.list_shards()}
        contents: Dict[str, List[BookingRecord]] = {}
        dirty = set(shards) if full_refresh else set()
        for name in shards:
            rows = await self.ledger.read_rows(name)
            kept = pipeline.purge_groups(rows, grouped.codes, incoming, year)
            if len(kept) != len(rows):
                dirty.add(name)
            contents[name] = kept

        # ── DISTRIBUTE ──
        run.state = RunState.DISTRIBUTE.value
        for name, records in pipeline.distribute(incoming, self.today).items():
            if name not in shards:
                shards[name] = await self.ledger.create_shard(name)
                contents[name] = []
            contents[name].extend(records)
            dirty.add(name)

        # ── DEDUP / SORT / RENDER ──
        rendered: Dict[str, List[LedgerLine]] = {}
        for name in sorted(dirty):
            run.state = RunState.DEDUP.value
            unique = pipeline.dedup_rows(contents[name], year)
            run.state = RunState.SORT.value
            ordered = pipeline.sort_rows(unique, year)
            run.state = RunState.RENDER.value
            rendered[name] = pipeline.render_shard(ordered, year)

        # ── COMMIT ──
        run.state = RunState.COMMIT.value
        for name, lines in rendered.items():
            await self.commit_shard(name, lines)
            run.shards_written.append(name)
        await self.cache.delete(*(snapshot_key(name) for name in rendered))

        # ── MARK_SYNCED ──
        run.state = RunState.MARK_SYNCED.value
        revisions = {entry.id: entry.revision for entry in processed.values() if not entry.synced}
        run.marked_synced = await self.intake.mark_synced(revisions)
        if run.marked_synced < len(revisions):
            logger.info(
                f"Reconciliation {run.id}: {len(revisions) - run.marked_synced} rows "
                f"changed during the run and stay unsynced"
            )

    async def commit_shard(self, name: str, lines: List[LedgerLine]) -> None:
        """
        Write a rendered shard. Capacity grows to content + buffer before the
        write; afterwards it is trimmed only when a small shard is far
        oversized, and never below the rows holding content.
        """
        shard = await self.ledger.get_shard(name)
        if shard is None:
            shard = await self.ledger.create_shard(name)

        needed = len(lines) + settings.LEDGER_BUFFER_ROWS
        capacity = shard.capacity
        if capacity < needed:
            capacity = await self.ledger.extend_capacity(name, needed - capacity)

        clear_through = min(capacity, max(needed, shard.used_rows))
        await self.ledger.write_lines(name, lines, clear_through)

        excess = capacity - needed
        if capacity < settings.LEDGER_TRIM_CEILING and excess > settings.LEDGER_TRIM_EXCESS:
            await self.ledger.trim_capacity(name, needed)
        logger.debug(f"Committed {len(lines)} lines to shard {name!r} (capacity {capacity})")

    async def archive(self, booked_before: date) -> int:
        """
        Move synced intake rows booked before `booked_before` to the archive,
        under the run-wide lock so no run sees a half-archived group.
        """
        try:
            async with self.cache.hold(RECONCILE_LOCK, ttl=settings.RECONCILE_LOCK_TTL):
                moved = await self.intake.archive(booked_before)
        except LockNotAcquired as e:
            raise ReconciliationBusy("A reconciliation run is in progress") from e
        except (RedisError, OSError) as e:
            raise StorageUnavailable(f"Lock service unavailable: {e}") from e
        logger.info(f"Archived {moved} intake rows booked before {booked_before}")
        return moved
