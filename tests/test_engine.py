"""
tests/test_engine.py
Reconciliation runs against in-memory storage: sync bookkeeping, aborts and
retries, the run-wide lock, idempotence and shard capacity management.
"""

from datetime import date

import pytest

from config.redis_client import RECONCILE_LOCK, snapshot_key
from config.settings import settings
from services.reconciliation.engine import ReconciliationEngine
from shared.errors import ReconciliationAborted, ReconciliationBusy, StorageUnavailable
from shared.models.columns import HEADER_LABELS
from tests.conftest import record
from tests.fakes import InMemoryIntakeLog, InMemoryLedgerStorage, InMemoryRunLog

EARLY_JUNE = "Jun 1 - 15, 2025"
LATE_JUNE = "Jun 16 - 30, 2025"


async def book_mixed(intake: InMemoryIntakeLog):
    rows = [
        record(client_name="Ana", reference_code="R-GRP01"),
        record(client_name="Bea", reference_code="R-GRP01", submission_type="Joiner"),
        record(client_name="Cy", time="11:30 AM", status="Done", reference_code="R-DONE1"),
        record(client_name="Sam", branch="SP", status="Cancelled", reference_code="R-CAN01"),
        record(client_name="Tia", date="2025-06-11", status="Done", session="2nd", reference_code="R-DONE2"),
        record(client_name="Uma", branch="LP", date="2025-06-20", reference_code="R-LATE1"),
        record(client_name="Vic", date="tbd", reference_code="R-NODT1"),
    ]
    return [await intake.append(r) for r in rows]


def mark_all_unsynced(intake: InMemoryIntakeLog):
    for entry_id, entry in list(intake.entries.items()):
        intake.entries[entry_id] = entry.model_copy(update={"synced": False})


def snapshot_all(ledger: InMemoryLedgerStorage):
    return {name: ledger.snapshot(name) for name in ledger.rows if name != ledger.template_name}


# ── Happy path ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_run_writes_shards_and_marks_rows_synced(
    engine: ReconciliationEngine,
    intake: InMemoryIntakeLog,
    ledger: InMemoryLedgerStorage,
    runs: InMemoryRunLog,
):
    await book_mixed(intake)

    run = await engine.run()

    assert run.state == "COMPLETE"
    assert run.collected == 7
    assert run.marked_synced == 7
    assert sorted(run.shards_written) == sorted([EARLY_JUNE, LATE_JUNE, "Unsorted"])
    assert all(e.synced for e in intake.entries.values())
    assert runs.runs[-1].state == "COMPLETE"

    lines = await ledger.read_lines(EARLY_JUNE)
    assert [(line.kind, line.record.client_name) for line in lines] == [
        ("date_header", ""),
        ("record", "Ana"),
        ("record", "Bea"),
        ("record", "Cy"),
        ("divider", ""),
        ("record", "Sam"),
        ("date_header", ""),
        ("record", "Tia"),
    ]
    assert lines[3].record.reference_code == "1"
    assert [r.client_name for r in await ledger.read_rows(LATE_JUNE)] == ["Uma"]
    assert [r.client_name for r in await ledger.read_rows("Unsorted")] == ["Vic"]


@pytest.mark.asyncio
async def test_new_shard_copies_template_header_and_validation(
    engine: ReconciliationEngine,
    intake: InMemoryIntakeLog,
    ledger: InMemoryLedgerStorage,
):
    await intake.append(record())
    await engine.run()

    template = await ledger.get_shard(ledger.template_name)
    shard = await ledger.get_shard(EARLY_JUNE)
    assert shard.header == template.header
    assert shard.validation == template.validation
    assert shard.validation["status"]
    assert shard.is_template is False


@pytest.mark.asyncio
async def test_nothing_to_sync_is_a_no_op(
    engine: ReconciliationEngine,
    ledger: InMemoryLedgerStorage,
):
    run = await engine.run()
    assert run.state == "COMPLETE"
    assert run.collected == 0
    assert run.shards_written == []
    assert ledger.write_count == 0


@pytest.mark.asyncio
async def test_commit_invalidates_availability_snapshots(
    engine: ReconciliationEngine,
    intake: InMemoryIntakeLog,
    fake_redis,
):
    fake_redis.store[snapshot_key(EARLY_JUNE)] = "[]"
    await intake.append(record())
    await engine.run()
    assert snapshot_key(EARLY_JUNE) not in fake_redis.store


# ── Idempotence ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_reprocessing_the_same_intake_is_byte_identical(
    engine: ReconciliationEngine,
    intake: InMemoryIntakeLog,
    ledger: InMemoryLedgerStorage,
):
    await book_mixed(intake)
    await engine.run()
    first = snapshot_all(ledger)

    mark_all_unsynced(intake)
    await engine.run()
    assert snapshot_all(ledger) == first


@pytest.mark.asyncio
async def test_full_refresh_is_byte_identical(
    engine: ReconciliationEngine,
    intake: InMemoryIntakeLog,
    ledger: InMemoryLedgerStorage,
):
    await book_mixed(intake)
    await engine.run()
    first = snapshot_all(ledger)

    run = await engine.run(full_refresh=True)
    assert run.full_refresh is True
    assert sorted(run.shards_written) == sorted(first)
    assert snapshot_all(ledger) == first


@pytest.mark.asyncio
async def test_group_siblings_sharing_a_name_both_land(
    engine: ReconciliationEngine,
    intake: InMemoryIntakeLog,
    ledger: InMemoryLedgerStorage,
):
    await intake.append(record(reference_code="R-GRP01"))
    await intake.append(record(reference_code="R-GRP01", services="Brow Lamination", submission_type="Joiner"))

    await engine.run()

    rows = await ledger.read_rows(EARLY_JUNE)
    assert [(r.services, r.submission_type) for r in rows] == [
        ("Lash Lift", "New Appointment"),
        ("Brow Lamination", "Joiner"),
    ]


@pytest.mark.asyncio
async def test_full_refresh_keeps_same_name_done_bookings(
    engine: ReconciliationEngine,
    intake: InMemoryIntakeLog,
    ledger: InMemoryLedgerStorage,
):
    await intake.append(record(status="Done", reference_code="R-AAA01"))
    await intake.append(record(status="Done", services="Brow Lamination", reference_code="R-BBB02"))
    await engine.run()
    first = ledger.snapshot(EARLY_JUNE)
    assert len(await ledger.read_rows(EARLY_JUNE)) == 2

    await engine.run(full_refresh=True)
    assert ledger.snapshot(EARLY_JUNE) == first

    # Reprocessing one of them leaves the other's rendered row alone
    entry_id = next(i for i, e in intake.entries.items() if e.record.reference_code == "R-BBB02")
    intake.entries[entry_id] = intake.entries[entry_id].model_copy(update={"synced": False})
    await engine.run()
    assert ledger.snapshot(EARLY_JUNE) == first


@pytest.mark.asyncio
async def test_full_refresh_sorts_manually_entered_rows(
    engine: ReconciliationEngine,
    ledger: InMemoryLedgerStorage,
):
    await ledger.seed(EARLY_JUNE, [
        record(client_name="Late", time="1:00 PM", reference_code="R-LATE1"),
        record(client_name="Early", reference_code="R-EARL1"),
    ])

    await engine.run(full_refresh=True)

    lines = await ledger.read_lines(EARLY_JUNE)
    assert [line.kind for line in lines] == ["date_header", "record", "record"]
    assert [line.record.client_name for line in lines[1:]] == ["Early", "Late"]


# ── Updates flowing through ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_rescheduled_row_moves_between_shards(
    engine: ReconciliationEngine,
    intake: InMemoryIntakeLog,
    ledger: InMemoryLedgerStorage,
):
    entry = await intake.append(record(reference_code="R-MOVE1"))
    await engine.run()

    await intake.update(entry.id, entry.record.model_copy(update={"date": "2025-06-20"}))
    await engine.run()

    assert await ledger.read_rows(EARLY_JUNE) == []
    assert await ledger.read_lines(EARLY_JUNE) == []
    assert [r.reference_code for r in await ledger.read_rows(LATE_JUNE)] == ["R-MOVE1"]


@pytest.mark.asyncio
async def test_cancelled_group_replaces_its_rows(
    engine: ReconciliationEngine,
    intake: InMemoryIntakeLog,
    ledger: InMemoryLedgerStorage,
):
    await intake.append(record(client_name="Ana", reference_code="R-GRP01"))
    await intake.append(record(client_name="Bea", reference_code="R-GRP01", submission_type="Joiner"))
    await engine.run()

    await intake.update_status("R-GRP01", "Cancelled")
    await engine.run()

    lines = [line for line in await ledger.read_lines(EARLY_JUNE) if line.kind == "record"]
    assert [(line.record.client_name, line.record.status, line.style) for line in lines] == [
        ("Ana", "Cancelled", "cancelled"),
        ("Bea", "Cancelled", "cancelled"),
    ]


@pytest.mark.asyncio
async def test_joiner_pulls_its_whole_group_back_in(
    engine: ReconciliationEngine,
    intake: InMemoryIntakeLog,
    ledger: InMemoryLedgerStorage,
):
    await intake.append(record(client_name="Ana", reference_code="R-GRP01"))
    await engine.run()

    await intake.append(record(client_name="Bea", reference_code="R-GRP01", submission_type="Joiner"))
    await engine.run()

    lines = [line for line in await ledger.read_lines(EARLY_JUNE) if line.kind == "record"]
    assert [(line.record.client_name, line.style) for line in lines] == [
        ("Ana", "group_0"),
        ("Bea", "group_0"),
    ]


# ── Aborts and locking ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_commit_failure_aborts_without_marking_synced(
    engine: ReconciliationEngine,
    intake: InMemoryIntakeLog,
    ledger: InMemoryLedgerStorage,
    runs: InMemoryRunLog,
):
    await book_mixed(intake)
    ledger.fail_writes = {LATE_JUNE}

    with pytest.raises(ReconciliationAborted) as exc:
        await engine.run()

    assert exc.value.state == "COMMIT"
    assert not any(e.synced for e in intake.entries.values())
    assert runs.runs[-1].state == "ABORTED"
    assert runs.runs[-1].error.startswith("COMMIT: StorageUnavailable")
    assert runs.runs[-1].finished_at is not None

    # The retry completes and lands on the same content as a clean run
    ledger.fail_writes = set()
    run = await engine.run()
    assert run.state == "COMPLETE"
    assert all(e.synced for e in intake.entries.values())

    clean_ledger = InMemoryLedgerStorage()
    await clean_ledger.ensure_template(HEADER_LABELS, {})
    clean_intake = InMemoryIntakeLog()
    await book_mixed(clean_intake)
    clean = ReconciliationEngine(clean_ledger, clean_intake, InMemoryRunLog(), engine.cache, today=engine.today)
    await clean.run()
    assert ledger.snapshot(EARLY_JUNE) == clean_ledger.snapshot(EARLY_JUNE)


@pytest.mark.asyncio
async def test_read_failure_aborts_in_purge(
    engine: ReconciliationEngine,
    intake: InMemoryIntakeLog,
    ledger: InMemoryLedgerStorage,
):
    await intake.append(record())
    await engine.run()
    await intake.append(record(client_name="Bea", reference_code="R-BEA01"))
    ledger.fail_reads = True

    with pytest.raises(ReconciliationAborted) as exc:
        await engine.run()
    assert exc.value.state == "PURGE"


@pytest.mark.asyncio
async def test_held_run_lock_makes_run_busy(
    engine: ReconciliationEngine,
    intake: InMemoryIntakeLog,
    runs: InMemoryRunLog,
    fake_redis,
):
    await intake.append(record())
    fake_redis.store[RECONCILE_LOCK] = "other-run"

    with pytest.raises(ReconciliationBusy):
        await engine.run()
    assert runs.runs == []
    assert not any(e.synced for e in intake.entries.values())


@pytest.mark.asyncio
async def test_run_lock_is_released(engine: ReconciliationEngine, intake: InMemoryIntakeLog, ledger, fake_redis):
    await intake.append(record())
    await engine.run()
    assert RECONCILE_LOCK not in fake_redis.store

    ledger.fail_writes = {EARLY_JUNE}
    await intake.append(record(client_name="Bea", reference_code="R-BEA01"))
    with pytest.raises(ReconciliationAborted):
        await engine.run()
    assert RECONCILE_LOCK not in fake_redis.store


@pytest.mark.asyncio
async def test_lock_service_outage_is_storage_unavailable(
    engine: ReconciliationEngine,
    intake: InMemoryIntakeLog,
    runs: InMemoryRunLog,
    fake_redis,
):
    await intake.append(record())
    fake_redis.down = True

    with pytest.raises(StorageUnavailable):
        await engine.run()
    with pytest.raises(StorageUnavailable):
        await engine.archive(date(2025, 6, 1))
    assert runs.runs == []
    assert not any(e.synced for e in intake.entries.values())


@pytest.mark.asyncio
async def test_run_log_outage_fails_before_any_work(
    engine: ReconciliationEngine,
    intake: InMemoryIntakeLog,
    ledger: InMemoryLedgerStorage,
    runs: InMemoryRunLog,
    fake_redis,
):
    await intake.append(record())
    runs.fail = True

    with pytest.raises(StorageUnavailable):
        await engine.run()
    assert ledger.write_count == 0
    assert RECONCILE_LOCK not in fake_redis.store


@pytest.mark.asyncio
async def test_row_changed_during_run_stays_unsynced(
    engine: ReconciliationEngine,
    intake: InMemoryIntakeLog,
    ledger: InMemoryLedgerStorage,
    monkeypatch,
):
    entries = await book_mixed(intake)
    edited = entries[0]
    write_lines = ledger.write_lines

    async def write_then_edit(name, lines, clear_through):
        await write_lines(name, lines, clear_through)
        if intake.entries[edited.id].revision == edited.revision:
            await intake.update(edited.id, edited.record.model_copy(update={"remarks": "edited"}))

    monkeypatch.setattr(ledger, "write_lines", write_then_edit)
    run = await engine.run()

    assert run.marked_synced == len(entries) - 1
    assert intake.entries[edited.id].synced is False

    monkeypatch.setattr(ledger, "write_lines", write_lines)
    follow_up = await engine.run()
    assert follow_up.collected == 1
    assert intake.entries[edited.id].synced is True
    remarks = [r.remarks for r in await ledger.read_rows(EARLY_JUNE) if r.client_name == "Ana"]
    assert remarks == ["edited"]


# ── Capacity ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_capacity_grows_with_template_layout(
    engine: ReconciliationEngine,
    intake: InMemoryIntakeLog,
    ledger: InMemoryLedgerStorage,
):
    layout = {"row_height": 30, "wrap": ["remarks"]}
    ledger.rows[ledger.template_name][0]["layout"] = dict(layout)
    for i in range(80):
        await intake.append(record(client_name=f"Client {i:02d}", reference_code=f"R-C{i:04d}"))

    await engine.run()

    shard = await ledger.get_shard(EARLY_JUNE)
    needed = 81 + settings.LEDGER_BUFFER_ROWS
    assert shard.capacity == needed
    assert shard.used_rows == 81
    assert all(row["layout"] == layout for row in ledger.rows[EARLY_JUNE])


@pytest.mark.asyncio
async def test_oversized_small_shard_is_trimmed(
    engine: ReconciliationEngine,
    intake: InMemoryIntakeLog,
    ledger: InMemoryLedgerStorage,
):
    await ledger.seed(EARLY_JUNE, [])
    await ledger.extend_capacity(EARLY_JUNE, 600)
    await intake.append(record())

    await engine.run()

    shard = await ledger.get_shard(EARLY_JUNE)
    assert shard.capacity == 2 + settings.LEDGER_BUFFER_ROWS
    assert shard.used_rows == 2


@pytest.mark.asyncio
async def test_large_shard_is_never_trimmed(
    engine: ReconciliationEngine,
    intake: InMemoryIntakeLog,
    ledger: InMemoryLedgerStorage,
):
    await ledger.seed(EARLY_JUNE, [])
    await ledger.extend_capacity(EARLY_JUNE, 1100)
    await intake.append(record())

    await engine.run()

    assert (await ledger.get_shard(EARLY_JUNE)).capacity == 1200


@pytest.mark.asyncio
async def test_commit_clears_rows_that_held_old_content(
    engine: ReconciliationEngine,
    ledger: InMemoryLedgerStorage,
):
    await ledger.seed(EARLY_JUNE, [
        record(client_name=f"Old {i:02d}", reference_code=f"R-O{i:04d}") for i in range(90)
    ])

    await engine.commit_shard(EARLY_JUNE, [])

    assert await ledger.read_lines(EARLY_JUNE) == []
    assert (await ledger.get_shard(EARLY_JUNE)).used_rows == 0


# ── Archiving ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_archive_moves_only_synced_past_rows(
    engine: ReconciliationEngine,
    intake: InMemoryIntakeLog,
    fake_redis,
):
    await intake.append(record(reference_code="R-PAST1"))
    await intake.append(record(date="2025-06-20", reference_code="R-NEXT1"))
    await engine.run()
    await intake.append(record(date="2025-06-05", client_name="Fresh", reference_code="R-FRSH1"))

    moved = await engine.archive(date(2025, 6, 15))

    assert moved == 1
    assert [e.record.reference_code for e in intake.archived] == ["R-PAST1"]
    assert {e.record.reference_code for e in intake.entries.values()} == {"R-NEXT1", "R-FRSH1"}

    fake_redis.store[RECONCILE_LOCK] = "other-run"
    with pytest.raises(ReconciliationBusy):
        await engine.archive(date(2025, 6, 15))
