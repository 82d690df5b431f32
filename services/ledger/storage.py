"""
services/ledger/storage.py
Async SQLAlchemy implementations of the ledger, intake log and run log
capabilities, plus the template shard bootstrap run at startup.

Every mutating call commits its own transaction: the admission controller
must see its single-row write durable before it releases the shard lock, and
the reconciliation engine commits shard by shard.
"""

import functools
import logging
from datetime import date, datetime, timezone
from typing import Dict, List, Optional

from fastapi import Depends
from sqlalchemy import case, delete, func, insert, or_, select, tuple_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.ledger.base import IntakeLog, LedgerStorage, RunLog
from shared.errors import StorageUnavailable
from shared.models.columns import FIELD_NAMES, HEADER_LABELS, build_column_map
from shared.models.models import (
    AfterCare,
    BookingStatus,
    IntakeArchive,
    IntakeRow,
    LedgerRow,
    LedgerShard,
    LineKind,
    PaymentMethod,
    ReconciliationRun,
    SessionType,
    SubmissionType,
)
from shared.schemas.records import (
    BookingRecord,
    IntakeEntry,
    LedgerLine,
    RunInfo,
    ShardInfo,
)
from shared.utils.normalize import normalize_phone, parse_booking_date

logger = logging.getLogger(__name__)

# Per-row structural metadata of the template row
TEMPLATE_ROW_LAYOUT = {"row_height": 21, "wrap": ["services", "remarks"]}


def default_validation() -> Dict[str, List[str]]:
    """Dropdown rules of the template shard, by field."""
    return {
        "status": [s.value for s in BookingStatus],
        "session": [s.value for s in SessionType],
        "after_care": [a.value for a in AfterCare],
        "payment_method": [p.value for p in PaymentMethod],
        "submission_type": [t.value for t in SubmissionType],
    }


def storage_call(func_):
    """Roll back and surface driver / ORM failures as StorageUnavailable."""
    @functools.wraps(func_)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func_(self, *args, **kwargs)
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"{type(self).__name__}.{func_.__name__} failed: {e}")
            raise StorageUnavailable(str(e)) from e
    return wrapper


def _entry(row: IntakeRow) -> IntakeEntry:
    return IntakeEntry(
        id=row.id,
        revision=row.revision,
        synced=row.synced,
        created_at=row.created_at,
        record=BookingRecord.from_orm_row(row),
    )


def _blank_columns() -> Dict[str, str]:
    return {field: "" for field in FIELD_NAMES}


# ── Ledger Storage ────────────────────────────────────────────

class SqlLedgerStorage(LedgerStorage):

    def __init__(self, session: AsyncSession, template_name: str = settings.LEDGER_TEMPLATE_SHARD):
        self.session = session
        self.template_name = template_name

    async def _shard(self, name: str) -> Optional[LedgerShard]:
        result = await self.session.execute(select(LedgerShard).where(LedgerShard.name == name))
        return result.scalar_one_or_none()

    async def _require_shard(self, name: str) -> LedgerShard:
        shard = await self._shard(name)
        if shard is None:
            raise StorageUnavailable(f"Ledger shard {name!r} does not exist")
        return shard

    async def _stats(self, shard_ids: List) -> Dict:
        """shard_id -> (capacity, used rows)"""
        if not shard_ids:
            return {}
        used = func.max(case((LedgerRow.kind.is_not(None), LedgerRow.position + 1), else_=0))
        result = await self.session.execute(
            select(LedgerRow.shard_id, func.count(LedgerRow.id), used)
            .where(LedgerRow.shard_id.in_(shard_ids))
            .group_by(LedgerRow.shard_id)
        )
        return {shard_id: (capacity, used_rows) for shard_id, capacity, used_rows in result.all()}

    def _info(self, shard: LedgerShard, stats: Dict) -> ShardInfo:
        capacity, used_rows = stats.get(shard.id, (0, 0))
        return ShardInfo(
            name=shard.name,
            capacity=capacity,
            used_rows=used_rows,
            header=list(shard.header or []),
            validation=dict(shard.validation or {}),
            is_template=shard.is_template,
        )

    async def _template_layout(self) -> dict:
        result = await self.session.execute(
            select(LedgerRow.layout)
            .join(LedgerShard, LedgerShard.id == LedgerRow.shard_id)
            .where(LedgerShard.is_template.is_(True))
            .order_by(LedgerRow.position)
            .limit(1)
        )
        layout = result.scalar_one_or_none()
        return dict(layout) if layout is not None else dict(TEMPLATE_ROW_LAYOUT)

    async def _provision(self, shard: LedgerShard, start: int, count: int) -> None:
        if count <= 0:
            return
        layout = await self._template_layout()
        await self.session.execute(
            insert(LedgerRow),
            [
                {"shard_id": shard.id, "position": position, "layout": layout, **_blank_columns()}
                for position in range(start, start + count)
            ],
        )

    @storage_call
    async def list_shards(self) -> List[ShardInfo]:
        result = await self.session.execute(
            select(LedgerShard)
            .where(LedgerShard.is_template.is_(False))
            .order_by(LedgerShard.created_at, LedgerShard.name)
        )
        shards = result.scalars().all()
        stats = await self._stats([s.id for s in shards])
        return [self._info(s, stats) for s in shards]

    @storage_call
    async def get_shard(self, name: str) -> Optional[ShardInfo]:
        shard = await self._shard(name)
        if shard is None:
            return None
        return self._info(shard, await self._stats([shard.id]))

    @storage_call
    async def ensure_template(self, header: List[str], validation: Dict[str, List[str]]) -> ShardInfo:
        shard = await self._shard(self.template_name)
        if shard is None:
            shard = LedgerShard(
                name=self.template_name,
                header=list(header),
                validation=validation,
                is_template=True,
            )
            self.session.add(shard)
            await self.session.flush()
            self.session.add(LedgerRow(
                shard_id=shard.id, position=0, layout=dict(TEMPLATE_ROW_LAYOUT), **_blank_columns()
            ))
            await self.session.commit()
            logger.info(f"Created template shard {self.template_name!r}")
        return self._info(shard, await self._stats([shard.id]))

    @storage_call
    async def create_shard(self, name: str) -> ShardInfo:
        template = await self._require_shard(self.template_name)
        shard = LedgerShard(
            name=name,
            header=list(template.header or []),
            validation=dict(template.validation or {}),
            is_template=False,
        )
        self.session.add(shard)
        await self.session.flush()
        await self._provision(shard, 0, settings.LEDGER_INITIAL_ROWS)
        await self.session.commit()
        logger.info(f"Created ledger shard {name!r} with {settings.LEDGER_INITIAL_ROWS} rows")
        return self._info(shard, await self._stats([shard.id]))

    async def _content_rows(self, name: str) -> List[LedgerRow]:
        result = await self.session.execute(
            select(LedgerRow)
            .join(LedgerShard, LedgerShard.id == LedgerRow.shard_id)
            .where(LedgerShard.name == name, LedgerRow.kind.is_not(None))
            .order_by(LedgerRow.position)
        )
        return list(result.scalars().all())

    @storage_call
    async def read_rows(self, name: str) -> List[BookingRecord]:
        records = []
        for row in await self._content_rows(name):
            if row.kind != LineKind.RECORD.value:
                continue
            record = BookingRecord.from_orm_row(row)
            if not record.is_blank:
                records.append(record)
        return records

    @storage_call
    async def read_lines(self, name: str) -> List[LedgerLine]:
        return [
            LedgerLine(kind=row.kind, record=BookingRecord.from_orm_row(row), style=row.style or "default")
            for row in await self._content_rows(name)
        ]

    @storage_call
    async def extend_capacity(self, name: str, rows: int) -> int:
        shard = await self._require_shard(name)
        capacity, _ = (await self._stats([shard.id])).get(shard.id, (0, 0))
        await self._provision(shard, capacity, rows)
        await self.session.commit()
        logger.info(f"Extended shard {name!r} by {rows} rows")
        return capacity + max(rows, 0)

    @storage_call
    async def trim_capacity(self, name: str, keep: int) -> int:
        shard = await self._require_shard(name)
        capacity, used_rows = (await self._stats([shard.id])).get(shard.id, (0, 0))
        keep = max(keep, used_rows)
        if keep >= capacity:
            return capacity
        await self.session.execute(
            delete(LedgerRow).where(LedgerRow.shard_id == shard.id, LedgerRow.position >= keep)
        )
        await self.session.commit()
        logger.info(f"Trimmed shard {name!r} from {capacity} to {keep} rows")
        return keep

    @storage_call
    async def write_lines(self, name: str, lines: List[LedgerLine], clear_through: int) -> None:
        shard = await self._require_shard(name)
        upper = max(len(lines), clear_through)
        result = await self.session.execute(
            select(LedgerRow)
            .where(LedgerRow.shard_id == shard.id, LedgerRow.position < upper)
            .order_by(LedgerRow.position)
        )
        rows = {row.position: row for row in result.scalars().all()}
        if len(lines) > len(rows):
            raise StorageUnavailable(
                f"Shard {name!r} has {len(rows)} rows, {len(lines)} needed"
            )

        for position, line in enumerate(lines):
            row = rows[position]
            for field, value in line.record.to_columns().items():
                setattr(row, field, value)
            row.kind = line.kind
            row.style = line.style
        for position in range(len(lines), upper):
            row = rows.get(position)
            if row is None:
                break
            for field, value in _blank_columns().items():
                setattr(row, field, value)
            row.kind = None
            row.style = None
        await self.session.commit()


# ── Intake Log ────────────────────────────────────────────────

class SqlIntakeLog(IntakeLog):

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _live(self, *criteria) -> List[IntakeEntry]:
        result = await self.session.execute(
            select(IntakeRow).where(*criteria).order_by(IntakeRow.id)
        )
        return [_entry(row) for row in result.scalars().all()]

    @storage_call
    async def append(self, record: BookingRecord) -> IntakeEntry:
        row = IntakeRow(**record.to_columns(), synced=False, revision=1)
        self.session.add(row)
        await self.session.commit()
        await self.session.refresh(row)
        return _entry(row)

    @storage_call
    async def update(self, entry_id: int, record: BookingRecord) -> IntakeEntry:
        row = await self.session.get(IntakeRow, entry_id)
        if row is None:
            raise StorageUnavailable(f"Intake row {entry_id} vanished")
        for field, value in record.to_columns().items():
            setattr(row, field, value)
        row.revision = row.revision + 1
        row.synced = False
        await self.session.commit()
        await self.session.refresh(row)
        return _entry(row)

    @storage_call
    async def update_status(self, reference_code: str, status: str) -> int:
        result = await self.session.execute(
            update(IntakeRow)
            .where(func.upper(func.trim(IntakeRow.reference_code)) == reference_code.strip().upper())
            .values(status=status, synced=False, revision=IntakeRow.revision + 1)
        )
        await self.session.commit()
        return result.rowcount or 0

    @storage_call
    async def list_unsynced(self) -> List[IntakeEntry]:
        return await self._live(IntakeRow.synced.is_(False))

    @storage_call
    async def list_for_date(self, iso_date: str) -> List[IntakeEntry]:
        wanted = date.fromisoformat(iso_date)
        # Exact ISO match, plus legacy free-text dates resolved in Python
        candidates = await self._live(
            or_(IntakeRow.date == iso_date, ~IntakeRow.date.op("~")(r"^\d{4}-\d{2}-\d{2}$"))
        )
        return [
            e for e in candidates
            if parse_booking_date(e.record.date, wanted.year) == wanted
        ]

    @storage_call
    async def find_by_phone(self, phone: str) -> List[IntakeEntry]:
        digits = normalize_phone(phone)
        if not digits:
            return []
        candidates = await self._live(IntakeRow.phone.like(f"%{digits}"))
        return [e for e in candidates if normalize_phone(e.record.phone) == digits]

    @storage_call
    async def find_by_reference(self, reference_code: str) -> List[IntakeEntry]:
        return await self._live(
            func.upper(func.trim(IntakeRow.reference_code)) == reference_code.strip().upper()
        )

    @storage_call
    async def reference_exists(self, reference_code: str) -> bool:
        result = await self.session.execute(
            select(func.count(IntakeRow.id)).where(IntakeRow.reference_code == reference_code)
        )
        return (result.scalar() or 0) > 0

    @storage_call
    async def mark_synced(self, revisions: Dict[int, int]) -> int:
        if not revisions:
            return 0
        result = await self.session.execute(
            update(IntakeRow)
            .where(tuple_(IntakeRow.id, IntakeRow.revision).in_(list(revisions.items())))
            .values(synced=True)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount or 0

    @storage_call
    async def archive(self, booked_before: date) -> int:
        result = await self.session.execute(select(IntakeRow).where(IntakeRow.synced.is_(True)))
        moved = []
        for row in result.scalars().all():
            default_year = row.created_at.year if row.created_at else None
            day = parse_booking_date(row.date, default_year)
            if day is not None and day < booked_before:
                moved.append(row)
        if not moved:
            return 0

        now = datetime.now(timezone.utc)
        for row in moved:
            self.session.add(IntakeArchive(
                intake_id=row.id,
                submitted_at=row.created_at,
                archived_at=now,
                **BookingRecord.from_orm_row(row).to_columns(),
            ))
        await self.session.execute(
            delete(IntakeRow).where(IntakeRow.id.in_([row.id for row in moved]))
        )
        await self.session.commit()
        return len(moved)


# ── Run Log ───────────────────────────────────────────────────

def _run_info(run: ReconciliationRun) -> RunInfo:
    return RunInfo(
        id=str(run.id),
        state=run.state,
        full_refresh=run.full_refresh,
        collected=run.collected,
        marked_synced=run.marked_synced,
        shards_written=list(run.shards_written or []),
        error=run.error,
        started_at=run.started_at,
        finished_at=run.finished_at,
    )


class SqlRunLog(RunLog):

    def __init__(self, session: AsyncSession):
        self.session = session

    @storage_call
    async def start(self, full_refresh: bool) -> RunInfo:
        run = ReconciliationRun(
            state="COLLECT",
            full_refresh=full_refresh,
            shards_written=[],
            started_at=datetime.now(timezone.utc),
        )
        self.session.add(run)
        await self.session.commit()
        return _run_info(run)

    @storage_call
    async def finish(self, run: RunInfo) -> None:
        await self.session.execute(
            update(ReconciliationRun)
            .where(ReconciliationRun.id == run.id)
            .values(
                state=run.state,
                collected=run.collected,
                marked_synced=run.marked_synced,
                shards_written=run.shards_written,
                error=run.error,
                finished_at=run.finished_at or datetime.now(timezone.utc),
            )
        )
        await self.session.commit()

    @storage_call
    async def recent(self, limit: int = 20) -> List[RunInfo]:
        result = await self.session.execute(
            select(ReconciliationRun).order_by(ReconciliationRun.started_at.desc()).limit(limit)
        )
        return [_run_info(run) for run in result.scalars().all()]


# ── Startup ───────────────────────────────────────────────────

async def ensure_template_shard(session: AsyncSession) -> ShardInfo:
    """
    Create the template shard if absent and validate its header against the
    column contract. Raises LedgerSchemaError on mismatch.
    """
    storage = SqlLedgerStorage(session)
    template = await storage.ensure_template(HEADER_LABELS, default_validation())
    build_column_map(template.header)
    logger.info(f"Template shard {template.name!r} validated ({len(template.header)} columns)")
    return template


# ── Dependencies ──────────────────────────────────────────────

def get_ledger_storage(db: AsyncSession = Depends(get_db)) -> LedgerStorage:
    return SqlLedgerStorage(db)


def get_intake_log(db: AsyncSession = Depends(get_db)) -> IntakeLog:
    return SqlIntakeLog(db)


def get_run_log(db: AsyncSession = Depends(get_db)) -> RunLog:
    return SqlRunLog(db)
