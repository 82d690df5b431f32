"""
tests/fakes.py
In-memory implementations of the storage capabilities and a minimal async
Redis double, with switches to inject failures.
"""

from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Set

from redis.exceptions import ConnectionError as RedisConnectionError

from services.ledger.base import ConfigProvider, IntakeLog, LedgerStorage, RunLog
from services.ledger.storage import TEMPLATE_ROW_LAYOUT
from shared.errors import StorageUnavailable
from shared.models.columns import HEADER_LABELS
from shared.schemas.records import (
    BookingConfig,
    BookingRecord,
    IntakeEntry,
    LedgerLine,
    RunInfo,
    ShardInfo,
)
from shared.utils.normalize import group_code, normalize_phone, parse_booking_date


class FakeRedis:
    """The subset of redis.asyncio.Redis used by RedisCache. TTLs are recorded, not enforced."""

    def __init__(self):
        self.store: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}
        self.down = False

    def _check(self):
        if self.down:
            raise RedisConnectionError("redis is down")

    async def get(self, key):
        self._check()
        return self.store.get(key)

    async def setex(self, key, ttl, value):
        self._check()
        self.store[key] = value
        self.ttls[key] = ttl
        return True

    async def set(self, key, value, ex=None, nx=False):
        self._check()
        if nx and key in self.store:
            return None
        self.store[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def exists(self, *keys):
        self._check()
        return sum(1 for key in keys if key in self.store)

    async def ping(self):
        self._check()
        return True

    async def aclose(self):
        pass


class StaticConfigProvider(ConfigProvider):

    def __init__(self, config: BookingConfig):
        self.config = config
        self.fail = False

    async def load(self) -> BookingConfig:
        if self.fail:
            raise StorageUnavailable("config unavailable")
        return self.config


class InMemoryLedgerStorage(LedgerStorage):
    """
    Shards as lists of row dicts {kind, record, style, layout}. A row with
    kind None is free capacity.
    """

    def __init__(self, template_name: str = "Template", initial_rows: int = 100):
        self.template_name = template_name
        self.initial_rows = initial_rows
        self.meta: Dict[str, Dict] = {}
        self.rows: Dict[str, List[Dict]] = {}
        self.fail_reads = False
        self.fail_writes: Set[str] = set()
        self.write_count = 0

    def _row(self, layout: Optional[dict] = None) -> Dict:
        return {
            "kind": None,
            "record": BookingRecord(),
            "style": None,
            "layout": dict(layout if layout is not None else TEMPLATE_ROW_LAYOUT),
        }

    def _info(self, name: str) -> ShardInfo:
        rows = self.rows[name]
        used = max((i + 1 for i, r in enumerate(rows) if r["kind"] is not None), default=0)
        meta = self.meta[name]
        return ShardInfo(
            name=name,
            capacity=len(rows),
            used_rows=used,
            header=list(meta["header"]),
            validation=dict(meta["validation"]),
            is_template=meta["is_template"],
        )

    def _template_layout(self) -> dict:
        rows = self.rows.get(self.template_name)
        return dict(rows[0]["layout"]) if rows else dict(TEMPLATE_ROW_LAYOUT)

    def _require(self, name: str) -> List[Dict]:
        if name not in self.rows:
            raise StorageUnavailable(f"no shard {name}")
        return self.rows[name]

    async def list_shards(self) -> List[ShardInfo]:
        if self.fail_reads:
            raise StorageUnavailable("ledger unavailable")
        return [self._info(n) for n in self.rows if not self.meta[n]["is_template"]]

    async def get_shard(self, name: str) -> Optional[ShardInfo]:
        if self.fail_reads:
            raise StorageUnavailable("ledger unavailable")
        return self._info(name) if name in self.rows else None

    async def ensure_template(self, header, validation) -> ShardInfo:
        if self.template_name not in self.rows:
            self.meta[self.template_name] = {
                "header": list(header), "validation": dict(validation), "is_template": True,
            }
            self.rows[self.template_name] = [self._row()]
        return self._info(self.template_name)

    async def create_shard(self, name: str) -> ShardInfo:
        template = self.meta.get(self.template_name)
        if template is None:
            raise StorageUnavailable("template shard missing")
        self.meta[name] = {
            "header": list(template["header"]),
            "validation": dict(template["validation"]),
            "is_template": False,
        }
        layout = self._template_layout()
        self.rows[name] = [self._row(layout) for _ in range(self.initial_rows)]
        return self._info(name)

    async def read_rows(self, name: str) -> List[BookingRecord]:
        if self.fail_reads:
            raise StorageUnavailable("ledger unavailable")
        return [
            r["record"] for r in self.rows.get(name, [])
            if r["kind"] == "record" and not r["record"].is_blank
        ]

    async def read_lines(self, name: str) -> List[LedgerLine]:
        return [
            LedgerLine(kind=r["kind"], record=r["record"], style=r["style"] or "default")
            for r in self.rows.get(name, []) if r["kind"] is not None
        ]

    async def extend_capacity(self, name: str, rows: int) -> int:
        shard = self._require(name)
        layout = self._template_layout()
        shard.extend(self._row(layout) for _ in range(rows))
        return len(shard)

    async def trim_capacity(self, name: str, keep: int) -> int:
        shard = self._require(name)
        keep = max(keep, self._info(name).used_rows)
        del shard[keep:]
        return len(shard)

    async def write_lines(self, name: str, lines: List[LedgerLine], clear_through: int) -> None:
        if name in self.fail_writes:
            raise StorageUnavailable(f"write to {name} failed")
        shard = self._require(name)
        if len(lines) > len(shard):
            raise StorageUnavailable("not enough rows")
        for i, line in enumerate(lines):
            shard[i].update(kind=line.kind, record=line.record, style=line.style)
        for i in range(len(lines), min(clear_through, len(shard))):
            shard[i].update(kind=None, record=BookingRecord(), style=None)
        self.write_count += 1

    # ── test helpers ──
    async def seed(self, name: str, records: List[BookingRecord]) -> None:
        if self.template_name not in self.rows:
            await self.ensure_template(HEADER_LABELS, {})
        if name not in self.rows:
            await self.create_shard(name)
        if len(records) > len(self.rows[name]):
            await self.extend_capacity(name, len(records) - len(self.rows[name]))
        await self.write_lines(
            name, [LedgerLine(kind="record", record=r) for r in records], len(self.rows[name])
        )

    def snapshot(self, name: str) -> List:
        return [
            (r["kind"], tuple(r["record"].to_row()), r["style"])
            for r in self.rows[name]
        ]


class InMemoryIntakeLog(IntakeLog):

    def __init__(self):
        self.entries: Dict[int, IntakeEntry] = {}
        self.archived: List[IntakeEntry] = []
        self.next_id = 1
        self.fail = False
        self.writes = 0

    def _check(self):
        if self.fail:
            raise StorageUnavailable("intake unavailable")

    async def append(self, record: BookingRecord) -> IntakeEntry:
        self._check()
        entry = IntakeEntry(
            id=self.next_id, revision=1, synced=False,
            created_at=datetime.now(timezone.utc), record=record,
        )
        self.entries[entry.id] = entry
        self.next_id += 1
        self.writes += 1
        return entry

    async def update(self, entry_id: int, record: BookingRecord) -> IntakeEntry:
        self._check()
        old = self.entries[entry_id]
        entry = old.model_copy(update={"record": record, "revision": old.revision + 1, "synced": False})
        self.entries[entry_id] = entry
        self.writes += 1
        return entry

    async def update_status(self, reference_code: str, status: str) -> int:
        self._check()
        changed = 0
        for entry in list(self.entries.values()):
            if group_code(entry.record.reference_code) == group_code(reference_code):
                record = entry.record.model_copy(update={"status": status})
                await self.update(entry.id, record)
                changed += 1
        return changed

    async def list_unsynced(self) -> List[IntakeEntry]:
        self._check()
        return [e for e in self.entries.values() if not e.synced]

    async def list_for_date(self, iso_date: str) -> List[IntakeEntry]:
        self._check()
        wanted = date.fromisoformat(iso_date)
        return [
            e for e in self.entries.values()
            if parse_booking_date(e.record.date, wanted.year) == wanted
        ]

    async def find_by_phone(self, phone: str) -> List[IntakeEntry]:
        self._check()
        digits = normalize_phone(phone)
        return [e for e in self.entries.values() if normalize_phone(e.record.phone) == digits]

    async def find_by_reference(self, reference_code: str) -> List[IntakeEntry]:
        self._check()
        code = reference_code.strip().upper()
        return [e for e in self.entries.values() if e.record.reference_code.strip().upper() == code]

    async def reference_exists(self, reference_code: str) -> bool:
        self._check()
        return any(e.record.reference_code == reference_code for e in self.entries.values())

    async def mark_synced(self, revisions: Dict[int, int]) -> int:
        self._check()
        flipped = 0
        for entry_id, revision in revisions.items():
            entry = self.entries.get(entry_id)
            if entry is not None and entry.revision == revision:
                self.entries[entry_id] = entry.model_copy(update={"synced": True})
                flipped += 1
        return flipped

    async def archive(self, booked_before: date) -> int:
        self._check()
        moved = [
            e for e in self.entries.values()
            if e.synced and (parse_booking_date(e.record.date) or booked_before) < booked_before
        ]
        for entry in moved:
            self.archived.append(self.entries.pop(entry.id))
        return len(moved)


class InMemoryRunLog(RunLog):

    def __init__(self):
        self.runs: List[RunInfo] = []
        self.fail = False

    async def start(self, full_refresh: bool) -> RunInfo:
        if self.fail:
            raise StorageUnavailable("run log unavailable")
        run = RunInfo(
            id=str(len(self.runs) + 1),
            state="COLLECT",
            full_refresh=full_refresh,
            started_at=datetime.now(timezone.utc),
        )
        self.runs.append(run)
        return run

    async def finish(self, run: RunInfo) -> None:
        for i, existing in enumerate(self.runs):
            if existing.id == run.id:
                self.runs[i] = run.model_copy()

    async def recent(self, limit: int = 20) -> List[RunInfo]:
        return list(reversed(self.runs))[:limit]
