"""
services/ledger/base.py
Storage capabilities the admission controller and the reconciliation engine
depend on. The SQLAlchemy implementations live in services/ledger/storage.py.
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import Dict, List, Optional

from shared.schemas.records import (
    BookingConfig,
    BookingRecord,
    IntakeEntry,
    LedgerLine,
    RunInfo,
    ShardInfo,
)


class ConfigProvider(ABC):
    """Read-only branch codes, capacities and valid time-slot labels."""

    @abstractmethod
    async def load(self) -> BookingConfig:
        pass


class LedgerStorage(ABC):
    """
    Sharded row store. A shard has provisioned rows (its capacity); each row
    carries content + style, which are rewritten, and structural layout,
    which is only set when the row is provisioned.
    """

    @abstractmethod
    async def list_shards(self) -> List[ShardInfo]:
        """Every non-template shard."""

    @abstractmethod
    async def get_shard(self, name: str) -> Optional[ShardInfo]:
        pass

    @abstractmethod
    async def ensure_template(self, header: List[str], validation: Dict[str, List[str]]) -> ShardInfo:
        """Return the template shard, creating it from the given metadata if absent."""

    @abstractmethod
    async def create_shard(self, name: str) -> ShardInfo:
        """
        Create a shard by cloning the template's header and validation, and
        provision its initial rows with the template row's layout. Never
        copies template content.
        """

    @abstractmethod
    async def read_rows(self, name: str) -> List[BookingRecord]:
        """Booking records of a shard in stored order; pseudo-rows and blanks skipped."""

    @abstractmethod
    async def read_lines(self, name: str) -> List[LedgerLine]:
        """Full rendered sequence (records and pseudo-rows) with style tags."""

    @abstractmethod
    async def extend_capacity(self, name: str, rows: int) -> int:
        """Provision `rows` more rows carrying the template row's layout. Returns new capacity."""

    @abstractmethod
    async def trim_capacity(self, name: str, keep: int) -> int:
        """Drop provisioned rows beyond `keep`, never rows holding content. Returns new capacity."""

    @abstractmethod
    async def write_lines(self, name: str, lines: List[LedgerLine], clear_through: int) -> None:
        """
        Overwrite content and style of rows [0, len(lines)) and clear content
        and style of rows [len(lines), clear_through). Layout is untouched.
        The write is atomic per shard.
        """


class IntakeLog(ABC):
    """Append-only submission store with a synced flag."""

    @abstractmethod
    async def append(self, record: BookingRecord) -> IntakeEntry:
        """Append an unsynced row."""

    @abstractmethod
    async def update(self, entry_id: int, record: BookingRecord) -> IntakeEntry:
        """Replace a row's content by identity, bump its revision, mark it unsynced."""

    @abstractmethod
    async def update_status(self, reference_code: str, status: str) -> int:
        """Set status on every row of a group, marking them unsynced. Returns rows changed."""

    @abstractmethod
    async def list_unsynced(self) -> List[IntakeEntry]:
        pass

    @abstractmethod
    async def list_for_date(self, iso_date: str) -> List[IntakeEntry]:
        """Live rows (synced or not) booked on a canonical ISO date."""

    @abstractmethod
    async def find_by_phone(self, phone: str) -> List[IntakeEntry]:
        pass

    @abstractmethod
    async def find_by_reference(self, reference_code: str) -> List[IntakeEntry]:
        pass

    @abstractmethod
    async def reference_exists(self, reference_code: str) -> bool:
        pass

    @abstractmethod
    async def mark_synced(self, revisions: Dict[int, int]) -> int:
        """
        Flip synced=true for each id whose revision still equals the given one.
        Returns how many rows flipped.
        """

    @abstractmethod
    async def archive(self, booked_before: date) -> int:
        """Move synced rows booked before the given day to the archive. Returns rows moved."""


class RunLog(ABC):
    """One entry per reconciliation attempt."""

    @abstractmethod
    async def start(self, full_refresh: bool) -> RunInfo:
        pass

    @abstractmethod
    async def finish(self, run: RunInfo) -> None:
        """Persist the final state, counts and error of a run."""

    @abstractmethod
    async def recent(self, limit: int = 20) -> List[RunInfo]:
        pass
