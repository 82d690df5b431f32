"""
shared/schemas/records.py
In-memory value types passed between the storage capabilities and the
admission / availability / reconciliation components.
"""

from datetime import datetime
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from shared.models.columns import FIELD_NAMES
from shared.utils.normalize import normalize_str


class BookingRecord(BaseModel):
    """One row of the 14-column layout. All values are stored text."""
    model_config = ConfigDict(frozen=True)

    branch: str = ""
    social_handle: str = ""
    client_name: str = ""
    phone: str = ""
    date: str = ""
    time: str = ""
    services: str = ""
    session: str = ""
    status: str = ""
    after_care: str = ""
    payment_method: str = ""
    remarks: str = ""
    submission_type: str = ""
    reference_code: str = ""

    @classmethod
    def from_row(cls, values: Sequence) -> "BookingRecord":
        padded = list(values) + [""] * (len(FIELD_NAMES) - len(values))
        return cls(**{
            field: "" if value is None else str(value)
            for field, value in zip(FIELD_NAMES, padded)
        })

    @classmethod
    def from_orm_row(cls, row) -> "BookingRecord":
        return cls(**{field: getattr(row, field) or "" for field in FIELD_NAMES})

    def to_row(self) -> List[str]:
        return [getattr(self, field) for field in FIELD_NAMES]

    def to_columns(self) -> Dict[str, str]:
        return {field: getattr(self, field) for field in FIELD_NAMES}

    @property
    def is_blank(self) -> bool:
        return not any(value.strip() for value in self.to_row())

    @property
    def is_cancelled(self) -> bool:
        return "cancel" in self.status.lower()

    @property
    def is_done(self) -> bool:
        return self.status.strip().lower() == "done"

    @property
    def is_second_session(self) -> bool:
        return "2ND" in self.session.upper()

    @property
    def is_joiner(self) -> bool:
        return "joiner" in self.submission_type.lower()


class IntakeEntry(BaseModel):
    """A BookingRecord as stored in the intake log."""
    id: int
    revision: int = 1
    synced: bool = False
    created_at: Optional[datetime] = None
    record: BookingRecord


class LedgerLine(BaseModel):
    """One rendered line of a shard: a record or a pseudo-row, plus its style tag."""
    model_config = ConfigDict(frozen=True)

    kind: str
    record: BookingRecord = Field(default_factory=BookingRecord)
    style: str = "default"


class ShardInfo(BaseModel):
    name: str
    capacity: int = 0
    used_rows: int = 0
    header: List[str] = Field(default_factory=list)
    validation: Dict[str, List[str]] = Field(default_factory=dict)
    is_template: bool = False


class BranchInfo(BaseModel):
    name: str
    code: str
    capacity: int


class BookingConfig(BaseModel):
    """What the Config Provider hands out: branches and valid slot labels."""
    branches: List[BranchInfo] = Field(default_factory=list)
    time_slots: List[str] = Field(default_factory=list)
    default_capacity: int = 4

    @property
    def branch_map(self) -> Dict[str, str]:
        """branch name -> short code"""
        return {b.name: b.code for b in self.branches}

    @property
    def branch_limits(self) -> Dict[str, int]:
        """short code -> capacity"""
        return {b.code: b.capacity for b in self.branches}

    def find_branch(self, name_or_code: str) -> Optional[BranchInfo]:
        wanted = normalize_str(name_or_code)
        if not wanted:
            return None
        for branch in self.branches:
            if wanted in (normalize_str(branch.code), normalize_str(branch.name)):
                return branch
        return None

    def capacity_for(self, name_or_code: str) -> int:
        branch = self.find_branch(name_or_code)
        return branch.capacity if branch else self.default_capacity


class RunInfo(BaseModel):
    """Run log entry of the reconciliation engine."""
    id: str
    state: str
    full_refresh: bool = False
    collected: int = 0
    marked_synced: int = 0
    shards_written: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    started_at: datetime
    finished_at: Optional[datetime] = None
