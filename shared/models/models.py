"""
shared/models/models.py
SQLAlchemy ORM models for the booking ledger:
configuration (branches, time slots), the append-only intake log and its
archive, ledger shards with provisioned rows, and the reconciliation run log.
"""

import uuid
from datetime import datetime
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base


# ── Enumerations ──────────────────────────────────────────────

class BookingStatus(str, PyEnum):
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    DONE = "Done"
    CANCELLED = "Cancelled"
    NO_SHOW = "No Show"


class SessionType(str, PyEnum):
    FIRST = "1st"
    SECOND = "2nd"
    FULL = "Full"
    CONSULTATION = "Consultation"


class SubmissionType(str, PyEnum):
    NEW = "New Appointment"
    RESCHEDULE = "Reschedule"
    JOINER = "Joiner"


class PaymentMethod(str, PyEnum):
    CASH = "Cash"
    GCASH = "G-Cash"
    MAYA = "Maya"
    BANK = "Bank"
    OTHER = "Other"


class AfterCare(str, PyEnum):
    ACK = "ACK"
    NO_ACK = "NO ACK"


class LineKind(str, PyEnum):
    RECORD = "record"
    DATE_HEADER = "date_header"
    DIVIDER = "divider"


class RunState(str, PyEnum):
    COLLECT = "COLLECT"
    GROUP = "GROUP"
    PURGE = "PURGE"
    DISTRIBUTE = "DISTRIBUTE"
    DEDUP = "DEDUP"
    SORT = "SORT"
    RENDER = "RENDER"
    COMMIT = "COMMIT"
    MARK_SYNCED = "MARK_SYNCED"
    COMPLETE = "COMPLETE"
    ABORTED = "ABORTED"


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class RecordColumnsMixin:
    """The 14 content columns, in contract order (see shared/models/columns.py)."""
    branch: Mapped[str] = mapped_column(String(100), default="", nullable=False)
    social_handle: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    client_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    phone: Mapped[str] = mapped_column(String(32), default="", nullable=False)
    date: Mapped[str] = mapped_column(String(32), default="", nullable=False)
    time: Mapped[str] = mapped_column(String(32), default="", nullable=False)
    services: Mapped[str] = mapped_column(Text, default="", nullable=False)
    session: Mapped[str] = mapped_column(String(32), default="", nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="", nullable=False)
    after_care: Mapped[str] = mapped_column(String(16), default="", nullable=False)
    payment_method: Mapped[str] = mapped_column(String(32), default="", nullable=False)
    remarks: Mapped[str] = mapped_column(Text, default="", nullable=False)
    submission_type: Mapped[str] = mapped_column(String(32), default="", nullable=False)
    reference_code: Mapped[str] = mapped_column(String(64), default="", nullable=False)


# ── Config Provider tables ────────────────────────────────────

class Branch(TimestampMixin, Base):
    """A branch and its per-slot capacity."""
    __tablename__ = "branches"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    code: Mapped[str] = mapped_column(String(10), unique=True, nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, default=4, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Branch {self.code} cap={self.capacity}>"


class TimeSlot(Base):
    """Bookable time-slot label, e.g. '10:00 AM - 11:30 AM'."""
    __tablename__ = "time_slots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    label: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


# ── Intake Log ────────────────────────────────────────────────

class IntakeRow(RecordColumnsMixin, TimestampMixin, Base):
    """
    Append-only submission log. The admission controller appends or updates
    rows here; the reconciliation engine flips `synced` after committing them.
    `revision` increases on every update so mark-synced can detect rows that
    changed mid-run.
    """
    __tablename__ = "intake_rows"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    synced: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    revision: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    __table_args__ = (
        Index("ix_intake_rows_synced", "synced"),
        Index("ix_intake_rows_date", "date"),
        Index("ix_intake_rows_phone", "phone"),
        Index("ix_intake_rows_reference_code", "reference_code"),
    )

    def __repr__(self) -> str:
        return f"<IntakeRow {self.id} {self.reference_code} {self.date} {self.time}>"


class IntakeArchive(RecordColumnsMixin, Base):
    """Synced intake rows for past appointments, moved out of the hot log."""
    __tablename__ = "intake_archive"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    intake_id: Mapped[int] = mapped_column(Integer, nullable=False)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    archived_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


# ── Ledger ────────────────────────────────────────────────────

class LedgerShard(Base):
    """
    One fortnight view. `header` and `validation` are structural metadata
    cloned from the template shard when a shard is created.
    """
    __tablename__ = "ledger_shards"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    header: Mapped[list] = mapped_column(JSONB, default=list, nullable=False)
    validation: Mapped[dict] = mapped_column(JSONB, default=dict, nullable=False)
    is_template: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    rows: Mapped[List["LedgerRow"]] = relationship(
        back_populates="shard", cascade="all, delete-orphan", order_by="LedgerRow.position"
    )


class LedgerRow(RecordColumnsMixin, Base):
    """
    A provisioned row of a shard. Content columns, `kind` and `style` are
    rewritten by the reconciliation engine; `layout` (per-row validation and
    formatting metadata) is only ever set when the row is provisioned.
    A row with kind NULL and empty content is free capacity.
    """
    __tablename__ = "ledger_rows"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shard_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("ledger_shards.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    style: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    layout: Mapped[dict] = mapped_column(JSONB, default=dict, nullable=False)

    shard: Mapped["LedgerShard"] = relationship(back_populates="rows")

    __table_args__ = (
        UniqueConstraint("shard_id", "position", name="uq_ledger_rows_shard_position"),
        Index("ix_ledger_rows_shard_kind", "shard_id", "kind"),
    )


class ReconciliationRun(Base):
    """Run log: one row per reconciliation attempt, kept for retry and audit."""
    __tablename__ = "reconciliation_runs"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    state: Mapped[str] = mapped_column(String(16), nullable=False)
    full_refresh: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    collected: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    marked_synced: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    shards_written: Mapped[list] = mapped_column(JSONB, default=list, nullable=False)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_reconciliation_runs_started_at", "started_at"),)
