"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the booking API.
"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from shared.models.models import (
    AfterCare,
    BookingStatus,
    PaymentMethod,
    SessionType,
    SubmissionType,
)
from shared.schemas.records import BranchInfo, RunInfo


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class MessageResponse(BaseSchema):
    message: str
    success: bool = True


class ErrorResponse(BaseSchema):
    detail: str
    code: Optional[str] = None


# ── Bookings ──────────────────────────────────────────────────

class BookingSubmission(BaseSchema):
    type: SubmissionType = SubmissionType.NEW
    branch: str = Field(..., min_length=1, max_length=100)
    session: SessionType
    date: str = Field(..., min_length=1, max_length=32)
    time: str = Field(..., min_length=1, max_length=64)
    services: List[str] = Field(..., min_length=1)
    social_handle: str = Field("", max_length=255)
    first_name: str = Field(..., min_length=1, max_length=120)
    last_name: str = Field(..., min_length=1, max_length=120)
    phone: str = Field(..., max_length=32)
    remarks: str = Field("", max_length=1000)
    after_care: AfterCare = AfterCare.ACK
    payment_method: PaymentMethod = PaymentMethod.CASH
    reference_code: Optional[str] = Field(None, max_length=64)

    @field_validator("phone")
    @classmethod
    def phone_has_digits(cls, v: str) -> str:
        digits = [c for c in v if c.isdigit()]
        if len(digits) < 7:
            raise ValueError("Phone number must contain at least 7 digits")
        return v

    @field_validator("services")
    @classmethod
    def services_not_blank(cls, v: List[str]) -> List[str]:
        cleaned = [s.strip() for s in v if s and s.strip()]
        if not cleaned:
            raise ValueError("Select at least one service")
        return cleaned

    @property
    def client_name(self) -> str:
        return f"{self.first_name.strip()} {self.last_name.strip()}".strip()


class BookingRowResponse(BaseSchema):
    branch: str
    social_handle: str
    client_name: str
    phone: str
    date: str
    time: str
    services: str
    session: str
    status: str
    after_care: str
    payment_method: str
    remarks: str
    submission_type: str
    reference_code: str


class BookingResponse(BaseSchema):
    reference_code: str
    entry_id: int
    updated: bool = False        # True when an existing row was rewritten in place
    booking: BookingRowResponse


class BookingGroupResponse(BaseSchema):
    reference_code: str
    rows: List[BookingRowResponse]


class StatusUpdateRequest(BaseSchema):
    status: BookingStatus


class GroupUpdateResponse(BaseSchema):
    reference_code: str
    status: str
    rows_updated: int


# ── Availability / Config ─────────────────────────────────────

class AvailabilityResponse(BaseSchema):
    date: str
    branch: str
    shard: str
    counts: Dict[str, int] = Field(default_factory=dict)   # slot start key -> booked
    limit: int
    degraded: bool = False


class ConfigResponse(BaseSchema):
    branches: List[BranchInfo]
    time_slots: List[str]
    default_capacity: int


# ── Ledger read views ─────────────────────────────────────────

class ShardSummary(BaseSchema):
    name: str
    capacity: int
    used_rows: int


class LedgerLineResponse(BaseSchema):
    kind: str
    values: Dict[str, str]
    style: str
    style_attributes: Dict[str, Any]


class ShardViewResponse(BaseSchema):
    name: str
    header: List[str]
    validation: Dict[str, List[str]]
    lines: List[LedgerLineResponse]


# ── Admin ─────────────────────────────────────────────────────

class ReconcileRequest(BaseSchema):
    full_refresh: bool = False
    run_inline: bool = False     # run in the request instead of queueing on Celery


class ReconcileResponse(BaseSchema):
    queued: bool
    task_id: Optional[str] = None
    run: Optional[RunInfo] = None


class ArchiveResponse(BaseSchema):
    archived: int
    booked_before: date


class RunListResponse(BaseSchema):
    runs: List[RunInfo]
    fetched_at: datetime
