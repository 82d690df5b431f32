"""
services/booking/router.py
Booking submission and group lifecycle.
Submissions go through the admission controller; every accepted one is
exactly one intake row, picked up later by reconciliation.
"""

import logging

from fastapi import APIRouter, Depends, status

from config.redis_client import RedisCache, get_redis
from services.booking.admission import AdmissionController
from services.config.provider import get_config_provider
from services.ledger.base import ConfigProvider, IntakeLog
from services.ledger.storage import get_intake_log
from shared.errors import LedgerError
from shared.middleware.auth import require_admin
from shared.models.models import BookingStatus
from shared.schemas.records import IntakeEntry
from shared.schemas.schemas import (
    BookingGroupResponse,
    BookingResponse,
    BookingRowResponse,
    BookingSubmission,
    GroupUpdateResponse,
    StatusUpdateRequest,
)
from shared.utils.metrics import ADMISSIONS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["Bookings"])


def get_admission_controller(
    intake: IntakeLog = Depends(get_intake_log),
    config: ConfigProvider = Depends(get_config_provider),
    redis=Depends(get_redis),
) -> AdmissionController:
    return AdmissionController(intake, config, RedisCache(redis))


def _row(entry: IntakeEntry) -> BookingRowResponse:
    return BookingRowResponse(**entry.record.to_columns())


# ── Submission ────────────────────────────────────────────────

@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def submit_booking(
    data: BookingSubmission,
    controller: AdmissionController = Depends(get_admission_controller),
):
    """
    Admit a booking. Steps:
    1. Normalize branch, date, time and phone (422 on anything unknown)
    2. Lock the target shard, read live occupancy of the slot
    3. Update the matching row (retry / reschedule) or append a new one
    Full slots are rejected with 409 and nothing is written.
    """
    try:
        result = await controller.submit(data)
    except LedgerError as e:
        ADMISSIONS.labels(outcome=e.kind).inc()
        raise

    ADMISSIONS.labels(outcome="updated" if result.updated else "created").inc()
    return BookingResponse(
        reference_code=result.entry.record.reference_code,
        entry_id=result.entry.id,
        updated=result.updated,
        booking=_row(result.entry),
    )


# ── Group lookup / lifecycle ──────────────────────────────────

@router.get("/{reference_code}", response_model=BookingGroupResponse)
async def get_booking(
    reference_code: str,
    controller: AdmissionController = Depends(get_admission_controller),
):
    entries = await controller.lookup(reference_code)
    return BookingGroupResponse(
        reference_code=entries[0].record.reference_code,
        rows=[_row(e) for e in entries],
    )


@router.post("/{reference_code}/cancel", response_model=GroupUpdateResponse)
async def cancel_booking(
    reference_code: str,
    controller: AdmissionController = Depends(get_admission_controller),
):
    """Cancel every row of the group. Rows stay in the ledger, styled as cancelled."""
    changed = await controller.cancel(reference_code)
    return GroupUpdateResponse(
        reference_code=reference_code.strip().upper(),
        status=BookingStatus.CANCELLED.value,
        rows_updated=changed,
    )


@router.post(
    "/{reference_code}/status",
    response_model=GroupUpdateResponse,
    dependencies=[Depends(require_admin)],
)
async def set_booking_status(
    reference_code: str,
    data: StatusUpdateRequest,
    controller: AdmissionController = Depends(get_admission_controller),
):
    """Admin: set status (e.g. Done) on every row of the group."""
    changed = await controller.set_status(reference_code, data.status)
    return GroupUpdateResponse(
        reference_code=reference_code.strip().upper(),
        status=BookingStatus(data.status).value,
        rows_updated=changed,
    )
