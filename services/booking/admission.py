"""
services/booking/admission.py
Admission controller: decides whether one submission may take a seat in its
(branch, date, time-slot) cell and commits exactly one intake row if so.

The occupancy read and the row write are two separate storage calls, so the
pair runs under a Redis lock scoped to the target shard. Admission also
waits out a running reconciliation and fails closed if it does not finish
within the wait bound.
"""

import logging
from datetime import date
from typing import List, NamedTuple, Optional, Tuple

from redis.exceptions import RedisError

from config.redis_client import RECONCILE_LOCK, LockNotAcquired, RedisCache, shard_lock_key
from config.settings import settings
from services.ledger.base import ConfigProvider, IntakeLog
from services.ledger.sharding import shard_for_day
from shared.errors import (
    BookingNotFound,
    CapacityExceeded,
    StorageUnavailable,
    SubmissionInvalid,
    SystemBusy,
)
from shared.models.models import AfterCare, BookingStatus, PaymentMethod, SessionType, SubmissionType
from shared.schemas.records import BookingConfig, BookingRecord, BranchInfo, IntakeEntry
from shared.schemas.schemas import BookingSubmission
from shared.utils.normalize import (
    generate_reference_code,
    group_code,
    normalize_phone,
    normalize_str,
    parse_booking_date,
    slot_start_key,
    slot_start_label,
)

logger = logging.getLogger(__name__)

MAX_REFERENCE_ATTEMPTS = 10


class SlotKey(NamedTuple):
    branch: str
    date: str
    slot: str


class NormalizedSubmission(NamedTuple):
    record: BookingRecord
    branch: BranchInfo
    day: date
    slot_key: SlotKey
    submission_type: SubmissionType
    reference_code: str


class AdmissionResult(NamedTuple):
    entry: IntakeEntry
    updated: bool


class AdmissionController:

    def __init__(
        self,
        intake: IntakeLog,
        config: ConfigProvider,
        cache: RedisCache,
        lock_wait: float = settings.ADMISSION_LOCK_WAIT_SECONDS,
    ):
        self.intake = intake
        self.config = config
        self.cache = cache
        self.lock_wait = lock_wait

    # ── Normalization ────────────────────────────────────────

    def normalize(self, submission: BookingSubmission, config: BookingConfig) -> NormalizedSubmission:
        """Canonical record for a submission. Raises SubmissionInvalid."""
        branch = config.find_branch(submission.branch)
        if branch is None:
            raise SubmissionInvalid(f"Unknown branch: {submission.branch}")

        day = parse_booking_date(submission.date)
        if day is None:
            raise SubmissionInvalid(f"Invalid date: {submission.date}")

        slot = slot_start_key(submission.time)
        valid_slots = {slot_start_key(label): slot_start_label(label) for label in config.time_slots}
        if not slot or (valid_slots and slot not in valid_slots):
            raise SubmissionInvalid(f"Unknown time slot: {submission.time}")
        time_label = valid_slots.get(slot) or slot_start_label(submission.time)

        phone = normalize_phone(submission.phone)
        if not phone:
            raise SubmissionInvalid("Contact number is required")

        submission_type = SubmissionType(submission.type)
        reference = group_code(submission.reference_code)
        if submission_type == SubmissionType.JOINER and not reference:
            raise SubmissionInvalid("A joiner must carry the reference code of the booking it joins")

        record = BookingRecord(
            branch=branch.code,
            social_handle=submission.social_handle.strip(),
            client_name=submission.client_name,
            phone=phone,
            date=day.isoformat(),
            time=time_label,
            services=", ".join(submission.services),
            session=SessionType(submission.session).value,
            status=BookingStatus.PENDING.value,
            after_care=AfterCare(submission.after_care).value,
            payment_method=PaymentMethod(submission.payment_method).value,
            remarks=submission.remarks.strip(),
            submission_type=submission_type.value,
        )
        return NormalizedSubmission(
            record=record,
            branch=branch,
            day=day,
            slot_key=SlotKey(branch.code, day.isoformat(), slot),
            submission_type=submission_type,
            reference_code=reference,
        )

    # ── Live reads ───────────────────────────────────────────

    @staticmethod
    def _at(entry: IntakeEntry, key: SlotKey, branch: BranchInfo) -> bool:
        record = entry.record
        return (
            normalize_str(record.branch) in (normalize_str(branch.code), normalize_str(branch.name))
            and parse_booking_date(record.date, int(key.date[:4])) == date.fromisoformat(key.date)
            and slot_start_key(record.time) == key.slot
        )

    async def _occupancy(self, sub: NormalizedSubmission) -> Tuple[int, List[IntakeEntry]]:
        live = [
            e for e in await self.intake.list_for_date(sub.slot_key.date)
            if not e.record.is_cancelled
        ]
        at_slot = [e for e in live if self._at(e, sub.slot_key, sub.branch)]
        return len(at_slot), at_slot

    async def _find_match(self, sub: NormalizedSubmission, at_slot: List[IntakeEntry]) -> Optional[IntakeEntry]:
        """
        The existing row this submission rewrites, if any:
        - New: its own earlier non-joiner row at the same slot (retried submission)
        - Joiner: its own earlier joiner row in the group at this slot,
          matched by phone, name and services
        - Reschedule: a row with the requester's phone, preferring one at the
          target slot, else the most recent
        """
        phone = sub.record.phone
        if sub.submission_type == SubmissionType.NEW:
            same = [
                e for e in at_slot
                if normalize_phone(e.record.phone) == phone and not e.record.is_joiner
            ]
            return same[-1] if same else None

        if sub.submission_type == SubmissionType.JOINER:
            same = [
                e for e in at_slot
                if e.record.is_joiner
                and normalize_phone(e.record.phone) == phone
                and group_code(e.record.reference_code) == sub.reference_code
                and normalize_str(e.record.client_name) == normalize_str(sub.record.client_name)
                and normalize_str(e.record.services) == normalize_str(sub.record.services)
            ]
            return same[-1] if same else None

        candidates = [
            e for e in await self.intake.find_by_phone(phone)
            if not e.record.is_cancelled
            and (not sub.reference_code or group_code(e.record.reference_code) == sub.reference_code)
        ]
        if not candidates:
            return None
        at_target = [e for e in candidates if self._at(e, sub.slot_key, sub.branch)]
        if at_target:
            return at_target[-1]
        return max(candidates, key=lambda e: e.id)

    async def _new_reference(self) -> str:
        for _ in range(MAX_REFERENCE_ATTEMPTS):
            code = generate_reference_code()
            if not await self.intake.reference_exists(code):
                return code
        raise StorageUnavailable("Could not allocate a unique reference code")

    # ── Submission ───────────────────────────────────────────

    async def submit(self, submission: BookingSubmission) -> AdmissionResult:
        """
        Admit or reject one submission. Raises SubmissionInvalid,
        CapacityExceeded (no mutation), SystemBusy or StorageUnavailable.
        """
        config = await self.config.load()
        sub = self.normalize(submission, config)
        shard = shard_for_day(sub.day)

        try:
            if not await self.cache.wait_until_free(RECONCILE_LOCK, self.lock_wait):
                raise SystemBusy("Reconciliation in progress")
            async with self.cache.hold(
                shard_lock_key(shard), ttl=settings.ADMISSION_LOCK_TTL, wait=self.lock_wait
            ):
                return await self._admit(sub)
        except LockNotAcquired as e:
            raise SystemBusy(str(e)) from e
        except (RedisError, OSError) as e:
            raise StorageUnavailable(f"Lock service unavailable: {e}") from e

    async def _admit(self, sub: NormalizedSubmission) -> AdmissionResult:
        if sub.submission_type == SubmissionType.JOINER:
            if not await self.intake.find_by_reference(sub.reference_code):
                raise BookingNotFound(f"No booking with reference {sub.reference_code}")

        occupancy, at_slot = await self._occupancy(sub)
        capacity = sub.branch.capacity
        match = await self._find_match(sub, at_slot)
        seat_taken = match is not None and any(e.id == match.id for e in at_slot)

        if not seat_taken and occupancy >= capacity:
            logger.info(
                f"Rejected {sub.submission_type.value} for {sub.slot_key}: "
                f"occupancy {occupancy}/{capacity}"
            )
            raise CapacityExceeded(
                f"Sorry! The {sub.record.time} slot at {sub.branch.name} is full (Max {capacity})."
            )

        if match is not None:
            record = sub.record.model_copy(update={"reference_code": match.record.reference_code})
            entry = await self.intake.update(match.id, record)
            logger.info(f"Updated intake row {entry.id} ({record.reference_code}) at {sub.slot_key}")
            return AdmissionResult(entry, True)

        reference = sub.reference_code if sub.submission_type == SubmissionType.JOINER else ""
        record = sub.record.model_copy(update={"reference_code": reference or await self._new_reference()})
        entry = await self.intake.append(record)
        logger.info(f"Appended intake row {entry.id} ({record.reference_code}) at {sub.slot_key}")
        return AdmissionResult(entry, False)

    # ── Group operations ─────────────────────────────────────

    async def set_status(self, reference_code: str, status: BookingStatus) -> int:
        """Set the status of every row of a group. Rows are never deleted."""
        code = group_code(reference_code)
        if not code:
            raise SubmissionInvalid(f"Invalid reference code: {reference_code}")
        try:
            if not await self.cache.wait_until_free(RECONCILE_LOCK, self.lock_wait):
                raise SystemBusy("Reconciliation in progress")
        except (RedisError, OSError) as e:
            raise StorageUnavailable(f"Lock service unavailable: {e}") from e

        changed = await self.intake.update_status(code, BookingStatus(status).value)
        if not changed:
            raise BookingNotFound(f"No booking with reference {code}")
        logger.info(f"Set status {BookingStatus(status).value} on {changed} rows of {code}")
        return changed

    async def cancel(self, reference_code: str) -> int:
        return await self.set_status(reference_code, BookingStatus.CANCELLED)

    async def lookup(self, reference_code: str) -> List[IntakeEntry]:
        code = group_code(reference_code)
        entries = await self.intake.find_by_reference(code) if code else []
        if not entries:
            raise BookingNotFound(f"No booking with reference {reference_code}")
        return entries
