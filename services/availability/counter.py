"""
services/availability/counter.py
Cached, read-only occupancy per time slot for the booking picker.

Fails open: a storage or cache outage yields zero counts flagged as
degraded. Admission never relies on these numbers.
"""

import logging
from datetime import date
from typing import Dict, List

from pybreaker import CircuitBreaker, CircuitBreakerError
from redis.exceptions import RedisError

from config.redis_client import RedisCache, snapshot_key
from config.settings import settings
from services.ledger.base import ConfigProvider, LedgerStorage
from services.ledger.sharding import shard_for_day
from shared.errors import LedgerError, SubmissionInvalid
from shared.schemas.records import BookingRecord
from shared.schemas.schemas import AvailabilityResponse
from shared.utils.normalize import normalize_str, parse_booking_date, slot_start_key

logger = logging.getLogger(__name__)

# Shared across requests in this process
storage_breaker = CircuitBreaker(fail_max=5, reset_timeout=60, name="ledger-storage")


class AvailabilityCounter:

    def __init__(
        self,
        ledger: LedgerStorage,
        config: ConfigProvider,
        cache: RedisCache,
        breaker: CircuitBreaker = storage_breaker,
    ):
        self.ledger = ledger
        self.config = config
        self.cache = cache
        self.breaker = breaker

    async def snapshot(self, shard: str) -> List[BookingRecord]:
        """Shard rows from the cache, loaded from storage on a miss."""
        key = snapshot_key(shard)
        cached = await self.cache.get(key)
        if cached is not None:
            return [BookingRecord.from_row(values) for values in cached]

        with self.breaker.calling():
            records = await self.ledger.read_rows(shard)
        await self.cache.set(key, [r.to_row() for r in records], ttl=settings.AVAILABILITY_CACHE_TTL)
        return records

    async def count(self, day_value: str, branch: str) -> AvailabilityResponse:
        day = parse_booking_date(day_value)
        if day is None:
            raise SubmissionInvalid(f"Invalid date: {day_value!r}")
        shard = shard_for_day(day)

        limit = settings.DEFAULT_BRANCH_CAPACITY
        names = {normalize_str(branch)}
        resolved = branch
        try:
            config = await self.config.load()
            info = config.find_branch(branch)
            limit = config.capacity_for(branch)
            if info:
                resolved = info.code
                names |= {normalize_str(info.code), normalize_str(info.name)}
            counts = self._tally(await self.snapshot(shard), day, names)
        except (LedgerError, RedisError, CircuitBreakerError, OSError) as e:
            logger.warning(f"Availability degraded for {branch} on {day}: {type(e).__name__}: {e}")
            return AvailabilityResponse(
                date=day.isoformat(), branch=resolved, shard=shard,
                counts={}, limit=limit, degraded=True,
            )

        return AvailabilityResponse(
            date=day.isoformat(), branch=resolved, shard=shard,
            counts=counts, limit=limit, degraded=False,
        )

    @staticmethod
    def _tally(records: List[BookingRecord], day: date, branch_names: set) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for record in records:
            if record.is_cancelled:
                continue
            if normalize_str(record.branch) not in branch_names:
                continue
            if parse_booking_date(record.date, day.year) != day:
                continue
            slot = slot_start_key(record.time)
            counts[slot] = counts.get(slot, 0) + 1
        return counts
