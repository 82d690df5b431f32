"""
services/availability/router.py
Per-slot occupancy for the booking picker. Never blocks on storage.
"""

from fastapi import APIRouter, Depends, Query

from config.redis_client import RedisCache, get_redis
from services.availability.counter import AvailabilityCounter
from services.config.provider import get_config_provider
from services.ledger.base import ConfigProvider, LedgerStorage
from services.ledger.storage import get_ledger_storage
from shared.schemas.schemas import AvailabilityResponse

router = APIRouter(prefix="/availability", tags=["Availability"])


def get_availability_counter(
    ledger: LedgerStorage = Depends(get_ledger_storage),
    config: ConfigProvider = Depends(get_config_provider),
    redis=Depends(get_redis),
) -> AvailabilityCounter:
    return AvailabilityCounter(ledger, config, RedisCache(redis))


@router.get("", response_model=AvailabilityResponse)
async def get_availability(
    date: str = Query(..., description="YYYY-MM-DD"),
    branch: str = Query(..., min_length=1, description="Branch name or short code"),
    counter: AvailabilityCounter = Depends(get_availability_counter),
):
    """
    Booked seats per slot start (e.g. `10:00am`) plus the branch limit.
    `degraded=true` means storage was unreachable and counts are empty.
    """
    return await counter.count(date, branch)
