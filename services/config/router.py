"""
services/config/router.py
Branches and time slots for the booking picker.
"""

from fastapi import APIRouter, Depends

from services.config.provider import get_config_provider
from services.ledger.base import ConfigProvider
from shared.schemas.schemas import ConfigResponse

router = APIRouter(prefix="/config", tags=["Config"])


@router.get("", response_model=ConfigResponse)
async def get_booking_config(provider: ConfigProvider = Depends(get_config_provider)):
    config = await provider.load()
    return ConfigResponse(
        branches=config.branches,
        time_slots=config.time_slots,
        default_capacity=config.default_capacity,
    )
