"""
services/config/provider.py
Config Provider backed by the branches / time_slots tables, cached in Redis.
"""

import logging
from typing import Optional

from fastapi import Depends
from redis.exceptions import RedisError
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from services.ledger.base import ConfigProvider
from shared.errors import StorageUnavailable
from shared.models.models import Branch, TimeSlot
from shared.schemas.records import BookingConfig, BranchInfo

logger = logging.getLogger(__name__)

CONFIG_CACHE_KEY = "ledger:config"

# Seeded on first start outside production
DEFAULT_BRANCHES = [
    ("Parañaque", "PQ"),
    ("San Pablo", "SP"),
    ("Lipa", "LP"),
    ("Taguig", "TG"),
    ("Dasmariñas", "DM"),
    ("Novaliches", "NV"),
]
DEFAULT_TIME_SLOTS = [
    "10:00 AM - 11:30 AM",
    "11:30 AM - 1:00 PM",
    "1:00 PM - 2:30 PM",
    "2:30 PM - 4:00 PM",
    "4:00 PM - 5:30 PM",
    "5:30 PM - 7:00 PM",
]


class SqlConfigProvider(ConfigProvider):

    def __init__(self, session: AsyncSession, cache: Optional[RedisCache] = None):
        self.session = session
        self.cache = cache

    async def load(self) -> BookingConfig:
        if self.cache:
            try:
                cached = await self.cache.get(CONFIG_CACHE_KEY)
            except RedisError as e:
                logger.warning(f"Config cache unavailable, reading tables: {e}")
                cached = None
            if cached:
                return BookingConfig.model_validate(cached)

        try:
            branches = (await self.session.execute(
                select(Branch).where(Branch.is_active.is_(True)).order_by(Branch.code)
            )).scalars().all()
            slots = (await self.session.execute(
                select(TimeSlot).order_by(TimeSlot.position, TimeSlot.id)
            )).scalars().all()
        except SQLAlchemyError as e:
            raise StorageUnavailable(f"Config read failed: {e}") from e

        config = BookingConfig(
            branches=[BranchInfo(name=b.name, code=b.code, capacity=b.capacity) for b in branches],
            time_slots=[s.label for s in slots],
            default_capacity=settings.DEFAULT_BRANCH_CAPACITY,
        )
        if self.cache:
            try:
                await self.cache.set(CONFIG_CACHE_KEY, config.model_dump(), ttl=settings.REDIS_CACHE_TTL)
            except RedisError as e:
                logger.warning(f"Config not cached: {e}")
        return config


async def seed_defaults(session: AsyncSession) -> None:
    """Insert the default branches and slots into empty tables."""
    branch_count = (await session.execute(select(func.count(Branch.id)))).scalar() or 0
    if not branch_count:
        for name, code in DEFAULT_BRANCHES:
            session.add(Branch(name=name, code=code, capacity=settings.DEFAULT_BRANCH_CAPACITY))
        logger.info(f"Seeded {len(DEFAULT_BRANCHES)} branches")

    slot_count = (await session.execute(select(func.count(TimeSlot.id)))).scalar() or 0
    if not slot_count:
        for position, label in enumerate(DEFAULT_TIME_SLOTS):
            session.add(TimeSlot(label=label, position=position))
        logger.info(f"Seeded {len(DEFAULT_TIME_SLOTS)} time slots")
    await session.commit()


def get_config_provider(
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
) -> ConfigProvider:
    return SqlConfigProvider(db, RedisCache(redis))
