"""
services/ledger/router.py
Read views of the fortnight shards for the presentation layer.
"""

from typing import List

from fastapi import APIRouter, Depends

from services.ledger.base import LedgerStorage
from services.ledger.storage import get_ledger_storage
from services.reconciliation.pipeline import style_attributes
from shared.errors import BookingNotFound
from shared.schemas.schemas import LedgerLineResponse, ShardSummary, ShardViewResponse

router = APIRouter(prefix="/ledger", tags=["Ledger"])


@router.get("/shards", response_model=List[ShardSummary])
async def list_shards(ledger: LedgerStorage = Depends(get_ledger_storage)):
    return [
        ShardSummary(name=s.name, capacity=s.capacity, used_rows=s.used_rows)
        for s in await ledger.list_shards()
    ]


@router.get("/shards/{name}", response_model=ShardViewResponse)
async def get_shard(name: str, ledger: LedgerStorage = Depends(get_ledger_storage)):
    """Finalized line sequence of one shard, date headers and dividers included."""
    shard = await ledger.get_shard(name)
    if shard is None or shard.is_template:
        raise BookingNotFound(f"Shard {name!r} not found")

    lines = await ledger.read_lines(name)
    return ShardViewResponse(
        name=shard.name,
        header=shard.header,
        validation=shard.validation,
        lines=[
            LedgerLineResponse(
                kind=line.kind,
                values=line.record.to_columns(),
                style=line.style,
                style_attributes=style_attributes(line.style),
            )
            for line in lines
        ],
    )
