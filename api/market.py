"""Market calendar status and latest index snapshots."""
import logging
from typing import List

from fastapi import APIRouter, Depends

from api.deps import get_container
from schemas import IndexSnapshotOut, MarketStatusOut
from services.container import ServiceContainer
from services.errors import ResourceUnavailableError

router = APIRouter(tags=["market"])
logger = logging.getLogger(__name__)


@router.get("/status", response_model=MarketStatusOut, summary="Is the exchange open right now")
async def market_status(c: ServiceContainer = Depends(get_container)):
    try:
        await c.calendar.ensure_loaded()
    except ResourceUnavailableError as e:
        logger.warning(f"Market status without holiday table: {e}")
    return c.calendar.market_status()


@router.get("/indices", response_model=List[IndexSnapshotOut], summary="Latest index snapshot per symbol")
async def market_indices(c: ServiceContainer = Depends(get_container)):
    return await c.store.list_index_snapshots()
