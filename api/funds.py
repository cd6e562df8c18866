"""Fund lookup and backfill status endpoints."""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse

from api.deps import get_container
from schemas import BackfillRequestOut, BackfillStats, ChartSeriesOut, FundRecord, FundResponse, QueuedResponse
from services.container import ServiceContainer
from services.identifiers import normalize_identifier
from services.resolver import Resolved

router = APIRouter(tags=["funds"])
logger = logging.getLogger(__name__)


@router.get("/backfill/status", response_model=BackfillRequestOut, summary="Most recent backfill request for a query")
async def backfill_status(
    q: str = Query(..., min_length=1, max_length=200, description="Original lookup string or scheme code"),
    c: ServiceContainer = Depends(get_container),
):
    req = await c.backfill_queue.status(q)
    if req is None:
        raise HTTPException(status_code=404, detail=f"No backfill request for {q!r}")
    return req


@router.get("/backfill/stats", response_model=BackfillStats, summary="Backfill request counts per status")
async def backfill_stats(c: ServiceContainer = Depends(get_container)):
    return await c.backfill_queue.stats()


@router.get(
    "/{identifier}",
    response_model=FundResponse,
    responses={202: {"model": QueuedResponse, "description": "Not available yet, queued for retrieval"}},
    summary="Resolve a fund by scheme code, ISIN, fund id or alias",
)
async def get_fund(identifier: str, c: ServiceContainer = Depends(get_container)):
    result = await c.resolver.resolve(identifier)
    if isinstance(result, Resolved):
        return FundResponse(data=FundRecord(**result.record), source=result.source)
    if result.queued:
        body = QueuedResponse(identifier=result.identifier, queued=True, message=result.message)
        return JSONResponse(status_code=202, content=body.model_dump())
    raise HTTPException(status_code=404, detail=result.message)


@router.get("/{identifier}/chart", response_model=ChartSeriesOut, summary="Weekly chart points for a stored fund")
async def get_fund_chart(
    identifier: str,
    period: str = Query("1Y", pattern="^(1Y|3Y|5Y)$"),
    c: ServiceContainer = Depends(get_container),
):
    try:
        ident = normalize_identifier(identifier)
    except ValueError:
        raise HTTPException(status_code=404, detail="Fund not found.")
    record = await c.store.find(ident)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Fund {identifier!r} is not stored yet")
    series = await c.chart_service.get(record["scheme_code"], period)
    if series is None:
        raise HTTPException(status_code=404, detail=f"No value history for {record['scheme_code']} ({period})")
    return series
