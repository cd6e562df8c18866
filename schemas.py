"""
Pydantic response schemas
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class FundRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    scheme_code: str
    fund_id: Optional[str] = None
    isin_growth: Optional[str] = None
    isin_reinvest: Optional[str] = None
    name: str
    amc: Optional[str] = None
    category: str = "Other"
    sub_category: Optional[str] = None
    value: Optional[float] = None
    value_date: Optional[str] = None
    aum: Optional[float] = None
    return_1y: Optional[float] = None
    return_3y: Optional[float] = None
    return_5y: Optional[float] = None
    data_source: Optional[str] = None
    last_fetched: Optional[str] = None
    is_active: bool = True


class FundResponse(BaseModel):
    data: FundRecord
    source: str = Field(description="cache, store or the provider that answered")


class QueuedResponse(BaseModel):
    identifier: str
    queued: bool
    message: str


class BackfillRequestOut(BaseModel):
    id: int
    search_query: str
    scheme_code: Optional[str] = None
    status: str
    requested_at: Optional[str] = None
    processed_at: Optional[str] = None
    completed_at: Optional[str] = None
    failed_at: Optional[str] = None
    attempts: int = 0
    error: Optional[str] = None
    result: Optional[str] = None


class BackfillStats(BaseModel):
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0


class JobCounts(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0


class JobHandleOut(BaseModel):
    id: str
    name: str


class MarketStatusOut(BaseModel):
    is_open: bool
    reason: Optional[str] = None
    current_time: str
    timestamp: str


class IndexSnapshotOut(BaseModel):
    symbol: str
    index_name: str
    value: float
    change: float = 0.0
    percent_change: float = 0.0
    high: Optional[float] = None
    low: Optional[float] = None
    open: Optional[float] = None
    previous_close: Optional[float] = None
    is_market_open: bool = False
    data_source: str = "vendor"
    last_updated: Optional[str] = None


class ChartPoint(BaseModel):
    date: str
    value: float


class ChartSeriesOut(BaseModel):
    scheme_code: str
    period: str
    points: List[ChartPoint] = Field(default_factory=list)
    point_count: int = 0
    last_aggregated: Optional[str] = None


class HealthOut(BaseModel):
    status: str
    timestamp: str
    services: Dict[str, Any]
    environment: str
