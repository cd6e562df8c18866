"""
SQLAlchemy models (2.x Mapped style)
All timestamps are naive UTC
"""
from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import JSON, Boolean, Date, DateTime, Float, Index, Integer, String, Text, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class InstrumentRecord(Base):
    """Canonical instrument (mutual fund scheme), keyed by scheme code"""
    __tablename__ = "instruments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    scheme_code: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    fund_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    isin_growth: Mapped[Optional[str]] = mapped_column(String(16), index=True)
    isin_reinvest: Mapped[Optional[str]] = mapped_column(String(16), index=True)
    name: Mapped[str] = mapped_column(String(300))
    amc: Mapped[Optional[str]] = mapped_column(String(200))
    category: Mapped[str] = mapped_column(String(40), default="Other")
    sub_category: Mapped[Optional[str]] = mapped_column(String(120))
    value: Mapped[Optional[float]] = mapped_column(Float)
    value_date: Mapped[Optional[date]] = mapped_column(Date)
    aum: Mapped[Optional[float]] = mapped_column(Float)
    return_1y: Mapped[Optional[float]] = mapped_column(Float)
    return_3y: Mapped[Optional[float]] = mapped_column(Float)
    return_5y: Mapped[Optional[float]] = mapped_column(Float)
    data_source: Mapped[str] = mapped_column(String(40))
    last_fetched: Mapped[Optional[datetime]] = mapped_column(DateTime, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            "scheme_code": self.scheme_code,
            "fund_id": self.fund_id,
            "isin_growth": self.isin_growth,
            "isin_reinvest": self.isin_reinvest,
            "name": self.name,
            "amc": self.amc,
            "category": self.category,
            "sub_category": self.sub_category,
            "value": self.value,
            "value_date": self.value_date.isoformat() if self.value_date else None,
            "aum": self.aum,
            "return_1y": self.return_1y,
            "return_3y": self.return_3y,
            "return_5y": self.return_5y,
            "data_source": self.data_source,
            "last_fetched": self.last_fetched.isoformat() if self.last_fetched else None,
            "is_active": self.is_active,
        }


class InstrumentAlias(Base):
    """Alternate identifier (legacy id, slug, vendor code) -> canonical scheme code"""
    __tablename__ = "instrument_aliases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    alias: Mapped[str] = mapped_column(String(120), unique=True, index=True)
    scheme_code: Mapped[str] = mapped_column(String(32), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class ValueHistory(Base):
    """Daily value (NAV) per instrument, retained for trailing-return computation"""
    __tablename__ = "value_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    scheme_code: Mapped[str] = mapped_column(String(32), index=True)
    value_date: Mapped[date] = mapped_column(Date, index=True)
    value: Mapped[float] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("scheme_code", "value_date", name="ux_value_history_code_date"),
    )


class BackfillRequest(Base):
    """Lookup the read path could not satisfy, drained by the backfill worker"""
    __tablename__ = "backfill_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    search_query: Mapped[str] = mapped_column(String(200), index=True)
    scheme_code: Mapped[Optional[str]] = mapped_column(String(32), index=True)
    dedupe_key: Mapped[str] = mapped_column(String(200), index=True)
    status: Mapped[str] = mapped_column(String(16), default="pending", index=True)
    requested_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    next_attempt_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[Optional[str]] = mapped_column(Text)
    result: Mapped[Optional[str]] = mapped_column(String(32))

    __table_args__ = (
        # at most one live (pending/processing) request per identifier
        Index(
            "ux_backfill_live_dedupe_key",
            "dedupe_key",
            unique=True,
            sqlite_where=text("status IN ('pending', 'processing')"),
            postgresql_where=text("status IN ('pending', 'processing')"),
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "search_query": self.search_query,
            "scheme_code": self.scheme_code,
            "status": self.status,
            "requested_at": self.requested_at.isoformat() if self.requested_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "failed_at": self.failed_at.isoformat() if self.failed_at else None,
            "attempts": self.attempts,
            "error": self.error,
            "result": self.result,
        }


class MarketSession(Base):
    """Trading calendar row (holidays and special sessions)"""
    __tablename__ = "market_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    session_date: Mapped[date] = mapped_column(Date, unique=True, index=True)
    is_holiday: Mapped[bool] = mapped_column(Boolean, default=False)
    reason: Mapped[Optional[str]] = mapped_column(String(120))
    exchange: Mapped[str] = mapped_column(String(8), default="BOTH")
    open_time: Mapped[str] = mapped_column(String(5), default="09:15")
    close_time: Mapped[str] = mapped_column(String(5), default="15:30")
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class IndexSnapshot(Base):
    """Latest value per market index; no history is kept here"""
    __tablename__ = "index_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    symbol: Mapped[str] = mapped_column(String(40), unique=True, index=True)
    index_name: Mapped[str] = mapped_column(String(120))
    value: Mapped[float] = mapped_column(Float)
    change: Mapped[float] = mapped_column(Float, default=0.0)
    percent_change: Mapped[float] = mapped_column(Float, default=0.0)
    high: Mapped[Optional[float]] = mapped_column(Float)
    low: Mapped[Optional[float]] = mapped_column(Float)
    open: Mapped[Optional[float]] = mapped_column(Float)
    previous_close: Mapped[Optional[float]] = mapped_column(Float)
    is_market_open: Mapped[bool] = mapped_column(Boolean, default=False)
    data_source: Mapped[str] = mapped_column(String(16), default="vendor")
    last_updated: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)

    def to_dict(self):
        return {
            "symbol": self.symbol,
            "index_name": self.index_name,
            "value": self.value,
            "change": self.change,
            "percent_change": self.percent_change,
            "high": self.high,
            "low": self.low,
            "open": self.open,
            "previous_close": self.previous_close,
            "is_market_open": self.is_market_open,
            "data_source": self.data_source,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }


class ChartSeries(Base):
    """Weekly chart points per instrument and period (1Y/3Y/5Y), rebuilt by the weekly job"""
    __tablename__ = "chart_series"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    scheme_code: Mapped[str] = mapped_column(String(32), index=True)
    period: Mapped[str] = mapped_column(String(4))
    points: Mapped[list] = mapped_column(JSON, default=list)
    point_count: Mapped[int] = mapped_column(Integer, default=0)
    last_aggregated: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)

    __table_args__ = (
        UniqueConstraint("scheme_code", "period", name="ux_chart_series_code_period"),
    )

    def to_dict(self):
        return {
            "scheme_code": self.scheme_code,
            "period": self.period,
            "points": self.points or [],
            "point_count": self.point_count,
            "last_aggregated": self.last_aggregated.isoformat() if self.last_aggregated else None,
        }
