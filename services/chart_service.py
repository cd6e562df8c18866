"""
Weekly chart series (1Y/3Y/5Y) from value_history.

One point per week: the latest value of each Sunday-started week, so a 1Y
series has about 52 points and a 5Y series about 260.
"""
import logging
from datetime import date, datetime, timedelta
from itertools import groupby
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import delete, select

from database import StoreHandle
from models import ChartSeries, InstrumentRecord, ValueHistory, utcnow
from services.instrument_store import dialect_insert
from services.returns_service import years_before

logger = logging.getLogger(__name__)

CHART_PERIODS = (("1Y", 1), ("3Y", 3), ("5Y", 5))
STALE_AFTER_DAYS = 7


def week_start(day: date) -> date:
    return day - timedelta(days=(day.weekday() + 1) % 7)


def weekly_points(history: Sequence[Tuple[date, float]]) -> List[Dict[str, Any]]:
    """Latest value per week, ascending. history must be sorted by date ascending."""
    weeks: Dict[date, Tuple[date, float]] = {}
    for day, value in history:
        weeks[week_start(day)] = (day, value)
    return [{"date": d.isoformat(), "value": v} for d, v in sorted(weeks.values())]


def chart_series(history: Sequence[Tuple[date, float]], today: date) -> Dict[str, List[Dict[str, Any]]]:
    out = {}
    for period, years in CHART_PERIODS:
        since = years_before(today, years)
        points = weekly_points([(d, v) for d, v in history if d >= since])
        if points:
            out[period] = points
    return out


class ChartService:
    def __init__(self, store, stale_after_days: int = STALE_AFTER_DAYS):
        self.store = store
        self.stale_after_days = stale_after_days

    async def active_codes(self) -> List[str]:
        return await self.store.run(_active_codes)

    async def aggregate(self, scheme_codes: Sequence[str], today: Optional[date] = None) -> int:
        """Rebuild every period for scheme_codes; returns the number of series written"""
        today = today or utcnow().date()
        codes = sorted(set(scheme_codes))
        written = await self.store.run(_aggregate, codes, today, timeout=120.0)
        logger.debug(f"Chart series rebuilt: {written} series for {len(codes)} instruments")
        return written

    async def get(self, scheme_code: str, period: str) -> Optional[Dict[str, Any]]:
        """Stored series, rebuilt first when missing or older than stale_after_days"""
        series = await self.store.run(_get_series, scheme_code, period)
        cutoff = utcnow() - timedelta(days=self.stale_after_days)
        if series is None or datetime.fromisoformat(series["last_aggregated"]) < cutoff:
            await self.aggregate([scheme_code])
            series = await self.store.run(_get_series, scheme_code, period)
        return series

    async def cleanup(self, older_than_days: int = 30) -> int:
        cutoff = utcnow() - timedelta(days=older_than_days)
        return await self.store.run(_delete_stale, cutoff)


def _active_codes(handle: StoreHandle) -> List[str]:
    with handle.session() as db:
        return list(
            db.execute(
                select(InstrumentRecord.scheme_code)
                .where(InstrumentRecord.is_active.is_(True))
                .order_by(InstrumentRecord.scheme_code)
            ).scalars()
        )


def _aggregate(handle: StoreHandle, codes: List[str], today: date) -> int:
    if not codes:
        return 0
    since = years_before(today, max(years for _, years in CHART_PERIODS))
    now = utcnow()
    with handle.session() as db:
        rows = db.execute(
            select(ValueHistory.scheme_code, ValueHistory.value_date, ValueHistory.value)
            .where(ValueHistory.scheme_code.in_(codes), ValueHistory.value_date >= since)
            .order_by(ValueHistory.scheme_code, ValueHistory.value_date)
        ).all()
        values = []
        for code, group in groupby(rows, key=lambda r: r[0]):
            for period, points in chart_series([(r[1], r[2]) for r in group], today).items():
                values.append(
                    {"scheme_code": code, "period": period, "points": points, "point_count": len(points), "last_aggregated": now}
                )
        if not values:
            return 0
        stmt = dialect_insert(handle, ChartSeries).values(values)
        ex = stmt.excluded
        stmt = stmt.on_conflict_do_update(
            index_elements=["scheme_code", "period"],
            set_={"points": ex.points, "point_count": ex.point_count, "last_aggregated": ex.last_aggregated},
        )
        db.execute(stmt)
    return len(values)


def _get_series(handle: StoreHandle, scheme_code: str, period: str) -> Optional[Dict[str, Any]]:
    with handle.session() as db:
        series = db.execute(
            select(ChartSeries).where(ChartSeries.scheme_code == scheme_code, ChartSeries.period == period)
        ).scalar_one_or_none()
        return series.to_dict() if series else None


def _delete_stale(handle: StoreHandle, cutoff) -> int:
    with handle.session() as db:
        result = db.execute(delete(ChartSeries).where(ChartSeries.last_aggregated < cutoff))
        return result.rowcount or 0
