"""
Trailing returns (1Y/3Y/5Y) from value_history.

For each period the past value is the latest one at or before
(reference date - N years), where the reference date is the instrument's
most recent history row. Returns are plain percentage change, not annualized.
"""
import logging
from bisect import bisect_right
from datetime import date
from itertools import groupby
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import bindparam, select, update

from database import StoreHandle
from models import InstrumentRecord, ValueHistory

logger = logging.getLogger(__name__)

TRAILING_PERIODS = (("return_1y", 1), ("return_3y", 3), ("return_5y", 5))


def years_before(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year - years)
    except ValueError:
        # Feb 29 -> Feb 28
        return day.replace(year=day.year - years, day=28)


def value_at_or_before(history: Sequence[Tuple[date, float]], target: date) -> Optional[float]:
    """history must be sorted by date ascending"""
    idx = bisect_right([d for d, _ in history], target)
    if idx == 0:
        return None
    return history[idx - 1][1]


def percent_return(past: Optional[float], current: float) -> Optional[float]:
    if not past:
        return None
    return round((current - past) / past * 100, 4)


def trailing_returns(history: Sequence[Tuple[date, float]]) -> Dict[str, Optional[float]]:
    if not history:
        return {col: None for col, _ in TRAILING_PERIODS}
    latest_date, latest_value = history[-1]
    return {
        col: percent_return(value_at_or_before(history, years_before(latest_date, years)), latest_value)
        for col, years in TRAILING_PERIODS
    }


class ReturnsService:
    def __init__(self, store, chunk_size: int = 200):
        self.store = store
        self.chunk_size = chunk_size

    async def recompute(self, scheme_codes: Iterable[str]) -> int:
        codes = sorted(set(scheme_codes))
        updated = 0
        for i in range(0, len(codes), self.chunk_size):
            updated += await self.store.run(_recompute_chunk, codes[i:i + self.chunk_size], timeout=120.0)
        logger.info(f"Trailing returns recomputed for {updated} instruments")
        return updated


def _recompute_chunk(handle: StoreHandle, codes: List[str]) -> int:
    with handle.session() as db:
        rows = db.execute(
            select(ValueHistory.scheme_code, ValueHistory.value_date, ValueHistory.value)
            .where(ValueHistory.scheme_code.in_(codes))
            .order_by(ValueHistory.scheme_code, ValueHistory.value_date)
        ).all()
        params = []
        for code, group in groupby(rows, key=lambda r: r[0]):
            history = [(r[1], r[2]) for r in group]
            params.append({"b_code": code, **{f"b_{k}": v for k, v in trailing_returns(history).items()}})
        if not params:
            return 0
        t = InstrumentRecord.__table__.c
        db.execute(
            update(InstrumentRecord.__table__)
            .where(t.scheme_code == bindparam("b_code"))
            .values(
                return_1y=bindparam("b_return_1y"),
                return_3y=bindparam("b_return_3y"),
                return_5y=bindparam("b_return_5y"),
            ),
            params,
        )
        return len(params)
