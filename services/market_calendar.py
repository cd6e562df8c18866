"""
Market calendar (NSE/BSE).

Trading hours are defined in Asia/Kolkata; instants are converted with
zoneinfo before comparison. The session table is loaded once into memory
and is_open() is a pure lookup against it, so jobs can call it without a
store round trip.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select

from database import StoreHandle
from models import MarketSession, utcnow
from services.instrument_store import dialect_insert

logger = logging.getLogger(__name__)

DEFAULT_OPEN = "09:15"
DEFAULT_CLOSE = "15:30"

HOLIDAYS: Dict[int, List[tuple]] = {
    2026: [
        ("2026-01-26", "Republic Day"),
        ("2026-03-03", "Mahashivratri"),
        ("2026-03-11", "Holi"),
        ("2026-03-30", "Ram Navami"),
        ("2026-04-02", "Mahavir Jayanti"),
        ("2026-04-03", "Good Friday"),
        ("2026-04-06", "Id-Ul-Fitr (Ramadan Eid)"),
        ("2026-04-14", "Dr. Baba Saheb Ambedkar Jayanti"),
        ("2026-05-01", "Maharashtra Day"),
        ("2026-06-15", "Id-Ul-Adha (Bakri Eid)"),
        ("2026-07-06", "Muharram"),
        ("2026-08-15", "Independence Day"),
        ("2026-08-27", "Janmashtami"),
        ("2026-09-05", "Ganesh Chaturthi"),
        ("2026-10-02", "Gandhi Jayanti"),
        ("2026-10-20", "Dussehra"),
        ("2026-10-24", "Milad-Un-Nabi"),
        ("2026-11-09", "Diwali"),
        ("2026-11-10", "Diwali (Balipratipada)"),
        ("2026-11-24", "Gurunanak Jayanti"),
        ("2026-12-25", "Christmas"),
    ],
}


@dataclass(frozen=True)
class SessionRule:
    is_holiday: bool = False
    reason: Optional[str] = None
    open_time: str = DEFAULT_OPEN
    close_time: str = DEFAULT_CLOSE


@dataclass(frozen=True)
class MarketStatus:
    is_open: bool
    reason: Optional[str]
    current_time: datetime  # exchange-local


class MarketCalendar:
    def __init__(self, tz: str = "Asia/Kolkata", store=None):
        self.tz = ZoneInfo(tz)
        self.store = store
        self._sessions: Dict[date, SessionRule] = {}
        self._loaded_year: Optional[int] = None

    async def ensure_loaded(self, instant: Optional[datetime] = None) -> bool:
        """
        Seed the local year's holidays and load the session table, once per
        year. True when a (re)load happened. Raises ResourceUnavailableError
        while the store is unreachable; the next call tries again.
        """
        year = self.local_time(instant).year
        if self._loaded_year == year:
            return False
        await self.seed_holidays(year)
        await self.load()
        self._loaded_year = year
        return True

    async def load(self) -> int:
        rows = await self.store.run(_load_sessions)
        self.load_rows(rows)
        logger.info(f"Market calendar loaded: {len(self._sessions)} sessions")
        return len(self._sessions)

    def load_rows(self, rows: Iterable[dict]) -> None:
        sessions = {}
        for row in rows:
            sessions[row["session_date"]] = SessionRule(
                is_holiday=bool(row.get("is_holiday")),
                reason=row.get("reason"),
                open_time=row.get("open_time") or DEFAULT_OPEN,
                close_time=row.get("close_time") or DEFAULT_CLOSE,
            )
        self._sessions = sessions

    def local_time(self, instant: Optional[datetime] = None) -> datetime:
        if instant is None:
            instant = datetime.now(timezone.utc)
        elif instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        return instant.astimezone(self.tz)

    def is_open(self, instant: Optional[datetime] = None) -> MarketStatus:
        now = self.local_time(instant)
        if now.weekday() >= 5:
            return MarketStatus(False, "Weekend", now)

        rule = self._sessions.get(now.date(), SessionRule())
        if rule.is_holiday:
            return MarketStatus(False, rule.reason or "Market Holiday", now)

        hhmm = now.strftime("%H:%M")
        if hhmm < rule.open_time:
            return MarketStatus(False, "Market not yet opened", now)
        if hhmm > rule.close_time:
            return MarketStatus(False, "Market closed for the day", now)
        return MarketStatus(True, None, now)

    def market_status(self, instant: Optional[datetime] = None) -> dict:
        status = self.is_open(instant)
        return {
            "is_open": status.is_open,
            "reason": status.reason,
            "current_time": status.current_time.strftime("%d %b %Y, %I:%M %p"),
            "timestamp": status.current_time.isoformat(),
        }

    def is_trading_day(self, day: date) -> bool:
        if day.weekday() >= 5:
            return False
        rule = self._sessions.get(day)
        return not (rule and rule.is_holiday)

    def next_trading_day(self, from_date: Optional[date] = None) -> date:
        day = from_date or self.local_time().date()
        # a year of consecutive closures means the calendar is broken
        for _ in range(366):
            day = day + timedelta(days=1)
            if self.is_trading_day(day):
                return day
        raise ValueError(f"No trading day within a year of {from_date}")

    async def add_holidays(self, holidays: List[dict]) -> int:
        """holidays: [{date: 'YYYY-MM-DD', name, exchange?}]"""
        rows = [
            {
                "session_date": date.fromisoformat(h["date"]),
                "is_holiday": True,
                "reason": h["name"],
                "exchange": h.get("exchange") or "BOTH",
                "open_time": DEFAULT_OPEN,
                "close_time": DEFAULT_CLOSE,
            }
            for h in holidays
        ]
        written = await self.store.run(_upsert_holidays, rows)
        for row in rows:
            current = self._sessions.get(row["session_date"], SessionRule())
            self._sessions[row["session_date"]] = SessionRule(True, row["reason"], current.open_time, current.close_time)
        return written

    async def seed_holidays(self, year: int) -> int:
        table = HOLIDAYS.get(year)
        if not table:
            logger.warning(f"No holiday table shipped for {year}")
            return 0
        written = await self.add_holidays([{"date": d, "name": n} for d, n in table])
        logger.info(f"Seeded {written} market holidays for {year}")
        return written


def _load_sessions(handle: StoreHandle) -> List[dict]:
    with handle.session() as db:
        rows = db.execute(select(MarketSession)).scalars().all()
        return [
            {
                "session_date": r.session_date,
                "is_holiday": r.is_holiday,
                "reason": r.reason,
                "open_time": r.open_time,
                "close_time": r.close_time,
            }
            for r in rows
        ]


def _upsert_holidays(handle: StoreHandle, rows: List[dict]) -> int:
    if not rows:
        return 0
    now = utcnow()
    with handle.session() as db:
        stmt = dialect_insert(handle, MarketSession).values([dict(r, updated_at=now) for r in rows])
        ex = stmt.excluded
        stmt = stmt.on_conflict_do_update(
            index_elements=["session_date"],
            set_={"is_holiday": ex.is_holiday, "reason": ex.reason, "exchange": ex.exchange, "updated_at": ex.updated_at},
        )
        db.execute(stmt)
    return len(rows)
