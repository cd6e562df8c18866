"""
Persistent instrument store.

Blocking SQLAlchemy work runs in a worker thread under an explicit timeout;
any database failure surfaces as ResourceUnavailableError("store").
Writes are idempotent upserts keyed by the canonical scheme code.
"""
import asyncio
import logging
from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from sqlalchemy import Date, DateTime, Float, and_, bindparam, case, delete, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError

from database import StoreHandle
from models import IndexSnapshot, InstrumentAlias, InstrumentRecord, ValueHistory, utcnow
from services.errors import ResourceUnavailableError
from services.identifiers import NormalizedIdentifier
from services.providers.base import InstrumentData
from services.singleflight import ConnectionManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

UPSERT_CHUNK = 500


def dialect_insert(handle: StoreHandle, model):
    if handle.dialect == "postgresql":
        return postgresql.insert(model)
    return sqlite.insert(model)


def _chunks(rows: List[Any], size: int = UPSERT_CHUNK) -> Iterable[List[Any]]:
    for i in range(0, len(rows), size):
        yield rows[i:i + size]


class InstrumentStore:
    def __init__(self, manager: "ConnectionManager[StoreHandle]", op_timeout: float = 5.0):
        self.manager = manager
        self.op_timeout = op_timeout

    async def run(self, fn: Callable[..., T], *args, timeout: Optional[float] = None) -> T:
        """Run fn(handle, *args) in a thread with a timeout"""
        handle = await self.manager.acquire()
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, handle, *args), timeout=timeout or self.op_timeout)
        except asyncio.TimeoutError as e:
            raise ResourceUnavailableError("store", f"{getattr(fn, '__name__', 'op')} timed out") from e
        except SQLAlchemyError as e:
            raise ResourceUnavailableError("store", f"{type(e).__name__}: {str(e)[:200]}") from e

    async def ping(self) -> bool:
        try:
            await self.run(_ping)
            return True
        except ResourceUnavailableError:
            return False

    async def find(self, ident: NormalizedIdentifier) -> Optional[Dict[str, Any]]:
        return await self.run(_find, ident)

    async def upsert_instruments(self, items: List[InstrumentData]) -> int:
        if not items:
            return 0
        return await self.run(_upsert_instruments, items)

    async def add_alias(self, alias: str, scheme_code: str) -> None:
        await self.run(_add_alias, alias, scheme_code)

    async def code_map(self) -> Dict[str, str]:
        return await self.run(_code_map, timeout=max(self.op_timeout, 30.0))

    async def upsert_values(self, records: List[Dict[str, Any]]) -> int:
        if not records:
            return 0
        return await self.run(_upsert_values, records, timeout=max(self.op_timeout, 120.0))

    async def prune_history(self, before: date) -> int:
        return await self.run(_prune_history, before, timeout=max(self.op_timeout, 60.0))

    async def replace_index_snapshots(self, rows: List[Dict[str, Any]]) -> int:
        return await self.run(_replace_index_snapshots, rows)

    async def list_index_snapshots(self) -> List[Dict[str, Any]]:
        return await self.run(_list_index_snapshots)


def _ping(handle: StoreHandle) -> None:
    with handle.session() as db:
        db.execute(select(1))


def _find(handle: StoreHandle, ident: NormalizedIdentifier) -> Optional[Dict[str, Any]]:
    col = InstrumentRecord
    if ident.kind == "scheme_code":
        cond = col.scheme_code == ident.value
    elif ident.kind == "isin":
        cond = or_(col.isin_growth == ident.value, col.isin_reinvest == ident.value)
    else:
        cond = col.fund_id == ident.value
    with handle.session() as db:
        rec = db.execute(select(col).where(cond).limit(1)).scalar_one_or_none()
        if rec is None:
            code = db.execute(
                select(InstrumentAlias.scheme_code).where(InstrumentAlias.alias == ident.raw.lower())
            ).scalar_one_or_none()
            if code:
                rec = db.execute(select(col).where(col.scheme_code == code)).scalar_one_or_none()
        return rec.to_dict() if rec else None


def _upsert_instruments(handle: StoreHandle, items: List[InstrumentData]) -> int:
    now = utcnow()
    # last writer per code wins inside one batch
    by_code = {}
    for item in items:
        row = item.to_row()
        row.update(created_at=now, updated_at=now, is_active=True)
        by_code[row["scheme_code"]] = row
    rows = list(by_code.values())

    t = InstrumentRecord.__table__.c
    written = 0
    with handle.session() as db:
        for chunk in _chunks(rows):
            stmt = dialect_insert(handle, InstrumentRecord).values(chunk)
            ex = stmt.excluded
            newer_value = and_(ex.value.isnot(None), or_(t.value_date.is_(None), ex.value_date.is_(None), ex.value_date >= t.value_date))
            stmt = stmt.on_conflict_do_update(
                index_elements=["scheme_code"],
                set_={
                    "name": ex.name,
                    "category": ex.category,
                    "sub_category": func.coalesce(ex.sub_category, t.sub_category),
                    "amc": func.coalesce(ex.amc, t.amc),
                    "fund_id": func.coalesce(t.fund_id, ex.fund_id),
                    "isin_growth": func.coalesce(ex.isin_growth, t.isin_growth),
                    "isin_reinvest": func.coalesce(ex.isin_reinvest, t.isin_reinvest),
                    "aum": func.coalesce(ex.aum, t.aum),
                    "value": case((newer_value, ex.value), else_=t.value),
                    "value_date": case((newer_value, func.coalesce(ex.value_date, t.value_date)), else_=t.value_date),
                    "return_1y": func.coalesce(ex.return_1y, t.return_1y),
                    "return_3y": func.coalesce(ex.return_3y, t.return_3y),
                    "return_5y": func.coalesce(ex.return_5y, t.return_5y),
                    "data_source": ex.data_source,
                    "last_fetched": case(
                        (or_(t.last_fetched.is_(None), ex.last_fetched > t.last_fetched), ex.last_fetched),
                        else_=t.last_fetched,
                    ),
                    "updated_at": ex.updated_at,
                },
            )
            db.execute(stmt)
            written += len(chunk)
    return written


def _add_alias(handle: StoreHandle, alias: str, scheme_code: str) -> None:
    with handle.session() as db:
        stmt = dialect_insert(handle, InstrumentAlias).values(alias=alias.lower(), scheme_code=scheme_code, created_at=utcnow())
        stmt = stmt.on_conflict_do_update(index_elements=["alias"], set_={"scheme_code": stmt.excluded.scheme_code})
        db.execute(stmt)


def _code_map(handle: StoreHandle) -> Dict[str, str]:
    """Feed code or ISIN -> canonical scheme code, active instruments only"""
    out: Dict[str, str] = {}
    with handle.session() as db:
        rows = db.execute(
            select(InstrumentRecord.scheme_code, InstrumentRecord.isin_growth, InstrumentRecord.isin_reinvest)
            .where(InstrumentRecord.is_active.is_(True))
        ).all()
    for code, isin_g, isin_r in rows:
        for key in (isin_g, isin_r):
            if key:
                out[key] = code
        out[code] = code
    return out


def _upsert_values(handle: StoreHandle, records: List[Dict[str, Any]]) -> int:
    """
    records: {scheme_code, value, value_date}
    Writes value_history (keyed by code+date) and advances the instrument's
    current value when the record is not older than what is stored.
    """
    now = utcnow()
    t = InstrumentRecord.__table__.c
    history_rows = [
        {"scheme_code": r["scheme_code"], "value_date": r["value_date"], "value": r["value"], "created_at": now}
        for r in records
    ]
    b_date = bindparam("b_date", type_=Date())
    b_fetched = bindparam("b_fetched", type_=DateTime())
    current = update(InstrumentRecord.__table__).where(
        and_(
            t.scheme_code == bindparam("b_code"),
            or_(t.value_date.is_(None), t.value_date <= b_date),
        )
    ).values(
        value=bindparam("b_value", type_=Float()),
        value_date=b_date,
        last_fetched=case(
            (or_(t.last_fetched.is_(None), t.last_fetched < b_fetched), b_fetched),
            else_=t.last_fetched,
        ),
        updated_at=b_fetched,
    )
    with handle.session() as db:
        for chunk in _chunks(history_rows):
            stmt = dialect_insert(handle, ValueHistory).values(chunk)
            stmt = stmt.on_conflict_do_update(
                index_elements=["scheme_code", "value_date"],
                set_={"value": stmt.excluded.value},
            )
            db.execute(stmt)
        db.execute(
            current,
            [
                {"b_code": r["scheme_code"], "b_date": r["value_date"], "b_value": r["value"], "b_fetched": now}
                for r in records
            ],
        )
    return len(history_rows)


def _prune_history(handle: StoreHandle, before: date) -> int:
    with handle.session() as db:
        result = db.execute(delete(ValueHistory).where(ValueHistory.value_date < before))
        return result.rowcount or 0


def _replace_index_snapshots(handle: StoreHandle, rows: List[Dict[str, Any]]) -> int:
    """Overwrite the latest snapshot per symbol in one transaction"""
    if not rows:
        return 0
    with handle.session() as db:
        stmt = dialect_insert(handle, IndexSnapshot).values(rows)
        ex = stmt.excluded
        stmt = stmt.on_conflict_do_update(
            index_elements=["symbol"],
            set_={k: getattr(ex, k) for k in rows[0].keys() if k != "symbol"},
        )
        db.execute(stmt)
    return len(rows)


def _list_index_snapshots(handle: StoreHandle) -> List[Dict[str, Any]]:
    with handle.session() as db:
        rows = db.execute(select(IndexSnapshot).order_by(IndexSnapshot.symbol)).scalars().all()
        return [r.to_dict() for r in rows]

