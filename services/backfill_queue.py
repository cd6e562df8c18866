"""
Backfill queue for lookups the read path could not satisfy.

Dedupe is enforced by the store: a partial unique index allows at most one
pending/processing request per dedupe key, so two concurrent enqueues of the
same identifier cannot both insert. Terminal rows are kept for status
queries; re-enqueueing after completion or failure creates a fresh request.
"""
import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError

from database import StoreHandle
from models import BackfillRequest, utcnow
from services.errors import NotFoundError, ResourceUnavailableError
from services.identifiers import normalize_identifier
from services.resolver import pick_match

logger = logging.getLogger(__name__)

STATUSES = ("pending", "processing", "completed", "failed")


def make_dedupe_key(query: str, scheme_code: Optional[str] = None) -> str:
    if scheme_code:
        return str(scheme_code).strip()
    return (query or "").strip().lower()


class BackfillQueue:
    def __init__(self, store, max_attempts: int = 3, retry_delay_seconds: float = 60.0):
        self.store = store
        self.max_attempts = max(1, int(max_attempts))
        self.retry_delay_seconds = retry_delay_seconds

    async def enqueue(self, query: str, scheme_code: Optional[str] = None) -> bool:
        """False when a pending/processing request for the same identifier exists"""
        added = await self.store.run(_enqueue, query.strip(), scheme_code, make_dedupe_key(query, scheme_code))
        if added:
            logger.info(f"Backfill queued: {query!r} (scheme_code={scheme_code})")
        return added

    async def claim_next(self) -> Optional[Dict[str, Any]]:
        return await self.store.run(_claim_next, utcnow())

    async def mark_completed(self, request_id: int, result: str) -> None:
        await self.store.run(_mark_completed, request_id, result)

    async def mark_failed(self, request_id: int, error: str) -> Optional[str]:
        """Returns the status after the failure: pending (retry scheduled) or failed"""
        return await self.store.run(_mark_failed, request_id, error, self.max_attempts, self.retry_delay_seconds)

    async def reclaim_stale(self, older_than_seconds: float) -> int:
        cutoff = utcnow() - timedelta(seconds=older_than_seconds)
        return await self.store.run(_reclaim_stale, cutoff)

    async def status(self, query: str) -> Optional[Dict[str, Any]]:
        """Most recent request for query (by requested_at)"""
        return await self.store.run(_status, query.strip())

    async def stats(self) -> Dict[str, int]:
        return await self.store.run(_stats)


def _enqueue(handle: StoreHandle, query: str, scheme_code: Optional[str], dedupe_key: str) -> bool:
    now = utcnow()
    try:
        with handle.session() as db:
            db.add(
                BackfillRequest(
                    search_query=query,
                    scheme_code=scheme_code,
                    dedupe_key=dedupe_key,
                    status="pending",
                    requested_at=now,
                    next_attempt_at=now,
                    attempts=0,
                )
            )
    except IntegrityError:
        return False
    return True


def _claim_next(handle: StoreHandle, now: datetime) -> Optional[Dict[str, Any]]:
    with handle.session() as db:
        # compare-and-set on status; losing a race just means trying the next row
        for _ in range(5):
            request_id = db.execute(
                select(BackfillRequest.id)
                .where(BackfillRequest.status == "pending", BackfillRequest.next_attempt_at <= now)
                .order_by(BackfillRequest.requested_at, BackfillRequest.id)
                .limit(1)
            ).scalar_one_or_none()
            if request_id is None:
                return None
            result = db.execute(
                update(BackfillRequest)
                .where(BackfillRequest.id == request_id, BackfillRequest.status == "pending")
                .values(status="processing", processed_at=now, attempts=BackfillRequest.attempts + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return db.get(BackfillRequest, request_id).to_dict()
    return None


def _mark_completed(handle: StoreHandle, request_id: int, result: str) -> None:
    with handle.session() as db:
        req = db.get(BackfillRequest, request_id)
        if req is None:
            return
        req.status = "completed"
        req.completed_at = utcnow()
        req.result = result
        req.error = None


def _mark_failed(handle: StoreHandle, request_id: int, error: str, max_attempts: int, retry_delay: float) -> Optional[str]:
    now = utcnow()
    with handle.session() as db:
        req = db.get(BackfillRequest, request_id)
        if req is None:
            return None
        req.error = (error or "")[:1000]
        if req.attempts < max_attempts:
            req.status = "pending"
            req.next_attempt_at = now + timedelta(seconds=retry_delay * (2 ** max(0, req.attempts - 1)))
        else:
            req.status = "failed"
            req.failed_at = now
        return req.status


def _reclaim_stale(handle: StoreHandle, cutoff: datetime) -> int:
    with handle.session() as db:
        result = db.execute(
            update(BackfillRequest)
            .where(BackfillRequest.status == "processing", BackfillRequest.processed_at < cutoff)
            .values(status="pending", next_attempt_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0


def _status(handle: StoreHandle, query: str) -> Optional[Dict[str, Any]]:
    with handle.session() as db:
        req = db.execute(
            select(BackfillRequest)
            .where(
                or_(
                    BackfillRequest.search_query == query,
                    BackfillRequest.scheme_code == query,
                    BackfillRequest.dedupe_key == query.lower(),
                )
            )
            .order_by(BackfillRequest.requested_at.desc(), BackfillRequest.id.desc())
            .limit(1)
        ).scalar_one_or_none()
        return req.to_dict() if req else None


def _stats(handle: StoreHandle) -> Dict[str, int]:
    with handle.session() as db:
        rows = db.execute(select(BackfillRequest.status, func.count()).group_by(BackfillRequest.status)).all()
    out = {s: 0 for s in STATUSES}
    for status, count in rows:
        out[status] = int(count)
    out["total"] = sum(out[s] for s in STATUSES)
    return out


class BackfillWorker:
    """Drains the backfill queue one request at a time"""

    def __init__(
        self,
        queue: BackfillQueue,
        resolver,
        store,
        poll_seconds: float = 5.0,
        provider_timeout: float = 30.0,
        reclaim_interval: float = 60.0,
    ):
        self.queue = queue
        self.resolver = resolver
        self.store = store
        self.poll_seconds = poll_seconds
        self.provider_timeout = provider_timeout
        self.reclaim_interval = reclaim_interval
        self.is_running = False
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        self._last_reclaim = 0.0

    async def reclaim(self) -> int:
        """Return processing rows older than twice the provider timeout to pending"""
        self._last_reclaim = time.monotonic()
        try:
            reclaimed = await self.queue.reclaim_stale(older_than_seconds=self.provider_timeout * 2)
        except ResourceUnavailableError as e:
            logger.warning(f"Backfill reclaim skipped: {e}")
            return 0
        if reclaimed:
            logger.info(f"Backfill worker reclaimed {reclaimed} stale requests")
        return reclaimed

    async def start(self) -> None:
        if self.is_running:
            return
        self._stop = asyncio.Event()
        await self.reclaim()
        self.is_running = True
        self._task = asyncio.create_task(self._run())
        logger.info("Backfill worker started")

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None
        self.is_running = False
        logger.info("Backfill worker stopped")

    async def _run(self) -> None:
        while not self._stop.is_set():
            if time.monotonic() - self._last_reclaim >= self.reclaim_interval:
                await self.reclaim()
            try:
                outcome = await self.run_once()
            except ResourceUnavailableError as e:
                logger.warning(f"Backfill worker paused: {e}")
                outcome = None
            if outcome is None:
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.poll_seconds)
                except asyncio.TimeoutError:
                    pass

    async def run_once(self) -> Optional[Dict[str, Any]]:
        """Process one due request. None when the queue has nothing due."""
        req = await self.queue.claim_next()
        if req is None:
            return None
        try:
            return await self._process(req)
        except ResourceUnavailableError as e:
            # hand the claimed row back so it is not stuck in processing
            try:
                status = await self.queue.mark_failed(req["id"], str(e))
                logger.warning(f"[backfill-{req['id']}] store error, status={status}: {e}")
            except ResourceUnavailableError as release_error:
                logger.warning(f"[backfill-{req['id']}] left for reclaim: {release_error}")
            raise

    async def _process(self, req: Dict[str, Any]) -> Dict[str, Any]:
        query = req["scheme_code"] or req["search_query"]
        logger.info(f"[backfill-{req['id']}] processing {query!r} (attempt {req['attempts']})")
        try:
            items, provider = await self.resolver.search(query, timeout=self.provider_timeout)
        except NotFoundError as e:
            status = await self.queue.mark_failed(req["id"], str(e))
            logger.info(f"[backfill-{req['id']}] not found, status={status}")
            return {"id": req["id"], "status": status}

        match = pick_match(normalize_identifier(query), items)
        await self.store.upsert_instruments(items)
        if not req["scheme_code"] and req["search_query"] != match.scheme_code:
            await self.store.add_alias(req["search_query"], match.scheme_code)
        await self.queue.mark_completed(req["id"], match.scheme_code)
        logger.info(f"[backfill-{req['id']}] completed via {provider} -> {match.scheme_code}")
        return {"id": req["id"], "status": "completed", "scheme_code": match.scheme_code}
