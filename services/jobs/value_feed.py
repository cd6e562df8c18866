"""
Daily value-feed ingestion (AMFI NAVAll.txt, 22:30 Asia/Kolkata).

Feed format, one record per line:
    Code;ISIN1;ISIN2;Name;Value;DD-MMM-YYYY
interleaved with bare header lines (scheme-type sections and issuing-house
names). A malformed record is skipped, never fatal for the batch.
"""
import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Optional, Set

import httpx

from models import utcnow
from services.errors import MalformedFeedError, TransientProviderError
from services.identifiers import clean_optional_id
from services.providers.taxonomy import split_scheme_header
from services.returns_service import years_before

logger = logging.getLogger(__name__)

JOB_NAME = "daily-nav"
RETENTION_YEARS = 5
COLUMN_HEADER_PREFIX = "scheme code"


@dataclass
class FeedRecord:
    code: str
    isin_growth: Optional[str]
    isin_reinvest: Optional[str]
    name: str
    value: float
    value_date: date
    amc: Optional[str] = None
    category: Optional[str] = None
    sub_category: Optional[str] = None


@dataclass
class FeedParseResult:
    records: List[FeedRecord] = field(default_factory=list)
    malformed: int = 0
    headers: int = 0


def parse_feed_line(line: str, line_no: int = 0) -> FeedRecord:
    """Parse one delimited record; MalformedFeedError when it is not usable"""
    parts = [p.strip() for p in line.split(";")]
    if len(parts) < 4:
        raise MalformedFeedError(line_no, line, f"expected at least 4 fields, got {len(parts)}")
    code = parts[0]
    if not code:
        raise MalformedFeedError(line_no, line, "empty code")
    try:
        value = float(parts[-2])
    except ValueError as e:
        raise MalformedFeedError(line_no, line, f"bad value {parts[-2]!r}") from e
    if not math.isfinite(value):
        raise MalformedFeedError(line_no, line, f"non-finite value {parts[-2]!r}")
    try:
        value_date = datetime.strptime(parts[-1], "%d-%b-%Y").date()
    except ValueError as e:
        raise MalformedFeedError(line_no, line, f"bad date {parts[-1]!r}") from e
    if len(parts) >= 6:
        isin_growth, isin_reinvest, name = parts[1], parts[2], parts[3]
    elif len(parts) == 5:
        isin_growth, isin_reinvest, name = parts[1], None, parts[2]
    else:
        isin_growth, isin_reinvest, name = None, None, parts[1]
    return FeedRecord(
        code=code,
        isin_growth=clean_optional_id(isin_growth),
        isin_reinvest=clean_optional_id(isin_reinvest),
        name=name,
        value=value,
        value_date=value_date,
    )


def parse_feed(text: str) -> FeedParseResult:
    result = FeedParseResult()
    amc = category = sub_category = None
    for line_no, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line:
            continue
        if ";" not in line:
            result.headers += 1
            cat, sub = split_scheme_header(line)
            if cat is not None:
                category, sub_category, amc = cat, sub, None
            else:
                amc = line
            continue
        if line.lower().startswith(COLUMN_HEADER_PREFIX):
            result.headers += 1
            continue
        try:
            record = parse_feed_line(line, line_no)
        except MalformedFeedError as e:
            result.malformed += 1
            logger.debug(f"Skipping feed record: {e}")
            continue
        record.amc, record.category, record.sub_category = amc, category, sub_category
        result.records.append(record)
    return result


class DailyValueFeedJob:
    def __init__(
        self,
        store,
        returns_service,
        feed_url: str,
        timeout: float = 30.0,
        recompute_delay: float = 5.0,
        retention_years: int = RETENTION_YEARS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.returns_service = returns_service
        self.feed_url = feed_url
        self.timeout = timeout
        self.recompute_delay = recompute_delay
        self.retention_years = retention_years
        self._transport = transport
        self._recompute_tasks: Set[asyncio.Task] = set()

    async def fetch_feed(self) -> str:
        timeout = httpx.Timeout(self.timeout, connect=min(self.timeout, 5.0))
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport, headers={"User-Agent": "Mozilla/5.0"}) as client:
                response = await client.get(self.feed_url)
                response.raise_for_status()
                return response.text
        except httpx.TimeoutException as e:
            raise TransientProviderError("value_feed", f"timeout: {e}", "provider_timeout") from e
        except httpx.HTTPStatusError as e:
            raise TransientProviderError("value_feed", f"HTTP {e.response.status_code}", "provider_upstream") from e
        except httpx.HTTPError as e:
            raise TransientProviderError("value_feed", f"{type(e).__name__}: {str(e)[:200]}", "provider_network") from e

    async def __call__(self, ctx) -> dict:
        ctx.log("info", f"Fetching value feed from {self.feed_url}")
        text = await self.fetch_feed()
        return await self.ingest(text, ctx)

    async def ingest(self, text: str, ctx) -> dict:
        start = time.monotonic()
        parsed = parse_feed(text)
        if not parsed.records:
            ctx.log("warning", f"No usable records in feed ({parsed.malformed} malformed, {parsed.headers} headers)")
            return {
                "success": False,
                "reason": "no records in feed",
                "total_fetched": 0,
                "malformed": parsed.malformed,
                "timestamp": utcnow().isoformat(),
            }
        ctx.log("info", f"Parsed {len(parsed.records)} records ({parsed.malformed} malformed, {parsed.headers} headers)")

        code_map = await self.store.code_map()
        matched = {}
        for rec in parsed.records:
            scheme_code = code_map.get(rec.code) or code_map.get(rec.isin_growth or "") or code_map.get(rec.isin_reinvest or "")
            if scheme_code:
                matched[(scheme_code, rec.value_date)] = {"scheme_code": scheme_code, "value": rec.value, "value_date": rec.value_date}
        records = list(matched.values())
        ctx.log("info", f"Matched {len(records)} of {len(parsed.records)} records")

        stored = await self.store.upsert_values(records)
        cutoff = years_before(utcnow().date(), self.retention_years)
        pruned = await self.store.prune_history(cutoff)
        if pruned:
            ctx.log("info", f"Pruned {pruned} history rows older than {cutoff.isoformat()}")

        codes = sorted({r["scheme_code"] for r in records})
        if codes:
            self._schedule_recompute(codes, ctx)

        duration_ms = int((time.monotonic() - start) * 1000)
        return {
            "success": True,
            "total_fetched": len(parsed.records),
            "malformed": parsed.malformed,
            "matched": len(records),
            "stored": stored,
            "pruned": pruned,
            "duration": f"{duration_ms}ms",
            "timestamp": utcnow().isoformat(),
        }

    def _schedule_recompute(self, codes: List[str], ctx) -> None:
        async def _run():
            await asyncio.sleep(self.recompute_delay)
            ctx.log("info", f"Recomputing trailing returns for {len(codes)} instruments")
            await self.returns_service.recompute(codes)

        task = asyncio.create_task(_run())
        self._recompute_tasks.add(task)
        task.add_done_callback(self._recompute_done)

    def _recompute_done(self, task: asyncio.Task) -> None:
        self._recompute_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Trailing returns recompute failed: {type(exc).__name__}: {exc}")

    async def drain(self) -> None:
        """Wait for scheduled recomputes (shutdown and tests)"""
        if self._recompute_tasks:
            await asyncio.gather(*list(self._recompute_tasks), return_exceptions=True)
