"""
Market index snapshot job (every 5 minutes, market hours only).

Closed market -> skipped without any network call. Vendor failure -> the
deterministic synthetic generator. Either way the latest-snapshot table is
overwritten in one transaction.
"""
import logging
import re
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional

import httpx

from models import utcnow
from services.errors import ProviderError, TransientProviderError
from services.providers.base import parse_float
from services.synthetic_indices import synthetic_indices

logger = logging.getLogger(__name__)

JOB_NAME = "market-indices"

SYMBOL_MAP = {
    "NIFTY 50": "NIFTY50",
    "NIFTY BANK": "NIFTYBANK",
    "NIFTY IT": "NIFTYIT",
    "NIFTY NEXT 50": "NIFTYNEXT50",
    "NIFTY MIDCAP 100": "NIFTYMIDCAP",
    "NIFTY PHARMA": "NIFTYPHARMA",
    "S&P BSE SENSEX": "SENSEX",
}


def normalize_symbol(index_name: str) -> str:
    return SYMBOL_MAP.get(index_name) or re.sub(r"\s+", "", index_name).upper()


def parse_vendor_indices(payload) -> List[dict]:
    items = payload.get("data") if isinstance(payload, dict) else None
    rows = []
    for item in items or []:
        name = item.get("indexName") or item.get("index")
        value = parse_float(item.get("last") or item.get("lastPrice"))
        if not name or value is None:
            continue
        rows.append(
            {
                "symbol": normalize_symbol(name),
                "index_name": name,
                "value": value,
                "change": parse_float(item.get("variation", item.get("change"))) or 0.0,
                "percent_change": parse_float(item.get("percentChange") or item.get("pChange")) or 0.0,
                "high": parse_float(item.get("high")),
                "low": parse_float(item.get("low")),
                "open": parse_float(item.get("open")),
                "previous_close": parse_float(item.get("previousClose")),
            }
        )
    # vendor lists can repeat an index; keep the last row per symbol
    return list({r["symbol"]: r for r in rows}.values())


class IndexSnapshotJob:
    def __init__(
        self,
        calendar,
        store,
        vendor_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.calendar = calendar
        self.store = store
        self.vendor_url = vendor_url
        self.timeout = timeout
        self._transport = transport
        self.clock = clock

    async def fetch_vendor(self) -> List[dict]:
        headers = {"User-Agent": "Mozilla/5.0", "Accept": "application/json"}
        timeout = httpx.Timeout(self.timeout, connect=min(self.timeout, 3.0))
        start = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport, headers=headers) as client:
                response = await client.get(self.vendor_url)
                response.raise_for_status()
                payload = response.json()
        except httpx.TimeoutException as e:
            raise TransientProviderError("index_vendor", f"timeout: {e}", "provider_timeout") from e
        except httpx.HTTPStatusError as e:
            raise TransientProviderError("index_vendor", f"HTTP {e.response.status_code}", "provider_upstream") from e
        except httpx.HTTPError as e:
            raise TransientProviderError("index_vendor", f"{type(e).__name__}: {str(e)[:200]}", "provider_network") from e
        except ValueError as e:
            raise ProviderError("index_vendor", "invalid JSON payload", "provider_bad_payload") from e
        rows = parse_vendor_indices(payload)
        logger.debug(f"[index_vendor] {len(rows)} indices (elapsed={int((time.monotonic() - start) * 1000)}ms)")
        return rows

    async def __call__(self, ctx) -> dict:
        instant = self.clock()
        # holidays are unknown until the session table is loaded; store errors fail the run
        await self.calendar.ensure_loaded(instant)
        status = self.calendar.is_open(instant)
        if not status.is_open:
            ctx.log("info", f"Market is closed: {status.reason}")
            return {"success": False, "reason": status.reason, "action": "skipped"}

        data_source = "vendor"
        try:
            rows = await self.fetch_vendor()
        except ProviderError as e:
            ctx.log("warning", f"Index vendor failed ({e.reason}): {e}; using synthetic values")
            rows = []
        if not rows:
            data_source = "synthetic"
            rows = synthetic_indices(status.current_time)

        now = utcnow()
        for row in rows:
            row.update(is_market_open=True, data_source=data_source, last_updated=now)
        written = await self.store.replace_index_snapshots(rows)
        ctx.log("info", f"Updated {written} indices ({data_source})")
        return {
            "success": True,
            "indices_updated": written,
            "data_source": data_source,
            "timestamp": now.isoformat(),
        }
