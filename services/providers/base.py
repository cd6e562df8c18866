"""
Provider adapter contract and the canonical instrument shape.

Every adapter normalizes its vendor payload into InstrumentData before it
leaves the adapter; nothing downstream knows vendor field names.
"""
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional

import httpx

from models import utcnow
from services.errors import ProviderError, TransientProviderError

logger = logging.getLogger(__name__)


@dataclass
class InstrumentData:
    scheme_code: str
    name: str
    data_source: str
    category: str = "Other"
    sub_category: Optional[str] = None
    amc: Optional[str] = None
    value: Optional[float] = None
    value_date: Optional[date] = None
    isin_growth: Optional[str] = None
    isin_reinvest: Optional[str] = None
    fund_id: Optional[str] = None
    aum: Optional[float] = None
    returns: Dict[str, Optional[float]] = field(default_factory=dict)
    last_fetched: datetime = field(default_factory=utcnow)

    def to_row(self) -> Dict[str, Any]:
        return {
            "scheme_code": self.scheme_code,
            "name": self.name,
            "data_source": self.data_source,
            "category": self.category,
            "sub_category": self.sub_category,
            "amc": self.amc,
            "value": self.value,
            "value_date": self.value_date,
            "isin_growth": self.isin_growth,
            "isin_reinvest": self.isin_reinvest,
            "fund_id": self.fund_id,
            "aum": self.aum,
            "return_1y": self.returns.get("1Y"),
            "return_3y": self.returns.get("3Y"),
            "return_5y": self.returns.get("5Y"),
            "last_fetched": self.last_fetched,
        }


def parse_float(value) -> Optional[float]:
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    return out


def parse_date(value, formats=("%Y-%m-%d", "%d-%m-%Y", "%d-%b-%Y")) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = str(value).strip()
    # ISO timestamps ("2025-11-17T00:00:00Z") keep only the date part
    if "T" in s:
        s = s.split("T", 1)[0]
    for fmt in formats:
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue
    return None


class ProviderAdapter(ABC):
    """One upstream source. Lower priority value is tried first."""

    name: str = "provider"

    def __init__(self, priority: int = 100, timeout: float = 5.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.priority = priority
        self.timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return True

    @abstractmethod
    async def lookup(self, query: str) -> List[InstrumentData]:
        """Return matches for query, [] when the provider has none"""

    @abstractmethod
    async def health_check(self) -> bool:
        ...

    def _client(self, timeout: Optional[float] = None, **kwargs) -> httpx.AsyncClient:
        t = timeout if timeout is not None else self.timeout
        return httpx.AsyncClient(timeout=httpx.Timeout(t, connect=min(t, 3.0)), transport=self._transport, **kwargs)

    async def _get_json(self, client: httpx.AsyncClient, url: str, params: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        """
        GET and decode JSON. 404 -> None.
        Network errors, timeouts, 429 and 5xx raise TransientProviderError;
        auth failures raise ProviderError.
        """
        start = time.monotonic()
        try:
            response = await client.get(url, params=params)
        except httpx.TimeoutException as e:
            raise TransientProviderError(self.name, f"timeout after {self._elapsed_ms(start)}ms: {url}", "provider_timeout") from e
        except httpx.HTTPError as e:
            raise TransientProviderError(self.name, f"{type(e).__name__}: {str(e)[:200]}", "provider_network") from e

        elapsed_ms = self._elapsed_ms(start)
        status = response.status_code
        logger.debug(f"[{self.name}] HTTP {status} (elapsed={elapsed_ms}ms) URL={url}")
        if status == 404:
            return None
        if status in (401, 403):
            raise ProviderError(self.name, f"auth failed: HTTP {status}", "provider_auth")
        if status == 429:
            raise TransientProviderError(self.name, "rate limited: HTTP 429", "provider_rate_limited")
        if status >= 500:
            raise TransientProviderError(self.name, f"upstream error: HTTP {status}", "provider_upstream")
        if status >= 400:
            raise ProviderError(self.name, f"HTTP {status}: {response.text[:200]}", "provider_bad_request")
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(self.name, "invalid JSON payload", "provider_bad_payload") from e

    async def _probe(self, url: str, headers: Optional[Dict[str, str]] = None, params=None) -> bool:
        try:
            async with self._client(timeout=5.0, headers=headers) as client:
                response = await client.get(url, params=params)
            return response.status_code < 400
        except httpx.HTTPError as e:
            logger.warning(f"[{self.name}] health check failed: {type(e).__name__}")
            return False

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.monotonic() - start) * 1000)
