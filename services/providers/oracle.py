"""Internal Oracle VM search API (bearer key)"""
import logging
from typing import List, Optional

import httpx

from models import utcnow
from services.providers.base import InstrumentData, ProviderAdapter, parse_date, parse_float
from services.providers.taxonomy import normalize_category

logger = logging.getLogger(__name__)


class OracleProvider(ProviderAdapter):
    name = "oracle"

    def __init__(self, base_url: Optional[str], api_key: Optional[str], limit: int = 10, **kwargs):
        super().__init__(**kwargs)
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.limit = limit

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    def _headers(self):
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    async def lookup(self, query: str) -> List[InstrumentData]:
        if not self.configured:
            return []
        async with self._client(headers=self._headers()) as client:
            payload = await self._get_json(client, f"{self.base_url}/api/funds/search", params={"q": query, "limit": self.limit})
        rows = (payload or {}).get("data") if isinstance(payload, dict) else None
        if not rows:
            return []
        out = []
        for fund in rows:
            code = fund.get("schemeCode") or fund.get("fundCode")
            name = fund.get("schemeName") or fund.get("name")
            if not code or not name:
                continue
            returns = fund.get("returns") or {}
            out.append(
                InstrumentData(
                    scheme_code=str(code),
                    name=name,
                    data_source=self.name,
                    category=normalize_category(fund.get("category")),
                    sub_category=fund.get("subCategory"),
                    amc=fund.get("amc") or fund.get("fundHouse"),
                    value=parse_float(fund.get("nav") or fund.get("currentNav")),
                    value_date=parse_date(fund.get("navDate")) or utcnow().date(),
                    returns={k: parse_float(returns.get(k)) for k in ("1Y", "3Y", "5Y")},
                )
            )
        return out

    async def health_check(self) -> bool:
        if not self.configured:
            return False
        return await self._probe(f"{self.base_url}/health", headers=self._headers())
