"""RapidAPI latest-NAV feed: full list, filtered client-side by name"""
import logging
from typing import List, Optional

from models import utcnow
from services.providers.base import InstrumentData, ProviderAdapter, parse_float
from services.providers.taxonomy import normalize_category

logger = logging.getLogger(__name__)


class RapidApiProvider(ProviderAdapter):
    name = "rapidapi"

    def __init__(self, api_key: Optional[str], host: str = "latest-mutual-fund-nav.p.rapidapi.com", limit: int = 10, **kwargs):
        super().__init__(**kwargs)
        self.api_key = api_key
        self.host = host
        self.limit = limit

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self):
        return {"X-RapidAPI-Key": self.api_key or "", "X-RapidAPI-Host": self.host}

    async def lookup(self, query: str) -> List[InstrumentData]:
        if not self.configured:
            return []
        needle = (query or "").strip().lower()
        if not needle:
            return []
        async with self._client(headers=self._headers()) as client:
            payload = await self._get_json(client, f"https://{self.host}/fetchAllMutualFund")
        if not isinstance(payload, list):
            return []
        today = utcnow().date()
        out = []
        for fund in payload:
            name = fund.get("schemeName") or ""
            code = fund.get("schemeCode")
            if not code or not name:
                continue
            # a scheme code query matches the code exactly, anything else matches the name
            if str(code) != needle and needle not in name.lower():
                continue
            out.append(
                InstrumentData(
                    scheme_code=str(code),
                    name=name,
                    data_source=self.name,
                    category=normalize_category(fund.get("schemeType")),
                    sub_category=fund.get("schemeCategory"),
                    amc=fund.get("fundHouse"),
                    value=parse_float(fund.get("nav")),
                    value_date=today,
                )
            )
            if len(out) >= self.limit:
                break
        return out

    async def health_check(self) -> bool:
        if not self.configured:
            return False
        return await self._probe(f"https://{self.host}/fetchAllMutualFund", headers=self._headers(), params={"limit": 1})
