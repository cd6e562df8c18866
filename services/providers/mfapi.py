"""
Public scheme-code API (api.mfapi.in).
No search endpoint: only exact scheme codes resolve.
"""
import logging
from typing import List

from services.identifiers import SCHEME_CODE_RE
from services.providers.base import InstrumentData, ProviderAdapter, parse_date, parse_float
from services.providers.taxonomy import normalize_category

logger = logging.getLogger(__name__)

HEALTH_SCHEME_CODE = "119551"


class MfapiProvider(ProviderAdapter):
    name = "mfapi"

    def __init__(self, base_url: str = "https://api.mfapi.in/mf", **kwargs):
        super().__init__(**kwargs)
        self.base_url = base_url.rstrip("/")

    def _headers(self):
        return {"User-Agent": "fund-resolver/1.0"}

    async def lookup(self, query: str) -> List[InstrumentData]:
        code = (query or "").strip()
        if not SCHEME_CODE_RE.match(code):
            return []
        async with self._client(headers=self._headers()) as client:
            payload = await self._get_json(client, f"{self.base_url}/{code}")
        if not isinstance(payload, dict):
            return []
        meta = payload.get("meta") or {}
        history = payload.get("data") or []
        if not meta or not history:
            return []
        latest = history[0]
        return [
            InstrumentData(
                scheme_code=str(meta.get("scheme_code") or code),
                name=meta.get("scheme_name") or code,
                data_source=self.name,
                category=normalize_category(meta.get("scheme_category")),
                sub_category=meta.get("scheme_type"),
                amc=meta.get("fund_house"),
                value=parse_float(latest.get("nav")),
                value_date=parse_date(latest.get("date")),
                isin_growth=meta.get("isin_growth"),
                isin_reinvest=meta.get("isin_div_reinvestment"),
            )
        ]

    async def health_check(self) -> bool:
        return await self._probe(f"{self.base_url}/{HEALTH_SCHEME_CODE}", headers=self._headers())
