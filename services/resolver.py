"""
Tiered fund resolver: cache -> store -> ordered providers -> backfill queue.

The read path never raises for "this fund cannot be found right now"; it
returns a typed NotFound instead. Cache or store outages propagate as
ResourceUnavailableError.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from services.errors import NotFoundError, ProviderError, ResourceUnavailableError
from services.identifiers import NormalizedIdentifier, canonical_cache_key, normalize_identifier
from services.providers.base import InstrumentData, ProviderAdapter

logger = logging.getLogger(__name__)

QUEUED_MESSAGE = "Fund not available yet. It has been queued for retrieval."
NOT_FOUND_MESSAGE = "Fund not found."


@dataclass
class Resolved:
    record: Dict[str, Any]
    source: str  # cache | store | <provider name>


@dataclass
class NotFound:
    identifier: str
    queued: bool
    message: str = QUEUED_MESSAGE


ResolveResult = Union[Resolved, NotFound]


def is_exact_match(ident: NormalizedIdentifier, item: InstrumentData) -> bool:
    if ident.kind == "scheme_code":
        return item.scheme_code == ident.value
    if ident.kind == "isin":
        return ident.value in (item.isin_growth, item.isin_reinvest)
    return True


def matching_items(ident: NormalizedIdentifier, items: List[InstrumentData]) -> List[InstrumentData]:
    """
    Scheme codes and ISINs only accept an exact hit; a provider that answers
    with other instruments has not answered. Free-text ids keep every item.
    """
    return [item for item in items if is_exact_match(ident, item)]


def pick_match(ident: NormalizedIdentifier, items: List[InstrumentData]) -> InstrumentData:
    """First exact match; for free-text ids the provider's first answer"""
    for item in items:
        if is_exact_match(ident, item):
            return item
    raise NotFoundError(ident.raw)


class TieredFundResolver:
    def __init__(
        self,
        cache,
        store,
        providers: List[ProviderAdapter],
        backfill=None,
        provider_timeout: float = 5.0,
        cache_ttl: Optional[int] = None,
        coalesce: bool = True,
    ):
        self.cache = cache
        self.store = store
        self.providers = sorted(providers, key=lambda p: p.priority)
        self.backfill = backfill
        self.provider_timeout = provider_timeout
        self.cache_ttl = cache_ttl
        self.coalesce = coalesce
        # Singleflight per normalized identifier
        self.inflight: Dict[str, asyncio.Task] = {}

    async def resolve(self, identifier: str) -> ResolveResult:
        try:
            ident = normalize_identifier(identifier)
        except ValueError:
            return NotFound(identifier=identifier, queued=False, message=NOT_FOUND_MESSAGE)

        cached = await self.cache.get_json(ident.cache_key)
        if cached is not None:
            return Resolved(record=cached, source="cache")

        if not self.coalesce:
            return await self._resolve_miss(ident)

        key = ident.cache_key
        task = self.inflight.get(key)
        if task is None or task.done():
            task = asyncio.ensure_future(self._resolve_miss(ident))
            self.inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self.inflight.get(key) is task:
            del self.inflight[key]

    async def _resolve_miss(self, ident: NormalizedIdentifier) -> ResolveResult:
        stored = await self.store.find(ident)
        if stored is not None:
            await self._cache_record(ident, stored)
            return Resolved(record=stored, source="store")

        try:
            items, provider = await self.search(ident.value, timeout=self.provider_timeout)
        except NotFoundError:
            if self.backfill is None:
                return NotFound(identifier=ident.raw, queued=False, message=NOT_FOUND_MESSAGE)
            scheme_code = ident.value if ident.kind == "scheme_code" else None
            # a duplicate enqueue still means the lookup is waiting in the queue
            if not await self.backfill.enqueue(ident.raw, scheme_code=scheme_code):
                logger.info(f"Backfill already pending for {ident.raw}")
            return NotFound(identifier=ident.raw, queued=True)

        match = pick_match(ident, items)
        await self.store.upsert_instruments(items)
        if ident.kind == "fund_id" and ident.value != match.scheme_code:
            await self.store.add_alias(ident.value, match.scheme_code)
        record = await self.store.find(normalize_identifier(match.scheme_code))
        if record is None:
            raise ResourceUnavailableError("store", f"{match.scheme_code} missing right after upsert")
        await self._cache_record(ident, record)
        logger.info(f"Resolved {ident.raw} via {provider} -> {match.scheme_code}")
        return Resolved(record=record, source=provider)

    async def search(self, query: str, timeout: Optional[float] = None):
        """
        Walk the provider chain in priority order; first answer that matches
        the query wins. Returns (items, provider_name) with only the matching
        items. Raises NotFoundError when every provider is empty or failing.
        """
        try:
            ident = normalize_identifier(query)
        except ValueError:
            raise NotFoundError(query)
        per_provider = timeout or self.provider_timeout
        for provider in self.providers:
            start = time.monotonic()
            try:
                items = await asyncio.wait_for(provider.lookup(query), timeout=per_provider)
            except asyncio.TimeoutError:
                elapsed_ms = int((time.monotonic() - start) * 1000)
                logger.warning(f"[{provider.name}] timeout for {query} (elapsed={elapsed_ms}ms) reason=provider_timeout")
                continue
            except ProviderError as e:
                elapsed_ms = int((time.monotonic() - start) * 1000)
                logger.warning(f"[{provider.name}] failed for {query} (elapsed={elapsed_ms}ms) reason={e.reason}: {e}")
                continue
            except Exception as e:
                logger.error(f"[{provider.name}] unexpected error for {query}: {type(e).__name__} - {str(e)[:200]}", exc_info=True)
                continue
            matched = matching_items(ident, items or [])
            if matched:
                return matched, provider.name
            if items:
                logger.info(f"[{provider.name}] {len(items)} items for {query}, none with {ident.kind}={ident.value}")
            else:
                logger.debug(f"[{provider.name}] no match for {query}")
        raise NotFoundError(query)

    async def _cache_record(self, ident: NormalizedIdentifier, record: Dict[str, Any]) -> None:
        await self.cache.set_json(ident.cache_key, record, ttl=self.cache_ttl)
        canonical = canonical_cache_key(record["scheme_code"])
        if canonical != ident.cache_key:
            await self.cache.set_json(canonical, record, ttl=self.cache_ttl)
