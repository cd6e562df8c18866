"""
Provider registry.

The resolver iterates an ordered list built from PROVIDER_ORDER; adding a
source means adding an entry here, not touching the resolver.
"""
import logging
from typing import Callable, Dict, List

from services.providers.base import InstrumentData, ProviderAdapter
from services.providers.mfapi import MfapiProvider
from services.providers.oracle import OracleProvider
from services.providers.rapidapi import RapidApiProvider

logger = logging.getLogger(__name__)

PROVIDER_REGISTRY: Dict[str, Callable[..., ProviderAdapter]] = {
    "oracle": lambda s, **kw: OracleProvider(s.ORACLE_VM_URL, s.ORACLE_API_KEY, **kw),
    "mfapi": lambda s, **kw: MfapiProvider(s.MFAPI_BASE_URL, **kw),
    "rapidapi": lambda s, **kw: RapidApiProvider(s.RAPIDAPI_KEY, s.RAPIDAPI_HOST, **kw),
}


def build_providers(settings) -> List[ProviderAdapter]:
    """Configured adapters, highest priority first"""
    providers = []
    for priority, name in enumerate(settings.provider_order_list):
        factory = PROVIDER_REGISTRY.get(name)
        if factory is None:
            logger.warning(f"Unknown provider in PROVIDER_ORDER: {name}")
            continue
        provider = factory(settings, priority=priority, timeout=settings.PROVIDER_TIMEOUT_SECONDS)
        if not provider.configured:
            logger.info(f"Provider {name} not configured, skipping")
            continue
        providers.append(provider)
    logger.info(f"Provider chain: {[p.name for p in providers]}")
    return sorted(providers, key=lambda p: p.priority)


__all__ = ["InstrumentData", "ProviderAdapter", "PROVIDER_REGISTRY", "build_providers"]
