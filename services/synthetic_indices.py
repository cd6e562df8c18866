"""
Deterministic synthetic index generator.

Used when the index vendor is unreachable. Values are a pure function of
(symbol, time slot), so repeated runs within a slot write identical rows and
every row is flagged data_source="synthetic".
"""
from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Dict, List

SYNTHETIC_BASE_VALUES: Dict[str, float] = {
    "NIFTY50": 22000.0,
    "SENSEX": 72000.0,
    "NIFTYBANK": 48000.0,
    "NIFTYNEXT50": 65000.0,
    "NIFTYMIDCAP": 52000.0,
    "NIFTYIT": 35000.0,
    "NIFTYPHARMA": 18000.0,
}

SLOT_SECONDS = 300


def stable_f01(symbol: str, salt: str) -> float:
    h = hashlib.sha256((salt + ":" + symbol).encode("utf-8")).digest()
    return (int.from_bytes(h[:4], "big") % 1_000_000) / 1_000_000.0


def slot_of(instant: datetime) -> int:
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return int(instant.timestamp()) // SLOT_SECONDS


def synthetic_indices(instant: datetime) -> List[dict]:
    slot = str(slot_of(instant))
    rows = []
    for symbol, base in SYNTHETIC_BASE_VALUES.items():
        change = (stable_f01(symbol, slot + ":chg") - 0.5) * 500
        value = base + change
        rows.append(
            {
                "symbol": symbol,
                "index_name": symbol,
                "value": round(value, 2),
                "change": round(change, 2),
                "percent_change": round(change / base * 100, 2),
                "high": round(value + stable_f01(symbol, slot + ":hi") * 100, 2),
                "low": round(value - stable_f01(symbol, slot + ":lo") * 100, 2),
                "open": round(value - stable_f01(symbol, slot + ":op") * 50, 2),
                "previous_close": base,
            }
        )
    return rows
