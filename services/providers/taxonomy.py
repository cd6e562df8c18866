"""Canonical category taxonomy"""
from typing import Optional

CATEGORIES = ("Equity", "Debt", "Hybrid", "Commodity", "Other")

_RULES = (
    ("Equity", ("equity", "stock")),
    ("Debt", ("debt", "bond")),
    ("Hybrid", ("hybrid", "balanced")),
    ("Commodity", ("commodity", "gold", "silver")),
)


def normalize_category(category: Optional[str]) -> str:
    if not category:
        return "Other"
    lower = category.lower()
    for canonical, needles in _RULES:
        if any(n in lower for n in needles):
            return canonical
    return "Other"


def split_scheme_header(header: str):
    """
    Feed section headers look like "Open Ended Schemes(Equity Scheme - Large Cap Fund)".
    Returns (category, sub_category) or (None, None) when the line is not one.
    """
    header = header.strip()
    if "(" not in header or not header.endswith(")"):
        return None, None
    inner = header[header.index("(") + 1:-1].strip()
    if " - " in inner:
        kind, sub = inner.split(" - ", 1)
        return normalize_category(kind), sub.strip()
    return normalize_category(inner), None
