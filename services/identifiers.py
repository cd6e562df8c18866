"""
Identifier normalization

A lookup can arrive as a scheme code, an ISIN, an internal fund id or an
alias. This module only classifies and canonicalizes the string; the alias
table lookup happens in the instrument store.
"""
import re
from dataclasses import dataclass

SCHEME_CODE_RE = re.compile(r"^\d{3,10}$")
ISIN_RE = re.compile(r"^[A-Z]{2}[A-Z0-9]{9}\d$")


@dataclass(frozen=True)
class NormalizedIdentifier:
    raw: str
    kind: str  # scheme_code | isin | fund_id
    value: str

    @property
    def cache_key(self) -> str:
        return f"fund:{self.kind}:{self.value}"


def normalize_identifier(identifier: str) -> NormalizedIdentifier:
    raw = (identifier or "").strip()
    if not raw:
        raise ValueError("identifier must not be empty")
    if SCHEME_CODE_RE.match(raw):
        return NormalizedIdentifier(raw=raw, kind="scheme_code", value=raw)
    upper = raw.upper()
    if ISIN_RE.match(upper):
        return NormalizedIdentifier(raw=raw, kind="isin", value=upper)
    return NormalizedIdentifier(raw=raw, kind="fund_id", value=raw)


def canonical_cache_key(scheme_code: str) -> str:
    return f"fund:scheme_code:{scheme_code}"


def clean_optional_id(value) -> "str | None":
    """Feed placeholders ('-', '', whitespace) mean absent"""
    if value is None:
        return None
    s = str(value).strip()
    if not s or s == "-":
        return None
    return s

