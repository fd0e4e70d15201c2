"""Description cleanup, merchant extraction and transaction type inference."""

import re
import unicodedata
from dataclasses import dataclass
from decimal import Decimal

from ledgercat.db.models import TxnType

_LINE_BREAKS = re.compile(r"[\r\n]+")
_WHITESPACE = re.compile(r"\s+")
_REPEATED_SYMBOL = re.compile(r"([^\w\s])\1+")

# Ordered: the first pattern that matches wins.
MERCHANT_PATTERNS = [
    re.compile(r"^COMPRA TARJ\.?\s+(.+)$"),
    re.compile(r"^ADEUDO RECIBO\s+(.+)$"),
    re.compile(r"^TRANSFERENCIA\s+(?:A/DE|A|DE)\s+(.+)$"),
    re.compile(r"^NOMINA DE\s+(.+)$"),
    re.compile(r"^PRESTAMOS?\s+(.+)$"),
    re.compile(r"^GAS\s+(.+)$"),
    re.compile(r"^TELEFONOS?\s+(.+)$"),
]

_BOILERPLATE_PREFIXES = [
    re.compile(r"^[0-9X*]{6,}\s+", re.IGNORECASE),
    re.compile(r"^N(?:\.\s*|\s+)", re.IGNORECASE),
    re.compile(r"^PAGO DE\s+", re.IGNORECASE),
    re.compile(r"^RECIBO\s+", re.IGNORECASE),
]

FEE_KEYWORDS = ("COMISION",)
INTEREST_KEYWORDS = ("INTERESES",)
TAX_KEYWORDS = ("TGSS", "HACIENDA", "SEGURIDAD SOCIAL", "SEGUROS SOCIALES", "IMPUEST")
TRANSFER_KEYWORDS = ("TRANSFERENCIA",)


@dataclass(frozen=True)
class MerchantMatch:
    """Merchant token extracted from a cleaned description."""

    raw: str | None
    normalized: str | None


def normalize_whitespace(value: object) -> str:
    """Collapse line breaks and whitespace runs into single spaces."""
    text = "" if value is None else str(value)
    text = _LINE_BREAKS.sub(" ", text)
    return _WHITESPACE.sub(" ", text).strip()


def collapse_repeated_symbols(value: object) -> str:
    """Collapse runs of an identical non-alphanumeric symbol to one."""
    text = "" if value is None else str(value)
    return _REPEATED_SYMBOL.sub(r"\1", text)


def strip_diacritics(value: object) -> str:
    """Remove combining marks after canonical decomposition."""
    text = "" if value is None else str(value)
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_description(raw: object) -> str:
    """Build the cleaned, uppercased form of a statement description."""
    upper = normalize_whitespace(raw).upper()
    return normalize_whitespace(collapse_repeated_symbols(upper))


def _cleanup_merchant_candidate(value: str) -> str:
    cleaned = normalize_whitespace(value)
    for prefix in _BOILERPLATE_PREFIXES:
        cleaned = prefix.sub("", cleaned, count=1)
    return cleaned


def extract_merchant(description_clean: str | None) -> MerchantMatch:
    """Extract the merchant token following a known bank prefix.

    The captured remainder is stripped of boilerplate (masked card numbers,
    ``N.``, ``PAGO DE``, ``RECIBO``). Raw and normalized forms are identical;
    normalization is uppercase plus whitespace collapse, so it is idempotent.
    """
    cleaned = normalize_whitespace(description_clean)
    for pattern in MERCHANT_PATTERNS:
        match = pattern.match(cleaned)
        if not match or not match.group(1):
            continue
        candidate = _cleanup_merchant_candidate(match.group(1))
        if not candidate:
            continue
        merchant = normalize_whitespace(collapse_repeated_symbols(candidate.upper()))
        if not merchant:
            continue
        return MerchantMatch(raw=merchant, normalized=merchant)
    return MerchantMatch(raw=None, normalized=None)


def infer_txn_type(description_clean: str | None, amount: Decimal | int | float) -> TxnType:
    """Infer a transaction type from keywords, falling back to the amount sign."""
    text = strip_diacritics(description_clean or "").upper()
    if any(keyword in text for keyword in FEE_KEYWORDS):
        return TxnType.FEE
    if any(keyword in text for keyword in INTEREST_KEYWORDS):
        return TxnType.INTEREST
    if any(keyword in text for keyword in TAX_KEYWORDS):
        return TxnType.TAX
    if any(keyword in text for keyword in TRANSFER_KEYWORDS):
        return TxnType.TRANSFER
    if amount > 0:
        return TxnType.INCOME
    if amount < 0:
        return TxnType.EXPENSE
    return TxnType.UNKNOWN
