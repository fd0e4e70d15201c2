"""Canonical transaction construction and hash-based deduplication."""

import dataclasses
import hashlib
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from ledgercat.db.models import CanonicalTransaction, ImportContext, RawRow, TxnType
from ledgercat.ingest.normalization import (
    extract_merchant,
    infer_txn_type,
    normalize_description,
)

log = logging.getLogger("ledgercat.canonical")

_CENTS = Decimal("0.01")


@dataclass
class CanonicalizeResult:
    """Canonical transactions built from rows and the count of invalid rows."""

    transactions: list[CanonicalTransaction]
    invalid_skipped: int = 0


@dataclass
class DedupeResult:
    """Transactions that survived deduplication and the count removed."""

    transactions: list[CanonicalTransaction]
    duplicate_skipped: int = 0


def format_amount_key(amount: Decimal) -> str:
    """Format an amount with exactly two decimals for hashing."""
    quantized = amount.quantize(_CENTS, rounding=ROUND_HALF_UP)
    if quantized.is_zero():
        quantized = Decimal("0.00")
    return f"{quantized:.2f}"


def build_external_hash(
    user_id: str | None,
    account_id: str | None,
    txn_date: date,
    amount: Decimal,
    description_raw: str,
    bank_source: str | None,
) -> str:
    """Compute the content-addressed dedup key for a transaction.

    SHA-256 hex digest of ``user|account|date|amount|description|bank``
    where the date is ISO formatted and the amount has two decimals.
    """
    key = "|".join(
        [
            user_id or "",
            account_id or "",
            txn_date.isoformat(),
            format_amount_key(amount),
            description_raw or "",
            bank_source or "",
        ]
    )
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def _to_decimal(value: object) -> Decimal | None:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value if value is not None else 0))
    except (InvalidOperation, ValueError):
        return None


def canonicalize_row(row: RawRow, context: ImportContext) -> CanonicalTransaction | None:
    """Build one canonical transaction, or None when the row is invalid."""
    if not row.date or not row.description:
        return None
    amount = _to_decimal(row.amount)
    if amount is None or not amount.is_finite():
        return None
    description_raw = str(row.description).strip()
    if not description_raw:
        return None
    description_clean = normalize_description(description_raw)
    merchant = extract_merchant(description_clean)
    return CanonicalTransaction(
        id=None,
        user_id=context.user_id,
        account_id=context.account_id,
        bank_source=context.bank_source,
        date=row.date,
        value_date=row.value_date,
        amount=amount,
        currency=context.currency or "EUR",
        description_raw=description_raw,
        description_clean=description_clean,
        merchant_raw=merchant.raw,
        merchant_normalized=merchant.normalized,
        txn_type=infer_txn_type(description_clean, amount),
        import_batch_id=context.import_batch_id,
        channel=context.channel,
        external_hash=build_external_hash(
            context.user_id,
            context.account_id,
            row.date,
            amount,
            description_raw,
            context.bank_source,
        ),
    )


def canonicalize(rows: Iterable[RawRow], context: ImportContext) -> CanonicalizeResult:
    """Build canonical transactions for an import, counting invalid rows."""
    result = CanonicalizeResult(transactions=[])
    for row in rows:
        txn = canonicalize_row(row, context)
        if txn is None:
            log.debug(f"Skipping invalid row: {row}")
            result.invalid_skipped += 1
            continue
        result.transactions.append(txn)
    return result


def dedupe(
    transactions: Iterable[CanonicalTransaction], existing_hashes: Iterable[str]
) -> DedupeResult:
    """Drop transactions already on record or repeated within the batch.

    The first occurrence of a hash inside the batch wins.
    """
    seen = {h for h in existing_hashes if h}
    result = DedupeResult(transactions=[])
    for txn in transactions:
        if not txn.external_hash or txn.external_hash in seen:
            result.duplicate_skipped += 1
            continue
        seen.add(txn.external_hash)
        result.transactions.append(txn)
    return result


def backfill_normalization(txn: CanonicalTransaction) -> CanonicalTransaction | None:
    """Fill normalization fields missing on a stored transaction.

    Returns an updated copy, or None when nothing needed filling. Existing
    values are never replaced, except an ``unknown`` transaction type.
    """
    description_raw = (txn.description_raw or "").strip()
    description_clean = normalize_description(description_raw) if description_raw else None
    merchant = extract_merchant(description_clean)
    changes: dict[str, object] = {}
    if not txn.description_clean and description_clean:
        changes["description_clean"] = description_clean
    if not txn.merchant_raw and merchant.raw:
        changes["merchant_raw"] = merchant.raw
    if not txn.merchant_normalized and merchant.normalized:
        changes["merchant_normalized"] = merchant.normalized
    if txn.txn_type == TxnType.UNKNOWN:
        inferred = infer_txn_type(description_clean or "", txn.amount)
        if inferred != txn.txn_type:
            changes["txn_type"] = inferred
    if not changes:
        return None
    return dataclasses.replace(txn, updated_at=datetime.now(), **changes)
