"""Batch orchestration of imports and categorization runs.

Statement and callback imports both go through ``ingest_transactions``:
rows are canonicalized, checked against the hashes already stored for the
account, deduplicated and inserted. Categorization runs load the overrides
and rules of the user once per batch and apply the engine's minimal diff.

Lookups against the store are chunked (``CHUNK_SIZE`` keys per call) and the
chunks are awaited together; dedup and categorization only start once every
chunk has answered.
"""

import asyncio
import dataclasses
import hashlib
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Protocol, TypeVar

from ledgercat.db.models import (
    AuditRecord,
    CanonicalTransaction,
    Category,
    CategoryRule,
    CategoryUpdate,
    ImportBatch,
    ImportContext,
    MerchantOverride,
    OverrideScope,
    RawRow,
)
from ledgercat.errors import NotFoundError
from ledgercat.ingest.canonical import backfill_normalization, canonicalize, dedupe
from ledgercat.ingest.parser import StatementParser
from ledgercat.rules import (
    ManualUpdate,
    apply_update,
    build_batch_updates,
    build_manual_update,
)

log = logging.getLogger("ledgercat.batch")

CHUNK_SIZE = 500

T = TypeVar("T")


class TransactionStore(Protocol):
    """Storage collaborator used by the orchestrator."""

    async def existing_hashes(
        self, user_id: str, account_id: str | None, hashes: Sequence[str]
    ) -> list[str]: ...

    async def active_overrides(
        self, user_id: str, merchant_keys: Sequence[str]
    ) -> list[MerchantOverride]: ...

    async def active_rules(self, user_id: str) -> list[CategoryRule]: ...

    async def category_names(self, category_ids: Sequence[int]) -> dict[int, str]: ...

    async def insert_transactions(
        self, transactions: Sequence[CanonicalTransaction]
    ) -> list[CanonicalTransaction]: ...

    async def apply_updates(self, updates: Sequence[CategoryUpdate]) -> None: ...

    async def apply_audits(self, records: Sequence[AuditRecord]) -> None: ...

    async def apply_override(self, override: MerchantOverride) -> MerchantOverride: ...

    async def apply_normalization(
        self, transactions: Sequence[CanonicalTransaction]
    ) -> None: ...

    async def transactions_for_batch(
        self, user_id: str, import_batch_id: int
    ) -> list[CanonicalTransaction]: ...

    async def transactions_for_user(
        self, user_id: str, account_id: str | None = None
    ) -> list[CanonicalTransaction]: ...

    async def get_transaction(
        self, txn_id: int, user_id: str
    ) -> CanonicalTransaction | None: ...

    async def get_category(self, category_id: int) -> Category | None: ...

    async def create_import_batch(self, batch: ImportBatch) -> ImportBatch: ...

    async def finish_import_batch(
        self, batch_id: int, rows_inserted: int, rows_skipped: int
    ) -> None: ...


@dataclass
class CategorizationSummary:
    """Counters of one categorization run."""

    total: int = 0
    updated: int = 0
    skipped: int = 0
    canonical_updated: int = 0
    updates: list[CategoryUpdate] = field(default_factory=list)


@dataclass
class ImportSummary:
    """Counters of one import."""

    import_batch_id: int | None
    rows_total: int = 0
    rows_inserted: int = 0
    rows_skipped: int = 0
    invalid_skipped: int = 0
    duplicate_skipped: int = 0
    transactions: list[CanonicalTransaction] = field(default_factory=list)
    categorization: CategorizationSummary | None = None


def chunked(items: Sequence[T], size: int = CHUNK_SIZE) -> list[Sequence[T]]:
    """Split a sequence into consecutive chunks of at most ``size`` items."""
    if size < 1:
        raise ValueError("chunk size must be positive")
    return [items[i : i + size] for i in range(0, len(items), size)]


def _unique(values: Iterable[str | None]) -> list[str]:
    return list(dict.fromkeys(v for v in values if v))


async def fetch_existing_hashes(
    store: TransactionStore,
    user_id: str,
    account_id: str | None,
    hashes: Sequence[str],
    chunk_size: int = CHUNK_SIZE,
) -> list[str]:
    """Look up stored hashes for an account, one chunk per call."""
    results = await asyncio.gather(
        *(store.existing_hashes(user_id, account_id, chunk) for chunk in chunked(hashes, chunk_size))
    )
    return [h for chunk in results for h in chunk]


async def fetch_overrides(
    store: TransactionStore,
    user_id: str,
    merchant_keys: Sequence[str],
    chunk_size: int = CHUNK_SIZE,
) -> list[MerchantOverride]:
    """Look up active merchant overrides, one chunk per call."""
    results = await asyncio.gather(
        *(store.active_overrides(user_id, chunk) for chunk in chunked(merchant_keys, chunk_size))
    )
    return [o for chunk in results for o in chunk]


async def ingest_transactions(
    store: TransactionStore,
    rows: Sequence[RawRow],
    context: ImportContext,
    chunk_size: int = CHUNK_SIZE,
) -> ImportSummary:
    """Canonicalize, deduplicate and insert already parsed rows."""
    canonical = canonicalize(rows, context)
    hashes = _unique(t.external_hash for t in canonical.transactions)
    existing = (
        await fetch_existing_hashes(store, context.user_id, context.account_id, hashes, chunk_size)
        if hashes
        else []
    )
    deduped = dedupe(canonical.transactions, existing)

    inserted: list[CanonicalTransaction] = []
    if deduped.transactions:
        inserted = await store.insert_transactions(deduped.transactions)
    rejected = len(deduped.transactions) - len(inserted)
    if rejected:
        log.info(f"Storage rejected {rejected} duplicate(s) that passed the in-memory check")

    duplicate_skipped = deduped.duplicate_skipped + rejected
    return ImportSummary(
        import_batch_id=context.import_batch_id,
        rows_total=len(rows),
        rows_inserted=len(inserted),
        rows_skipped=canonical.invalid_skipped + duplicate_skipped,
        invalid_skipped=canonical.invalid_skipped,
        duplicate_skipped=duplicate_skipped,
        transactions=inserted,
    )


async def import_statement(
    store: TransactionStore,
    buffer: bytes,
    context: ImportContext,
    file_name: str | None = None,
    categorize: bool = False,
    chunk_size: int = CHUNK_SIZE,
) -> ImportSummary:
    """Import a statement spreadsheet into an account.

    Header detection failures propagate before anything is written. Rows the
    parser drops count as skipped, alongside invalid and duplicate rows.
    """
    parsed = StatementParser().parse(buffer)
    batch = await store.create_import_batch(
        ImportBatch(
            id=None,
            user_id=context.user_id,
            account_id=context.account_id,
            bank_source=context.bank_source,
            file_name=file_name,
            file_hash=hashlib.sha256(buffer).hexdigest(),
            rows_total=len(parsed.rows) + parsed.skipped,
        )
    )
    context = dataclasses.replace(context, import_batch_id=batch.id)
    summary = await ingest_transactions(store, parsed.rows, context, chunk_size)
    summary.rows_total += parsed.skipped
    summary.rows_skipped += parsed.skipped
    await store.finish_import_batch(batch.id, summary.rows_inserted, summary.rows_skipped)
    log.info(
        f"Import batch {batch.id}: rows_total={summary.rows_total} "
        f"rows_inserted={summary.rows_inserted} rows_skipped={summary.rows_skipped}"
    )
    if categorize and summary.rows_inserted:
        summary.categorization = await categorize_import(
            store, context.user_id, batch.id, chunk_size=chunk_size
        )
        by_id = {u.transaction_id: u for u in summary.categorization.updates}
        summary.transactions = [
            apply_update(t, by_id[t.id]) if t.id in by_id else t for t in summary.transactions
        ]
    return summary


async def _categorize(
    store: TransactionStore,
    user_id: str,
    transactions: Sequence[CanonicalTransaction],
    force: bool,
    chunk_size: int,
) -> CategorizationSummary:
    merchant_keys = _unique(t.merchant_normalized for t in transactions)
    overrides, rules = await asyncio.gather(
        fetch_overrides(store, user_id, merchant_keys, chunk_size),
        store.active_rules(user_id),
    )
    category_ids = sorted({r.category_id for r in rules} | {o.category_id for o in overrides})
    category_names = await store.category_names(category_ids) if category_ids else {}

    result = build_batch_updates(transactions, overrides, rules, category_names, force)
    if result.updates:
        await store.apply_updates(result.updates)
        await store.apply_audits(result.audits)
    return CategorizationSummary(
        total=len(transactions),
        updated=len(result.updates),
        skipped=result.skipped,
        updates=result.updates,
    )


async def categorize_import(
    store: TransactionStore,
    user_id: str,
    import_batch_id: int,
    force: bool = False,
    chunk_size: int = CHUNK_SIZE,
) -> CategorizationSummary:
    """Categorize every transaction of one import batch."""
    transactions = await store.transactions_for_batch(user_id, import_batch_id)
    if not transactions:
        return CategorizationSummary()
    summary = await _categorize(store, user_id, transactions, force, chunk_size)
    log.info(
        f"Categorized batch {import_batch_id}: total={summary.total} "
        f"updated={summary.updated} skipped={summary.skipped} force={force}"
    )
    return summary


async def categorize_account(
    store: TransactionStore,
    user_id: str,
    account_id: str | None = None,
    force: bool = False,
    chunk_size: int = CHUNK_SIZE,
) -> CategorizationSummary:
    """Categorize all transactions of a user, or of one of their accounts.

    Legacy rows missing normalization fields are backfilled first so that
    merchant overrides and rules can see them.
    """
    transactions = await store.transactions_for_user(user_id, account_id)
    if not transactions:
        return CategorizationSummary()

    normalized = []
    backfilled = []
    for txn in transactions:
        updated = backfill_normalization(txn)
        if updated is not None:
            backfilled.append(updated)
        normalized.append(updated or txn)
    if backfilled:
        await store.apply_normalization(backfilled)

    summary = await _categorize(store, user_id, normalized, force, chunk_size)
    summary.canonical_updated = len(backfilled)
    log.info(
        f"Categorized account {account_id or '*'}: total={summary.total} "
        f"updated={summary.updated} canonical_updated={summary.canonical_updated} "
        f"skipped={summary.skipped} force={force}"
    )
    return summary


async def assign_category(
    store: TransactionStore,
    user_id: str,
    transaction_id: int,
    category_id: int,
    apply_to_merchant: bool = False,
    scope: OverrideScope = OverrideScope.USER,
) -> ManualUpdate:
    """Pin a category chosen by the user, optionally for the whole merchant.

    Raises:
        NotFoundError: unknown transaction or category.
        InvalidOverrideScopeError: the override cannot be scoped.
    """
    transaction = await store.get_transaction(transaction_id, user_id)
    if transaction is None:
        raise NotFoundError(f"Transaction {transaction_id} not found")
    category = await store.get_category(category_id)
    if category is None:
        raise NotFoundError(f"Category {category_id} not found")

    manual = build_manual_update(transaction, category, apply_to_merchant, scope)
    await store.apply_updates([manual.update])
    if manual.override is not None:
        manual.override = await store.apply_override(manual.override)
    await store.apply_audits([manual.audit])
    log.info(
        f"Transaction {transaction_id} pinned to category {category.name!r} "
        f"(apply_to_merchant={apply_to_merchant}, scope={scope.value})"
    )
    return manual
