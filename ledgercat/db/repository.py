"""Data access layer for SQLite database."""

import logging
from collections.abc import Sequence
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path

import aiosqlite

from ledgercat.db.migrations import SCHEMA_VERSION, get_migration_sql
from ledgercat.db.models import (
    AuditRecord,
    CanonicalTransaction,
    Category,
    CategoryRule,
    CategorySource,
    CategoryUpdate,
    ImportBatch,
    MatchField,
    MatchType,
    MerchantOverride,
    OverrideScope,
    TxnType,
)

log = logging.getLogger("ledgercat.repository")

PAGE_SIZE = 1000
MAX_MERCHANT_LIMIT = 200


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


def _optional_date(value: str | None) -> date | None:
    return date.fromisoformat(value) if value else None


class Repository:
    """Async repository for database operations."""

    def __init__(self, db_path: Path):
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """Connect to the database and run migrations."""
        self._connection = await aiosqlite.connect(self._db_path)
        self._connection.row_factory = aiosqlite.Row
        await self._run_migrations()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def _run_migrations(self) -> None:  # pragma: no cover
        """Run pending database migrations."""
        current_version = await self._get_schema_version()
        if current_version < SCHEMA_VERSION:
            migrations = get_migration_sql(current_version, SCHEMA_VERSION)
            for sql in migrations:
                await self._connection.executescript(sql)
            await self._connection.commit()

    async def _get_schema_version(self) -> int:
        """Get current schema version from database."""
        try:
            cursor = await self._connection.execute(
                "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
            )
            row = await cursor.fetchone()
            return row["version"] if row else 0
        except aiosqlite.OperationalError:
            return 0

    # Category operations

    async def save_category(self, category: Category) -> Category:
        """Save or update a category."""
        if category.id is None:
            await self._connection.execute(
                "INSERT INTO categories (name) VALUES (?) ON CONFLICT(name) DO NOTHING",
                (category.name,),
            )
            await self._connection.commit()
            return await self.get_category_by_name(category.name)
        await self._connection.execute(
            "UPDATE categories SET name = ? WHERE id = ?", (category.name, category.id)
        )
        await self._connection.commit()
        return await self.get_category(category.id)

    async def get_category(self, category_id: int) -> Category | None:
        """Get category by ID."""
        cursor = await self._connection.execute(
            "SELECT * FROM categories WHERE id = ?", (category_id,)
        )
        row = await cursor.fetchone()
        return Category(id=row["id"], name=row["name"]) if row else None

    async def get_category_by_name(self, name: str) -> Category | None:
        """Get category by name."""
        cursor = await self._connection.execute(
            "SELECT * FROM categories WHERE name = ?", (name,)
        )
        row = await cursor.fetchone()
        return Category(id=row["id"], name=row["name"]) if row else None

    async def get_all_categories(self) -> list[Category]:
        """Get all categories."""
        cursor = await self._connection.execute("SELECT * FROM categories ORDER BY name")
        rows = await cursor.fetchall()
        return [Category(id=row["id"], name=row["name"]) for row in rows]

    async def category_names(self, category_ids: Sequence[int]) -> dict[int, str]:
        """Map category IDs to their names."""
        if not category_ids:
            return {}
        cursor = await self._connection.execute(
            f"SELECT id, name FROM categories WHERE id IN ({_placeholders(len(category_ids))})",
            list(category_ids),
        )
        rows = await cursor.fetchall()
        return {row["id"]: row["name"] for row in rows}

    # Rule operations

    async def save_rule(self, rule: CategoryRule) -> CategoryRule:
        """Save or update a rule."""
        min_amt = str(rule.min_amount) if rule.min_amount is not None else None
        max_amt = str(rule.max_amount) if rule.max_amount is not None else None
        txn_types = (
            ",".join(sorted(t.value for t in rule.txn_type_filter))
            if rule.txn_type_filter
            else None
        )
        values = (
            rule.user_id,
            rule.name,
            rule.pattern,
            rule.match_field.value,
            rule.match_type.value,
            txn_types,
            rule.category_id,
            min_amt,
            max_amt,
            rule.confidence,
            rule.priority,
            int(rule.is_active),
        )
        if rule.id is None:
            cursor = await self._connection.execute(
                """INSERT INTO category_rules (user_id, name, pattern, match_field,
                   match_type, txn_type_filter, category_id, min_amount, max_amount,
                   confidence, priority, is_active, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (*values, rule.created_at.isoformat()),
            )
            await self._connection.commit()
            rule_id = cursor.lastrowid
        else:
            await self._connection.execute(
                """UPDATE category_rules SET user_id=?, name=?, pattern=?, match_field=?,
                   match_type=?, txn_type_filter=?, category_id=?, min_amount=?,
                   max_amount=?, confidence=?, priority=?, is_active=?
                   WHERE id=?""",
                (*values, rule.id),
            )
            await self._connection.commit()
            rule_id = rule.id
        return await self.get_rule_by_id(rule_id)

    async def get_rule_by_id(self, rule_id: int) -> CategoryRule | None:
        """Get rule by ID."""
        cursor = await self._connection.execute(
            "SELECT * FROM category_rules WHERE id = ?", (rule_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_rule(row) if row else None

    async def active_rules(self, user_id: str) -> list[CategoryRule]:
        """Get active personal and global rules for a user."""
        cursor = await self._connection.execute(
            """SELECT * FROM category_rules
               WHERE is_active = 1 AND (user_id = ? OR user_id IS NULL)
               ORDER BY priority DESC, created_at ASC""",
            (user_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_rule(row) for row in rows]

    async def delete_rule(self, rule_id: int) -> None:
        """Delete a rule."""
        await self._connection.execute("DELETE FROM category_rules WHERE id = ?", (rule_id,))
        await self._connection.commit()

    def _row_to_rule(self, row: aiosqlite.Row) -> CategoryRule:
        """Convert database row to CategoryRule object."""
        txn_types = row["txn_type_filter"]
        return CategoryRule(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            pattern=row["pattern"],
            match_field=MatchField(row["match_field"]),
            match_type=MatchType(row["match_type"]),
            txn_type_filter=(
                frozenset(TxnType(t) for t in txn_types.split(",") if t) if txn_types else None
            ),
            category_id=row["category_id"],
            min_amount=Decimal(row["min_amount"]) if row["min_amount"] else None,
            max_amount=Decimal(row["max_amount"]) if row["max_amount"] else None,
            confidence=row["confidence"],
            priority=row["priority"],
            is_active=bool(row["is_active"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # Merchant override operations

    async def apply_override(self, override: MerchantOverride) -> MerchantOverride:
        """Insert or replace the override for a user, scope, account and merchant."""
        now = datetime.now().isoformat()
        account_key = override.account_id if override.scope == OverrideScope.ACCOUNT else ""
        await self._connection.execute(
            """INSERT INTO merchant_overrides (user_id, merchant_normalized, category_id,
               scope, account_id, is_active, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(user_id, scope, account_id, merchant_normalized) DO UPDATE SET
               category_id=excluded.category_id,
               is_active=excluded.is_active,
               updated_at=excluded.updated_at""",
            (
                override.user_id,
                override.merchant_normalized,
                override.category_id,
                override.scope.value,
                account_key or "",
                int(override.is_active),
                override.created_at.isoformat(),
                now,
            ),
        )
        await self._connection.commit()
        cursor = await self._connection.execute(
            """SELECT * FROM merchant_overrides WHERE user_id = ? AND scope = ?
               AND account_id = ? AND merchant_normalized = ?""",
            (
                override.user_id,
                override.scope.value,
                account_key or "",
                override.merchant_normalized,
            ),
        )
        row = await cursor.fetchone()
        return self._row_to_override(row)

    async def active_overrides(
        self, user_id: str, merchant_keys: Sequence[str]
    ) -> list[MerchantOverride]:
        """Get active overrides of a user for the given merchants."""
        if not merchant_keys:
            return []
        cursor = await self._connection.execute(
            f"""SELECT * FROM merchant_overrides
                WHERE user_id = ? AND is_active = 1
                AND merchant_normalized IN ({_placeholders(len(merchant_keys))})""",
            (user_id, *merchant_keys),
        )
        rows = await cursor.fetchall()
        return [self._row_to_override(row) for row in rows]

    def _row_to_override(self, row: aiosqlite.Row) -> MerchantOverride:
        """Convert database row to MerchantOverride object."""
        return MerchantOverride(
            id=row["id"],
            user_id=row["user_id"],
            merchant_normalized=row["merchant_normalized"],
            category_id=row["category_id"],
            scope=OverrideScope(row["scope"]),
            account_id=row["account_id"] or None,
            is_active=bool(row["is_active"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    # Transaction operations

    async def insert_transactions(
        self, transactions: Sequence[CanonicalTransaction]
    ) -> list[CanonicalTransaction]:
        """Insert new transactions, returning the ones actually stored.

        Rows rejected by the per-account hash uniqueness constraint are left
        out of the result.
        """
        inserted = []
        for txn in transactions:
            cursor = await self._connection.execute(
                """INSERT INTO transactions (user_id, account_id, bank_source, date,
                   value_date, amount, currency, description_raw, description_clean,
                   merchant_raw, merchant_normalized, txn_type, type, category_id,
                   category_source, category_confidence, rule_id, category_label,
                   external_hash, import_batch_id, channel, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(user_id, account_id, external_hash) DO NOTHING""",
                (
                    txn.user_id,
                    txn.account_id or "",
                    txn.bank_source,
                    txn.date.isoformat(),
                    txn.value_date.isoformat() if txn.value_date else None,
                    str(txn.amount),
                    txn.currency,
                    txn.description_raw,
                    txn.description_clean,
                    txn.merchant_raw,
                    txn.merchant_normalized,
                    txn.txn_type.value,
                    txn.direction,
                    txn.category_id,
                    txn.category_source.value,
                    txn.category_confidence,
                    txn.rule_id,
                    txn.category_label,
                    txn.external_hash,
                    txn.import_batch_id,
                    txn.channel,
                    txn.created_at.isoformat(),
                    txn.updated_at.isoformat(),
                ),
            )
            if cursor.rowcount == 1:
                txn.id = cursor.lastrowid
                inserted.append(txn)
            else:
                log.debug(f"Storage rejected duplicate hash {txn.external_hash}")
        await self._connection.commit()
        return inserted

    async def existing_hashes(
        self, user_id: str, account_id: str | None, hashes: Sequence[str]
    ) -> list[str]:
        """Get which of the given hashes are already stored for an account."""
        if not hashes:
            return []
        cursor = await self._connection.execute(
            f"""SELECT external_hash FROM transactions
                WHERE user_id = ? AND account_id = ?
                AND external_hash IN ({_placeholders(len(hashes))})""",
            (user_id, account_id or "", *hashes),
        )
        rows = await cursor.fetchall()
        return [row["external_hash"] for row in rows]

    async def get_transaction(self, txn_id: int, user_id: str) -> CanonicalTransaction | None:
        """Get a user's transaction by ID."""
        cursor = await self._connection.execute(
            "SELECT * FROM transactions WHERE id = ? AND user_id = ?", (txn_id, user_id)
        )
        row = await cursor.fetchone()
        return self._row_to_transaction(row) if row else None

    async def transactions_for_batch(
        self, user_id: str, import_batch_id: int
    ) -> list[CanonicalTransaction]:
        """Get all transactions inserted by one import batch."""
        return await self._fetch_paged(
            "SELECT * FROM transactions WHERE user_id = ? AND import_batch_id = ?",
            (user_id, import_batch_id),
        )

    async def transactions_for_user(
        self, user_id: str, account_id: str | None = None
    ) -> list[CanonicalTransaction]:
        """Get all transactions of a user, optionally for one account."""
        if account_id is None:
            return await self._fetch_paged(
                "SELECT * FROM transactions WHERE user_id = ?", (user_id,)
            )
        return await self._fetch_paged(
            "SELECT * FROM transactions WHERE user_id = ? AND account_id = ?",
            (user_id, account_id),
        )

    async def _fetch_paged(self, query: str, params: tuple) -> list[CanonicalTransaction]:
        """Read a transaction query page by page."""
        transactions = []
        offset = 0
        while True:
            cursor = await self._connection.execute(
                f"{query} ORDER BY id LIMIT ? OFFSET ?", (*params, PAGE_SIZE, offset)
            )
            rows = await cursor.fetchall()
            transactions.extend(self._row_to_transaction(row) for row in rows)
            if len(rows) < PAGE_SIZE:
                break
            offset += PAGE_SIZE
        return transactions

    async def apply_updates(self, updates: Sequence[CategoryUpdate]) -> None:
        """Write category updates."""
        if not updates:
            return
        await self._connection.executemany(
            """UPDATE transactions SET category_id=?, category_source=?,
               category_confidence=?, rule_id=?, category_label=?, updated_at=?
               WHERE id=?""",
            [
                (
                    u.category_id,
                    u.category_source.value,
                    u.category_confidence,
                    u.rule_id,
                    u.category_label,
                    u.updated_at.isoformat(),
                    u.transaction_id,
                )
                for u in updates
            ],
        )
        await self._connection.commit()

    async def apply_normalization(self, transactions: Sequence[CanonicalTransaction]) -> None:
        """Write backfilled description, merchant and type fields."""
        if not transactions:
            return
        await self._connection.executemany(
            """UPDATE transactions SET description_clean=?, merchant_raw=?,
               merchant_normalized=?, txn_type=?, updated_at=? WHERE id=?""",
            [
                (
                    t.description_clean,
                    t.merchant_raw,
                    t.merchant_normalized,
                    t.txn_type.value,
                    t.updated_at.isoformat(),
                    t.id,
                )
                for t in transactions
            ],
        )
        await self._connection.commit()

    async def get_uncategorized_merchants(self, user_id: str, limit: int = 50) -> list[dict]:
        """Get merchants whose transactions are still uncategorized, most frequent first."""
        limit = min(max(limit, 1), MAX_MERCHANT_LIMIT)
        cursor = await self._connection.execute(
            """SELECT merchant_normalized, COUNT(*) AS txn_count,
               SUM(CAST(amount AS REAL)) AS total_amount
               FROM transactions
               WHERE user_id = ? AND category_source = 'unknown'
               AND merchant_normalized IS NOT NULL AND merchant_normalized != ''
               GROUP BY merchant_normalized
               ORDER BY txn_count DESC, merchant_normalized
               LIMIT ?""",
            (user_id, limit),
        )
        rows = await cursor.fetchall()
        return [
            {
                "merchant_normalized": row["merchant_normalized"],
                "txn_count": row["txn_count"],
                "total_amount": row["total_amount"],
            }
            for row in rows
        ]

    def _row_to_transaction(self, row: aiosqlite.Row) -> CanonicalTransaction:
        """Convert database row to CanonicalTransaction object."""
        return CanonicalTransaction(
            id=row["id"],
            user_id=row["user_id"],
            account_id=row["account_id"] or None,
            bank_source=row["bank_source"],
            date=date.fromisoformat(row["date"]),
            value_date=_optional_date(row["value_date"]),
            amount=Decimal(row["amount"]),
            currency=row["currency"],
            description_raw=row["description_raw"],
            description_clean=row["description_clean"],
            merchant_raw=row["merchant_raw"],
            merchant_normalized=row["merchant_normalized"],
            txn_type=TxnType(row["txn_type"]),
            category_id=row["category_id"],
            category_source=CategorySource(row["category_source"]),
            category_confidence=row["category_confidence"],
            rule_id=row["rule_id"],
            category_label=row["category_label"],
            external_hash=row["external_hash"],
            import_batch_id=row["import_batch_id"],
            channel=row["channel"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    # Audit operations

    async def apply_audits(self, records: Sequence[AuditRecord]) -> None:
        """Append category audit records."""
        if not records:
            return
        await self._connection.executemany(
            """INSERT INTO category_audit (transaction_id, user_id, previous_category_id,
               new_category_id, source, rule_id, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            [
                (
                    r.transaction_id,
                    r.user_id,
                    r.previous_category_id,
                    r.new_category_id,
                    r.source.value,
                    r.rule_id,
                    r.created_at.isoformat(),
                )
                for r in records
            ],
        )
        await self._connection.commit()

    async def get_audit_records(self, txn_id: int) -> list[AuditRecord]:
        """Get the audit trail of a transaction, oldest first."""
        cursor = await self._connection.execute(
            "SELECT * FROM category_audit WHERE transaction_id = ? ORDER BY id", (txn_id,)
        )
        rows = await cursor.fetchall()
        return [
            AuditRecord(
                transaction_id=row["transaction_id"],
                user_id=row["user_id"],
                previous_category_id=row["previous_category_id"],
                new_category_id=row["new_category_id"],
                source=CategorySource(row["source"]),
                rule_id=row["rule_id"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    # Import batch operations

    async def create_import_batch(self, batch: ImportBatch) -> ImportBatch:
        """Record the start of an import."""
        cursor = await self._connection.execute(
            """INSERT INTO import_batches (user_id, account_id, bank_source, file_name,
               file_hash, rows_total, rows_inserted, rows_skipped, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                batch.user_id,
                batch.account_id,
                batch.bank_source,
                batch.file_name,
                batch.file_hash,
                batch.rows_total,
                batch.rows_inserted,
                batch.rows_skipped,
                batch.created_at.isoformat(),
            ),
        )
        await self._connection.commit()
        return await self.get_import_batch(cursor.lastrowid)

    async def finish_import_batch(
        self, batch_id: int, rows_inserted: int, rows_skipped: int
    ) -> None:
        """Record the outcome counters of an import."""
        await self._connection.execute(
            "UPDATE import_batches SET rows_inserted = ?, rows_skipped = ? WHERE id = ?",
            (rows_inserted, rows_skipped, batch_id),
        )
        await self._connection.commit()

    async def get_import_batch(self, batch_id: int) -> ImportBatch | None:
        """Get import batch by ID."""
        cursor = await self._connection.execute(
            "SELECT * FROM import_batches WHERE id = ?", (batch_id,)
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return ImportBatch(
            id=row["id"],
            user_id=row["user_id"],
            account_id=row["account_id"],
            bank_source=row["bank_source"],
            file_name=row["file_name"],
            file_hash=row["file_hash"],
            rows_total=row["rows_total"],
            rows_inserted=row["rows_inserted"],
            rows_skipped=row["rows_skipped"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )
