"""Database schema migrations."""

SCHEMA_VERSION = 3

MIGRATIONS = {
    1: """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY
        );

        CREATE TABLE IF NOT EXISTS categories (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE
        );

        CREATE TABLE IF NOT EXISTS category_rules (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT,
            name TEXT NOT NULL DEFAULT '',
            pattern TEXT NOT NULL,
            match_field TEXT NOT NULL,
            match_type TEXT NOT NULL,
            txn_type_filter TEXT,
            category_id INTEGER NOT NULL REFERENCES categories(id),
            min_amount TEXT,
            max_amount TEXT,
            confidence REAL,
            priority INTEGER NOT NULL DEFAULT 0,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_category_rules_owner_active
            ON category_rules(user_id, is_active, priority DESC);

        CREATE TABLE IF NOT EXISTS merchant_overrides (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            merchant_normalized TEXT NOT NULL,
            category_id INTEGER NOT NULL REFERENCES categories(id),
            scope TEXT NOT NULL,
            account_id TEXT NOT NULL DEFAULT '',
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (user_id, scope, account_id, merchant_normalized)
        );

        CREATE INDEX IF NOT EXISTS idx_merchant_overrides_lookup
            ON merchant_overrides(user_id, is_active, merchant_normalized);

        CREATE TABLE IF NOT EXISTS transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            account_id TEXT NOT NULL DEFAULT '',
            bank_source TEXT,
            date TEXT NOT NULL,
            value_date TEXT,
            amount TEXT NOT NULL,
            currency TEXT NOT NULL,
            description_raw TEXT NOT NULL,
            description_clean TEXT,
            merchant_raw TEXT,
            merchant_normalized TEXT,
            txn_type TEXT NOT NULL DEFAULT 'unknown',
            category_id INTEGER REFERENCES categories(id),
            category_source TEXT NOT NULL DEFAULT 'unknown',
            category_confidence REAL,
            rule_id INTEGER REFERENCES category_rules(id),
            category_label TEXT NOT NULL,
            external_hash TEXT NOT NULL,
            import_batch_id INTEGER,
            channel TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (user_id, account_id, external_hash)
        );

        CREATE INDEX IF NOT EXISTS idx_transactions_user_batch
            ON transactions(user_id, import_batch_id);
        CREATE INDEX IF NOT EXISTS idx_transactions_date
            ON transactions(date);

        CREATE TABLE IF NOT EXISTS category_audit (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            transaction_id INTEGER REFERENCES transactions(id) ON DELETE CASCADE,
            user_id TEXT,
            previous_category_id INTEGER,
            new_category_id INTEGER,
            source TEXT NOT NULL,
            rule_id INTEGER,
            created_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_category_audit_transaction
            ON category_audit(transaction_id);

        INSERT INTO schema_version (version) VALUES (1);
    """,
    2: """
        CREATE TABLE IF NOT EXISTS import_batches (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            account_id TEXT,
            bank_source TEXT,
            file_name TEXT,
            file_hash TEXT,
            rows_total INTEGER NOT NULL DEFAULT 0,
            rows_inserted INTEGER NOT NULL DEFAULT 0,
            rows_skipped INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        );

        UPDATE schema_version SET version = 2;
    """,
    3: """
        ALTER TABLE transactions ADD COLUMN type TEXT NOT NULL DEFAULT 'income';

        UPDATE transactions
            SET type = CASE WHEN CAST(amount AS REAL) < 0 THEN 'expense' ELSE 'income' END;

        UPDATE schema_version SET version = 3;
    """,
}


def get_migration_sql(from_version: int, to_version: int) -> list[str]:
    """Get list of migration SQL statements to run."""
    statements = []
    for version in range(from_version + 1, to_version + 1):
        if version in MIGRATIONS:
            statements.append(MIGRATIONS[version])
    return statements
