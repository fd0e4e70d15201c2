"""Database models and schema definitions."""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum

UNCATEGORIZED_LABEL = "Sin Categoria"


class TxnType(Enum):
    """Transaction type inferred from description text and amount sign."""

    FEE = "fee"
    INTEREST = "interest"
    TAX = "tax"
    TRANSFER = "transfer"
    INCOME = "income"
    EXPENSE = "expense"
    UNKNOWN = "unknown"


class CategorySource(Enum):
    """Provenance of a transaction's category."""

    UNKNOWN = "unknown"
    RULE = "rule"
    USER = "user"


class MatchField(Enum):
    """Transaction field a rule pattern is matched against."""

    DESCRIPTION_CLEAN = "description_clean"
    MERCHANT_NORMALIZED = "merchant_normalized"


class MatchType(Enum):
    """Type of pattern matching for rules."""

    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    EQUALS = "equals"
    REGEX = "regex"


class OverrideScope(Enum):
    """Scope of a merchant category override."""

    ACCOUNT = "account"
    USER = "user"


class MatchedBy(Enum):
    """Which layer of the categorization policy produced a decision."""

    OVERRIDE = "override"
    RULE = "rule"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class RawRow:
    """One data row of a parsed bank statement."""

    date: date
    value_date: date | None
    description: str
    amount: Decimal
    balance: Decimal | None = None
    reference1: str | None = None
    reference2: str | None = None


@dataclass(frozen=True)
class ImportContext:
    """Identity and defaults applied to every row of one import."""

    user_id: str
    account_id: str | None
    bank_source: str = "sabadell"
    currency: str = "EUR"
    import_batch_id: int | None = None
    channel: str = "Sabadell"


@dataclass
class Category:
    """Spending or income category."""

    id: int | None
    name: str


@dataclass
class CanonicalTransaction:
    """Normalized, hash-stamped transaction record."""

    id: int | None
    user_id: str
    account_id: str | None
    bank_source: str | None
    date: date
    amount: Decimal
    description_raw: str
    external_hash: str
    value_date: date | None = None
    currency: str = "EUR"
    description_clean: str | None = None
    merchant_raw: str | None = None
    merchant_normalized: str | None = None
    txn_type: TxnType = TxnType.UNKNOWN
    category_id: int | None = None
    category_source: CategorySource = CategorySource.UNKNOWN
    category_confidence: float | None = None
    rule_id: int | None = None
    category_label: str = UNCATEGORIZED_LABEL
    import_batch_id: int | None = None
    channel: str | None = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def direction(self) -> str:
        """Legacy income/expense flag derived from the amount sign."""
        return "expense" if self.amount < 0 else "income"


@dataclass
class CategoryRule:
    """Categorization rule for auto-matching transactions."""

    id: int | None
    category_id: int
    pattern: str
    match_field: MatchField = MatchField.DESCRIPTION_CLEAN
    match_type: MatchType = MatchType.CONTAINS
    user_id: str | None = None
    name: str = ""
    priority: int = 0
    txn_type_filter: frozenset[TxnType] | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    confidence: float | None = None
    is_active: bool = True
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def is_global(self) -> bool:
        """Rules without an owner apply to every user."""
        return self.user_id is None


@dataclass
class MerchantOverride:
    """Standing merchant to category assignment."""

    id: int | None
    user_id: str
    merchant_normalized: str
    category_id: int
    scope: OverrideScope = OverrideScope.USER
    account_id: str | None = None
    is_active: bool = True
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class CategorizationDecision:
    """Outcome of evaluating the categorization policy for one transaction."""

    category_id: int | None
    category_source: CategorySource
    category_confidence: float | None
    rule_id: int | None
    matched_by: MatchedBy


@dataclass
class CategoryUpdate:
    """Change to the categorization fields of a stored transaction."""

    transaction_id: int | None
    category_id: int | None
    category_source: CategorySource
    category_confidence: float | None
    rule_id: int | None
    category_label: str
    updated_at: datetime = field(default_factory=datetime.now)


@dataclass
class AuditRecord:
    """Append-only record of one applied category change."""

    transaction_id: int | None
    user_id: str | None
    previous_category_id: int | None
    new_category_id: int | None
    source: CategorySource
    rule_id: int | None
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class ImportBatch:
    """One statement or callback import processed as a unit."""

    id: int | None
    user_id: str
    account_id: str | None
    bank_source: str | None
    file_name: str | None = None
    file_hash: str | None = None
    rows_total: int = 0
    rows_inserted: int = 0
    rows_skipped: int = 0
    created_at: datetime = field(default_factory=datetime.now)
