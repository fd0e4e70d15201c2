"""Rules engine for transaction auto-categorization."""

import dataclasses
import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from ledgercat.db.models import (
    UNCATEGORIZED_LABEL,
    AuditRecord,
    CanonicalTransaction,
    Category,
    CategorizationDecision,
    CategoryRule,
    CategorySource,
    CategoryUpdate,
    MatchedBy,
    MatchField,
    MatchType,
    MerchantOverride,
    OverrideScope,
)
from ledgercat.errors import InvalidOverrideScopeError
from ledgercat.ingest.normalization import normalize_whitespace, strip_diacritics

log = logging.getLogger("ledgercat.rules")

MAX_REGEX_PATTERN_LENGTH = 200
DEFAULT_RULE_CONFIDENCE = 0.9
OVERRIDE_CONFIDENCE = 1.0

UNKNOWN_DECISION = CategorizationDecision(
    category_id=None,
    category_source=CategorySource.UNKNOWN,
    category_confidence=None,
    rule_id=None,
    matched_by=MatchedBy.UNKNOWN,
)


@dataclass
class BatchResult:
    """Category updates and audit entries computed for a batch."""

    updates: list[CategoryUpdate]
    audits: list[AuditRecord]
    skipped: int = 0


@dataclass
class ManualUpdate:
    """Result of a user explicitly choosing a category."""

    update: CategoryUpdate
    audit: AuditRecord
    override: MerchantOverride | None = None


def normalize_match_value(value: object) -> str:
    """Strip diacritics, uppercase and collapse whitespace for matching."""
    return normalize_whitespace(strip_diacritics(value).upper())


def _rule_sort_key(rule: CategoryRule) -> tuple[int, float]:
    created = rule.created_at.timestamp() if rule.created_at else 0.0
    return (-(rule.priority or 0), created)


def _match_value(transaction: CanonicalTransaction, field: MatchField) -> str | None:
    if field == MatchField.MERCHANT_NORMALIZED:
        return transaction.merchant_normalized
    return transaction.description_clean


class CategorizationEngine:
    """Layered categorization policy over one loaded set of rules.

    Rules are partitioned into personal and global sets, each sorted by
    priority (descending) then creation time (ascending). Regex patterns are
    compiled once per engine; patterns over ``MAX_REGEX_PATTERN_LENGTH``
    characters or that fail to compile never match.
    """

    def __init__(self, rules: Iterable[CategoryRule] = ()):
        self._rules = sorted(rules, key=_rule_sort_key)
        self._global_rules: list[CategoryRule] = []
        self._user_rules: dict[str, list[CategoryRule]] = {}
        self._compiled_patterns: dict[int, re.Pattern | None] = {}
        self._partition_rules()
        self._compile_patterns()

    def _partition_rules(self) -> None:
        """Split rules by owner, keeping the sorted order."""
        for rule in self._rules:
            if rule.is_global:
                self._global_rules.append(rule)
            else:
                self._user_rules.setdefault(rule.user_id, []).append(rule)

    def _compile_patterns(self) -> None:
        """Pre-compile regex patterns for performance."""
        for rule in self._rules:
            if rule.match_type != MatchType.REGEX:
                continue
            self._compiled_patterns[id(rule)] = self._compile(rule)

    @staticmethod
    def _compile(rule: CategoryRule) -> re.Pattern | None:
        pattern = rule.pattern or ""
        if len(pattern) > MAX_REGEX_PATTERN_LENGTH:
            log.warning(
                f"Rule {rule.id} regex is {len(pattern)} characters "
                f"(max {MAX_REGEX_PATTERN_LENGTH}); it will never match"
            )
            return None
        try:
            return re.compile(pattern, re.IGNORECASE)
        except re.error as e:
            log.warning(f"Rule {rule.id} has an invalid regex {pattern!r}: {e}")
            return None

    @property
    def rules(self) -> list[CategoryRule]:
        """Get all rules in evaluation order."""
        return self._rules.copy()

    def rule_applies(self, rule: CategoryRule, transaction: CanonicalTransaction) -> bool:
        """Check whether a single rule matches a transaction."""
        if not rule.is_active:
            return False
        value = _match_value(transaction, rule.match_field)
        if not value:
            return False
        if rule.txn_type_filter and transaction.txn_type not in rule.txn_type_filter:
            return False
        if not self._amount_in_range(transaction.amount, rule):
            return False
        return self._check_pattern(rule, value)

    def _amount_in_range(self, amount: Decimal | None, rule: CategoryRule) -> bool:
        """Check if the absolute amount is within the rule's bounds."""
        abs_amount = abs(amount) if amount is not None else Decimal(0)
        if rule.min_amount is not None and abs_amount < rule.min_amount:
            return False
        return rule.max_amount is None or abs_amount <= rule.max_amount

    def _check_pattern(self, rule: CategoryRule, value: str) -> bool:
        """Check if the rule pattern matches a field value."""
        pattern = normalize_match_value(rule.pattern)
        normalized = normalize_match_value(value)
        if not pattern or not normalized:
            return False
        if rule.match_type == MatchType.CONTAINS:
            return pattern in normalized
        if rule.match_type == MatchType.STARTS_WITH:
            return normalized.startswith(pattern)
        if rule.match_type == MatchType.EQUALS:
            return normalized == pattern
        # MatchType.REGEX
        if id(rule) in self._compiled_patterns:
            compiled = self._compiled_patterns[id(rule)]
        else:
            compiled = self._compile(rule)
        return bool(compiled and compiled.search(normalized))

    def _first_match(
        self, rules: list[CategoryRule], transaction: CanonicalTransaction
    ) -> CategoryRule | None:
        for rule in rules:
            if self.rule_applies(rule, transaction):
                return rule
        return None

    def find_rule(self, transaction: CanonicalTransaction) -> CategoryRule | None:
        """Find the winning rule: personal rules first, then global ones."""
        personal = self._user_rules.get(transaction.user_id, []) if transaction.user_id else []
        return self._first_match(personal, transaction) or self._first_match(
            self._global_rules, transaction
        )

    def evaluate(
        self,
        transaction: CanonicalTransaction,
        overrides: Iterable[MerchantOverride] = (),
        force: bool = False,
    ) -> CategorizationDecision | None:
        """Decide a category for a transaction.

        Returns None when the transaction carries a manual category and
        ``force`` is not set.
        """
        if transaction.category_source == CategorySource.USER and not force:
            return None

        merchant = transaction.merchant_normalized
        if merchant:
            active = [o for o in overrides if o.is_active and o.merchant_normalized == merchant]
            override = next(
                (
                    o
                    for o in active
                    if o.scope == OverrideScope.ACCOUNT
                    and o.account_id
                    and o.account_id == transaction.account_id
                ),
                None,
            ) or next((o for o in active if o.scope == OverrideScope.USER), None)
            if override is not None:
                return CategorizationDecision(
                    category_id=override.category_id,
                    category_source=CategorySource.USER,
                    category_confidence=OVERRIDE_CONFIDENCE,
                    rule_id=None,
                    matched_by=MatchedBy.OVERRIDE,
                )

        rule = self.find_rule(transaction)
        if rule is not None:
            return CategorizationDecision(
                category_id=rule.category_id,
                category_source=CategorySource.RULE,
                category_confidence=(
                    rule.confidence if rule.confidence is not None else DEFAULT_RULE_CONFIDENCE
                ),
                rule_id=rule.id,
                matched_by=MatchedBy.RULE,
            )
        return UNKNOWN_DECISION


def evaluate(
    transaction: CanonicalTransaction,
    overrides: Iterable[MerchantOverride] = (),
    rules: Iterable[CategoryRule] = (),
    force: bool = False,
) -> CategorizationDecision | None:
    """Evaluate the categorization policy for a single transaction."""
    return CategorizationEngine(rules).evaluate(transaction, overrides, force)


def build_transaction_update(
    transaction: CanonicalTransaction,
    decision: CategorizationDecision | None,
    category_names: Mapping[int, str] | None = None,
) -> CategoryUpdate | None:
    """Compute the update a decision implies, or None if nothing changes."""
    if decision is None:
        return None
    if (
        decision.category_source == transaction.category_source
        and decision.category_id == transaction.category_id
        and decision.rule_id == transaction.rule_id
    ):
        return None
    if decision.category_id is None:
        label = UNCATEGORIZED_LABEL
    else:
        label = (category_names or {}).get(decision.category_id) or transaction.category_label
    return CategoryUpdate(
        transaction_id=transaction.id,
        category_id=decision.category_id,
        category_source=decision.category_source,
        category_confidence=decision.category_confidence,
        rule_id=decision.rule_id,
        category_label=label or UNCATEGORIZED_LABEL,
    )


def build_audit_record(
    transaction: CanonicalTransaction, decision: CategorizationDecision
) -> AuditRecord:
    """Build the audit entry for an applied decision."""
    return AuditRecord(
        transaction_id=transaction.id,
        user_id=transaction.user_id,
        previous_category_id=transaction.category_id,
        new_category_id=decision.category_id,
        source=decision.category_source,
        rule_id=decision.rule_id,
    )


def build_batch_updates(
    transactions: Iterable[CanonicalTransaction],
    overrides: Iterable[MerchantOverride] = (),
    rules: Iterable[CategoryRule] = (),
    category_names: Mapping[int, str] | None = None,
    force: bool = False,
) -> BatchResult:
    """Categorize a batch, emitting one update and one audit per change."""
    engine = CategorizationEngine(rules)
    overrides = list(overrides)
    result = BatchResult(updates=[], audits=[])
    for transaction in transactions:
        decision = engine.evaluate(transaction, overrides, force)
        update = build_transaction_update(transaction, decision, category_names)
        if update is None:
            result.skipped += 1
            continue
        result.updates.append(update)
        result.audits.append(build_audit_record(transaction, decision))
    return result


def build_manual_update(
    transaction: CanonicalTransaction,
    category: Category,
    apply_to_merchant: bool = False,
    scope: OverrideScope = OverrideScope.USER,
) -> ManualUpdate:
    """Pin a user-chosen category, optionally as a standing merchant override.

    Raises:
        InvalidOverrideScopeError: a merchant override was requested for a
            transaction without a merchant, or at account scope without an
            account.
    """
    now = datetime.now()
    override = None
    if apply_to_merchant:
        if not transaction.merchant_normalized:
            raise InvalidOverrideScopeError(
                "A merchant override needs a transaction with a merchant"
            )
        if scope == OverrideScope.ACCOUNT and not transaction.account_id:
            raise InvalidOverrideScopeError("An account override needs a transaction account")
        override = MerchantOverride(
            id=None,
            user_id=transaction.user_id,
            merchant_normalized=transaction.merchant_normalized,
            category_id=category.id,
            scope=scope,
            account_id=transaction.account_id if scope == OverrideScope.ACCOUNT else None,
            is_active=True,
            created_at=now,
            updated_at=now,
        )

    update = CategoryUpdate(
        transaction_id=transaction.id,
        category_id=category.id,
        category_source=CategorySource.USER,
        category_confidence=OVERRIDE_CONFIDENCE,
        rule_id=None,
        category_label=category.name,
        updated_at=now,
    )
    audit = AuditRecord(
        transaction_id=transaction.id,
        user_id=transaction.user_id,
        previous_category_id=transaction.category_id,
        new_category_id=category.id,
        source=CategorySource.USER,
        rule_id=None,
        created_at=now,
    )
    return ManualUpdate(update=update, audit=audit, override=override)


def apply_update(transaction: CanonicalTransaction, update: CategoryUpdate) -> CanonicalTransaction:
    """Return a copy of the transaction with an update applied."""
    return dataclasses.replace(
        transaction,
        category_id=update.category_id,
        category_source=update.category_source,
        category_confidence=update.category_confidence,
        rule_id=update.rule_id,
        category_label=update.category_label,
        updated_at=update.updated_at,
    )
