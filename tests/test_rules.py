"""Tests for the categorization engine."""

from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

from ledgercat.db.models import (
    UNCATEGORIZED_LABEL,
    CanonicalTransaction,
    CategorizationDecision,
    Category,
    CategoryRule,
    CategorySource,
    MatchedBy,
    MatchField,
    MatchType,
    MerchantOverride,
    OverrideScope,
    TxnType,
)
from ledgercat.errors import InvalidOverrideScopeError
from ledgercat.rules import (
    DEFAULT_RULE_CONFIDENCE,
    UNKNOWN_DECISION,
    CategorizationEngine,
    apply_update,
    build_batch_updates,
    build_manual_update,
    build_transaction_update,
    evaluate,
    normalize_match_value,
)

BASE_TIME = datetime(2025, 1, 1, 12, 0)


def make_rule(
    id: int,
    pattern: str,
    match_type: MatchType = MatchType.CONTAINS,
    category_id: int = 1,
    priority: int = 0,
    user_id: str | None = None,
    match_field: MatchField = MatchField.DESCRIPTION_CLEAN,
    created_offset: int = 0,
    **kwargs,
) -> CategoryRule:
    """Helper to create test rules."""
    return CategoryRule(
        id=id,
        name=f"rule-{id}",
        pattern=pattern,
        match_type=match_type,
        match_field=match_field,
        category_id=category_id,
        priority=priority,
        user_id=user_id,
        created_at=BASE_TIME + timedelta(seconds=created_offset),
        **kwargs,
    )


def make_txn(
    description_clean: str | None = "COMPRA TARJ. MERCADONA",
    merchant_normalized: str | None = "MERCADONA",
    amount: str = "-25.00",
    **kwargs,
) -> CanonicalTransaction:
    """Helper to create test transactions."""
    defaults = dict(
        id=10,
        user_id="user-1",
        account_id="acct-1",
        bank_source="sabadell",
        date=date(2025, 1, 5),
        description_raw=description_clean or "",
        external_hash="hash",
        txn_type=TxnType.EXPENSE,
    )
    defaults.update(kwargs)
    return CanonicalTransaction(
        amount=Decimal(amount),
        description_clean=description_clean,
        merchant_normalized=merchant_normalized,
        **defaults,
    )


def make_override(
    category_id: int,
    scope: OverrideScope = OverrideScope.USER,
    account_id: str | None = None,
    merchant: str = "MERCADONA",
    is_active: bool = True,
) -> MerchantOverride:
    """Helper to create test overrides."""
    return MerchantOverride(
        id=None,
        user_id="user-1",
        merchant_normalized=merchant,
        category_id=category_id,
        scope=scope,
        account_id=account_id,
        is_active=is_active,
    )


class TestNormalizeMatchValue:
    """Tests for normalize_match_value."""

    def test_folds_case_accents_and_spaces(self):
        """Test normalization for matching."""
        assert normalize_match_value("  cafetería \t  López ") == "CAFETERIA LOPEZ"

    def test_none(self):
        """Test None input."""
        assert normalize_match_value(None) == ""

    def test_line_breaks_and_combining_marks(self):
        """Test that decomposed accents and line breaks fold like descriptions do."""
        assert normalize_match_value("cafe\u0301\r\nNin\u0303o") == "CAFE NINO"


class TestCategorizationEngine:
    """Tests for CategorizationEngine."""

    def test_sorts_by_priority_then_creation(self):
        """Test evaluation order of rules."""
        rules = [
            make_rule(1, "A", priority=1),
            make_rule(2, "B", priority=10, created_offset=5),
            make_rule(3, "C", priority=10, created_offset=1),
        ]
        engine = CategorizationEngine(rules)
        assert [r.id for r in engine.rules] == [3, 2, 1]

    def test_contains_ignores_case_and_accents(self):
        """Test CONTAINS matching on normalized text."""
        engine = CategorizationEngine([make_rule(1, "mercadoná")])
        assert engine.find_rule(make_txn()).id == 1

    def test_starts_with(self):
        """Test STARTS_WITH matching."""
        engine = CategorizationEngine([make_rule(1, "compra tarj", MatchType.STARTS_WITH)])
        assert engine.find_rule(make_txn()) is not None
        assert engine.find_rule(make_txn(description_clean="X COMPRA TARJ")) is None

    def test_equals(self):
        """Test EQUALS matching."""
        rule = make_rule(
            1, "mercadona", MatchType.EQUALS, match_field=MatchField.MERCHANT_NORMALIZED
        )
        engine = CategorizationEngine([rule])
        assert engine.find_rule(make_txn()) is not None
        assert engine.find_rule(make_txn(merchant_normalized="MERCADONA SA")) is None

    def test_regex(self):
        """Test REGEX matching against the normalized value."""
        engine = CategorizationEngine([make_rule(1, r"^compra .*dona$", MatchType.REGEX)])
        assert engine.find_rule(make_txn()) is not None

    def test_invalid_regex_never_matches(self, caplog):
        """Test that a broken regex is logged and skipped."""
        engine = CategorizationEngine([make_rule(1, "(unclosed", MatchType.REGEX)])
        assert engine.find_rule(make_txn()) is None
        assert "invalid regex" in caplog.text

    def test_long_regex_never_matches(self, caplog):
        """Test that patterns over 200 characters are refused."""
        pattern = "MERCADONA|" + "X" * 200
        engine = CategorizationEngine([make_rule(1, pattern, MatchType.REGEX)])
        assert engine.find_rule(make_txn()) is None
        assert "never match" in caplog.text

    def test_regex_at_limit_allowed(self):
        """Test that a 200 character pattern still compiles."""
        pattern = "MERCADONA|" + "X" * 190
        engine = CategorizationEngine([make_rule(1, pattern, MatchType.REGEX)])
        assert engine.find_rule(make_txn()) is not None

    def test_match_field_merchant(self):
        """Test matching against the merchant field."""
        rule = make_rule(1, "MERCADONA", match_field=MatchField.MERCHANT_NORMALIZED)
        engine = CategorizationEngine([rule])
        assert engine.find_rule(make_txn(description_clean="OTHER")) is not None
        assert engine.find_rule(make_txn(merchant_normalized=None)) is None

    def test_empty_field_never_matches(self):
        """Test that an empty target field fails the rule."""
        engine = CategorizationEngine([make_rule(1, "A")])
        assert engine.find_rule(make_txn(description_clean=None)) is None

    def test_inactive_rule_skipped(self):
        """Test that inactive rules never match."""
        engine = CategorizationEngine([make_rule(1, "MERCADONA", is_active=False)])
        assert engine.find_rule(make_txn()) is None

    def test_txn_type_filter(self):
        """Test that the type filter restricts matches."""
        rule = make_rule(1, "MERCADONA", txn_type_filter=frozenset({TxnType.INCOME}))
        engine = CategorizationEngine([rule])
        assert engine.find_rule(make_txn()) is None
        assert engine.find_rule(make_txn(txn_type=TxnType.INCOME)) is not None

    def test_amount_bounds_use_absolute_value(self):
        """Test min and max bounds against the absolute amount."""
        rule = make_rule(
            1, "MERCADONA", min_amount=Decimal("20"), max_amount=Decimal("30")
        )
        engine = CategorizationEngine([rule])
        assert engine.find_rule(make_txn(amount="-25")) is not None
        assert engine.find_rule(make_txn(amount="-30")) is not None
        assert engine.find_rule(make_txn(amount="-19.99")) is None
        assert engine.find_rule(make_txn(amount="-30.01")) is None

    def test_personal_rules_before_global(self):
        """Test that personal rules win over higher priority global rules."""
        rules = [
            make_rule(1, "MERCADONA", category_id=1, priority=100),
            make_rule(2, "MERCADONA", category_id=2, priority=0, user_id="user-1"),
        ]
        engine = CategorizationEngine(rules)
        assert engine.find_rule(make_txn()).id == 2

    def test_other_users_rules_ignored(self):
        """Test that another user's rules never apply."""
        engine = CategorizationEngine([make_rule(1, "MERCADONA", user_id="user-2")])
        assert engine.find_rule(make_txn()) is None

    def test_rule_applies_to_unloaded_regex_rule(self):
        """Test rule_applies on a regex rule the engine did not load."""
        engine = CategorizationEngine()
        rule = make_rule(9, "MERCA", MatchType.REGEX)
        assert engine.rule_applies(rule, make_txn()) is True


class TestEvaluate:
    """Tests for the layered categorization policy."""

    def test_manual_category_left_alone(self):
        """Test that manual choices are not re-evaluated."""
        txn = make_txn(category_id=5, category_source=CategorySource.USER)
        assert evaluate(txn, [], [make_rule(1, "MERCADONA")]) is None

    def test_force_reevaluates_manual_category(self):
        """Test that force ignores the manual pin."""
        txn = make_txn(category_id=5, category_source=CategorySource.USER)
        decision = evaluate(txn, [], [make_rule(1, "MERCADONA", category_id=3)], force=True)
        assert decision.category_id == 3

    def test_account_override_beats_user_override(self):
        """Test override precedence."""
        overrides = [
            make_override(7),
            make_override(8, OverrideScope.ACCOUNT, "acct-1"),
        ]
        decision = evaluate(make_txn(), overrides, [make_rule(1, "MERCADONA")])
        assert decision.category_id == 8
        assert decision.category_source == CategorySource.USER
        assert decision.category_confidence == 1.0
        assert decision.rule_id is None
        assert decision.matched_by == MatchedBy.OVERRIDE

    def test_user_override_beats_matching_rule(self):
        """Test that a user-scope override wins over a rule matching the same row."""
        decision = evaluate(
            make_txn(), [make_override(7)], [make_rule(1, "MERCADONA", category_id=3, priority=100)]
        )
        assert decision.category_id == 7
        assert decision.matched_by == MatchedBy.OVERRIDE

    def test_pinned_transaction_ignores_every_layer(self):
        """Test that a manual pin holds against account and user overrides and rules."""
        txn = make_txn(category_id=5, category_source=CategorySource.USER)
        overrides = [make_override(7), make_override(8, OverrideScope.ACCOUNT, "acct-1")]
        assert evaluate(txn, overrides, [make_rule(1, "MERCADONA", category_id=3)]) is None

    def test_account_override_other_account_ignored(self):
        """Test that account overrides only apply to their account."""
        overrides = [make_override(8, OverrideScope.ACCOUNT, "acct-2"), make_override(7)]
        assert evaluate(make_txn(), overrides).category_id == 7

    def test_inactive_override_ignored(self):
        """Test that inactive overrides are skipped."""
        decision = evaluate(make_txn(), [make_override(7, is_active=False)])
        assert decision == UNKNOWN_DECISION

    def test_override_needs_merchant(self):
        """Test that overrides only match on the merchant key."""
        decision = evaluate(make_txn(merchant_normalized=None), [make_override(7)])
        assert decision.matched_by == MatchedBy.UNKNOWN

    def test_rule_decision(self):
        """Test the decision produced by a matching rule."""
        decision = evaluate(make_txn(), [], [make_rule(4, "MERCADONA", category_id=2)])
        assert decision == CategorizationDecision(
            category_id=2,
            category_source=CategorySource.RULE,
            category_confidence=DEFAULT_RULE_CONFIDENCE,
            rule_id=4,
            matched_by=MatchedBy.RULE,
        )

    def test_rule_confidence_used(self):
        """Test that a rule's own confidence is kept."""
        rule = make_rule(4, "MERCADONA", confidence=0.5)
        assert evaluate(make_txn(), [], [rule]).category_confidence == 0.5

    def test_no_match_is_unknown(self):
        """Test the fallback decision."""
        assert evaluate(make_txn(), [], [make_rule(1, "LIDL")]) == UNKNOWN_DECISION


class TestBuildTransactionUpdate:
    """Tests for build_transaction_update."""

    def test_no_change_no_update(self):
        """Test that an unchanged decision yields nothing."""
        txn = make_txn(category_id=2, category_source=CategorySource.RULE, rule_id=4)
        decision = evaluate(txn, [], [make_rule(4, "MERCADONA", category_id=2)])
        assert build_transaction_update(txn, decision) is None

    def test_none_decision(self):
        """Test that a skipped evaluation yields nothing."""
        assert build_transaction_update(make_txn(), None) is None

    def test_label_from_category_names(self):
        """Test that the label comes from the category name."""
        decision = evaluate(make_txn(), [], [make_rule(4, "MERCADONA", category_id=2)])
        update = build_transaction_update(make_txn(), decision, {2: "Supermercado"})
        assert update.transaction_id == 10
        assert update.category_id == 2
        assert update.category_label == "Supermercado"

    def test_unknown_resets_label(self):
        """Test that losing a category resets the label."""
        txn = make_txn(
            category_id=2,
            category_source=CategorySource.RULE,
            rule_id=4,
            category_label="Supermercado",
        )
        update = build_transaction_update(txn, UNKNOWN_DECISION)
        assert update.category_id is None
        assert update.category_label == UNCATEGORIZED_LABEL

    def test_unknown_name_keeps_label(self):
        """Test that an unnamed category keeps the current label."""
        txn = make_txn(category_label="Old")
        decision = evaluate(txn, [], [make_rule(4, "MERCADONA", category_id=99)])
        assert build_transaction_update(txn, decision, {}).category_label == "Old"


class TestBuildBatchUpdates:
    """Tests for build_batch_updates."""

    def test_updates_and_audits(self):
        """Test one update and one audit per changed transaction."""
        txns = [
            make_txn(id=1),
            make_txn(id=2, description_clean="LIDL", merchant_normalized="LIDL"),
            make_txn(id=3, category_id=5, category_source=CategorySource.USER),
        ]
        result = build_batch_updates(
            txns, [], [make_rule(4, "MERCADONA", category_id=2)], {2: "Super"}
        )
        assert [u.transaction_id for u in result.updates] == [1]
        assert len(result.audits) == 1
        audit = result.audits[0]
        assert audit.transaction_id == 1
        assert audit.previous_category_id is None
        assert audit.new_category_id == 2
        assert audit.source == CategorySource.RULE
        assert audit.rule_id == 4
        assert result.skipped == 2

    def test_idempotent(self):
        """Test that a second run over updated transactions changes nothing."""
        rules = [make_rule(4, "MERCADONA", category_id=2)]
        txns = [make_txn(id=1), make_txn(id=2)]
        first = build_batch_updates(txns, [], rules, {2: "Super"})
        applied = [apply_update(t, u) for t, u in zip(txns, first.updates)]
        second = build_batch_updates(applied, [], rules, {2: "Super"})
        assert second.updates == []
        assert second.audits == []
        assert second.skipped == 2

    def test_force_still_idempotent(self):
        """Test that force only changes what differs."""
        txns = [make_txn(category_id=2, category_source=CategorySource.USER)]
        result = build_batch_updates(txns, [make_override(2)], [], force=True)
        assert result.updates == []


class TestBuildManualUpdate:
    """Tests for build_manual_update."""

    def test_pins_category(self):
        """Test the manual update and audit."""
        txn = make_txn(category_id=1, category_source=CategorySource.RULE, rule_id=4)
        manual = build_manual_update(txn, Category(id=3, name="Ocio"))
        assert manual.update.category_id == 3
        assert manual.update.category_source == CategorySource.USER
        assert manual.update.category_confidence == 1.0
        assert manual.update.rule_id is None
        assert manual.update.category_label == "Ocio"
        assert manual.audit.previous_category_id == 1
        assert manual.audit.new_category_id == 3
        assert manual.override is None

    def test_user_override(self):
        """Test a user scoped merchant override."""
        manual = build_manual_update(make_txn(), Category(id=3, name="Ocio"), True)
        assert manual.override.merchant_normalized == "MERCADONA"
        assert manual.override.scope == OverrideScope.USER
        assert manual.override.account_id is None

    def test_account_override(self):
        """Test an account scoped merchant override."""
        manual = build_manual_update(
            make_txn(), Category(id=3, name="Ocio"), True, OverrideScope.ACCOUNT
        )
        assert manual.override.account_id == "acct-1"

    def test_override_without_merchant(self):
        """Test that a merchant override needs a merchant."""
        with pytest.raises(InvalidOverrideScopeError):
            build_manual_update(
                make_txn(merchant_normalized=None), Category(id=3, name="Ocio"), True
            )

    def test_account_override_without_account(self):
        """Test that an account override needs an account."""
        with pytest.raises(InvalidOverrideScopeError):
            build_manual_update(
                make_txn(account_id=None),
                Category(id=3, name="Ocio"),
                True,
                OverrideScope.ACCOUNT,
            )

    def test_manual_then_batch_is_stable(self):
        """Test that a manual pin survives a later batch run."""
        txn = make_txn()
        manual = build_manual_update(txn, Category(id=3, name="Ocio"))
        pinned = apply_update(txn, manual.update)
        result = build_batch_updates([pinned], [], [make_rule(4, "MERCADONA", category_id=2)])
        assert result.updates == []
