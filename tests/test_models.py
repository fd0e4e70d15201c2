"""Tests for database models."""

import dataclasses
from datetime import date
from decimal import Decimal

import pytest

from ledgercat.db.models import (
    UNCATEGORIZED_LABEL,
    CanonicalTransaction,
    CategoryRule,
    CategorySource,
    ImportContext,
    MatchField,
    MatchType,
    MerchantOverride,
    OverrideScope,
    RawRow,
    TxnType,
)


def make_txn(amount: str) -> CanonicalTransaction:
    """Helper to create a transaction with a given amount."""
    return CanonicalTransaction(
        id=None,
        user_id="u",
        account_id=None,
        bank_source="sabadell",
        date=date(2025, 1, 1),
        amount=Decimal(amount),
        description_raw="X",
        external_hash="h",
    )


class TestCanonicalTransaction:
    """Tests for CanonicalTransaction model."""

    def test_defaults(self):
        """Test that new transactions start uncategorized."""
        txn = make_txn("-1")
        assert txn.category_id is None
        assert txn.category_source == CategorySource.UNKNOWN
        assert txn.category_label == UNCATEGORIZED_LABEL
        assert txn.txn_type == TxnType.UNKNOWN
        assert txn.currency == "EUR"

    @pytest.mark.parametrize(
        "amount,direction", [("-0.01", "expense"), ("0", "income"), ("12", "income")]
    )
    def test_direction(self, amount, direction):
        """Test the legacy direction flag."""
        assert make_txn(amount).direction == direction


class TestCategoryRule:
    """Tests for CategoryRule model."""

    def test_defaults(self):
        """Test rule defaults."""
        rule = CategoryRule(id=None, category_id=1, pattern="X")
        assert rule.match_field == MatchField.DESCRIPTION_CLEAN
        assert rule.match_type == MatchType.CONTAINS
        assert rule.is_active is True
        assert rule.is_global is True

    def test_personal_rule(self):
        """Test that owned rules are not global."""
        assert CategoryRule(id=None, category_id=1, pattern="X", user_id="u").is_global is False


class TestValueObjects:
    """Tests for immutable inputs."""

    def test_raw_row_frozen(self):
        """Test that raw rows cannot be modified."""
        row = RawRow(date=date(2025, 1, 1), value_date=None, description="X", amount=Decimal(1))
        with pytest.raises(dataclasses.FrozenInstanceError):
            row.description = "Y"

    def test_import_context_defaults(self):
        """Test the import context defaults."""
        context = ImportContext(user_id="u", account_id=None)
        assert context.bank_source == "sabadell"
        assert context.currency == "EUR"
        assert context.import_batch_id is None

    def test_override_defaults(self):
        """Test merchant override defaults."""
        override = MerchantOverride(
            id=None, user_id="u", merchant_normalized="LIDL", category_id=1
        )
        assert override.scope == OverrideScope.USER
        assert override.account_id is None
        assert override.is_active is True

    def test_enum_values(self):
        """Test stored enum values."""
        assert [t.value for t in TxnType] == [
            "fee",
            "interest",
            "tax",
            "transfer",
            "income",
            "expense",
            "unknown",
        ]
        assert OverrideScope("account") == OverrideScope.ACCOUNT
