"""
Unit tests for pure domain rules.

Subscription transition table, usability, calendar month arithmetic,
ledger bucket routing and credit packages.
"""

from datetime import datetime, timedelta, timezone

import pytest

from app.domain.credits import (
    CreditBucket,
    TransactionType,
    get_credit_package,
    grant_bucket,
    is_grant,
    split_debit,
)
from app.domain.subscription import (
    SubscriptionStatus,
    add_months,
    can_transition,
    is_usable,
)


NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


class TestSubscriptionTransitions:
    """Only the documented lifecycle moves are allowed."""

    @pytest.mark.parametrize("current,target", [
        (SubscriptionStatus.PENDING, SubscriptionStatus.TRIALING),
        (SubscriptionStatus.PENDING, SubscriptionStatus.ACTIVE),
        (SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE),
        (SubscriptionStatus.TRIALING, SubscriptionStatus.EXPIRED),
        (SubscriptionStatus.ACTIVE, SubscriptionStatus.ACTIVE),
        (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE),
        (SubscriptionStatus.PAST_DUE, SubscriptionStatus.ACTIVE),
        (SubscriptionStatus.PAST_DUE, SubscriptionStatus.SUSPENDED),
        (SubscriptionStatus.SUSPENDED, SubscriptionStatus.ACTIVE),
        (SubscriptionStatus.SUSPENDED, SubscriptionStatus.CANCELLED),
    ])
    def test_allowed(self, current, target):
        assert can_transition(current, target) is True

    @pytest.mark.parametrize("current,target", [
        (SubscriptionStatus.PENDING, SubscriptionStatus.PAST_DUE),
        (SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE),
        (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING),
        (SubscriptionStatus.PAST_DUE, SubscriptionStatus.EXPIRED),
        (SubscriptionStatus.SUSPENDED, SubscriptionStatus.PAST_DUE),
    ])
    def test_rejected(self, current, target):
        assert can_transition(current, target) is False

    @pytest.mark.parametrize("terminal", [SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED])
    def test_terminal_states_have_no_exits(self, terminal):
        for target in SubscriptionStatus:
            assert can_transition(terminal, target) is False


class TestIsUsable:

    def test_live_and_past_due_are_usable(self):
        assert is_usable(SubscriptionStatus.ACTIVE, None, NOW)
        assert is_usable(SubscriptionStatus.TRIALING, None, NOW)
        assert is_usable(SubscriptionStatus.PAST_DUE, None, NOW)

    def test_suspended_and_expired_are_not(self):
        assert not is_usable(SubscriptionStatus.SUSPENDED, None, NOW)
        assert not is_usable(SubscriptionStatus.EXPIRED, NOW - timedelta(days=1), NOW)
        assert not is_usable(SubscriptionStatus.PENDING, None, NOW)

    def test_cancelled_keeps_access_until_ended_at(self):
        assert is_usable(SubscriptionStatus.CANCELLED, NOW + timedelta(days=3), NOW)
        assert not is_usable(SubscriptionStatus.CANCELLED, NOW, NOW)
        assert not is_usable(SubscriptionStatus.CANCELLED, None, NOW)


class TestAddMonths:

    def test_simple(self):
        assert add_months(NOW, 1) == datetime(2026, 4, 15, 12, 0, tzinfo=timezone.utc)

    def test_year_rollover(self):
        value = datetime(2026, 11, 30, tzinfo=timezone.utc)
        assert add_months(value, 3) == datetime(2027, 2, 28, tzinfo=timezone.utc)

    def test_clamps_to_month_end(self):
        value = datetime(2028, 1, 31, tzinfo=timezone.utc)
        assert add_months(value, 1) == datetime(2028, 2, 29, tzinfo=timezone.utc)

    def test_annual(self):
        assert add_months(NOW, 12) == datetime(2027, 3, 15, 12, 0, tzinfo=timezone.utc)


class TestLedgerRouting:

    def test_grant_types(self):
        assert is_grant(TransactionType.PURCHASE)
        assert is_grant(TransactionType.REFUND)
        assert not is_grant(TransactionType.CONSUMPTION)
        assert not is_grant(TransactionType.REVERSAL)

    def test_only_subscription_fills_monthly(self):
        assert grant_bucket(TransactionType.SUBSCRIPTION) == CreditBucket.MONTHLY
        assert grant_bucket(TransactionType.PURCHASE) == CreditBucket.EXTRA
        assert grant_bucket(TransactionType.BONUS) == CreditBucket.EXTRA

    def test_consumption_spends_monthly_first(self):
        assert split_debit(TransactionType.CONSUMPTION, 150, 100, 500) == (100, 50)
        assert split_debit(TransactionType.CONSUMPTION, 40, 100, 500) == (40, 0)

    def test_reversal_spends_extra_first(self):
        assert split_debit(TransactionType.REVERSAL, 150, 100, 120) == (30, 120)

    def test_reversal_can_prefer_monthly(self):
        assert split_debit(TransactionType.REVERSAL, 150, 100, 120, prefer=CreditBucket.MONTHLY) == (100, 50)
        assert split_debit(TransactionType.REVERSAL, 80, 100, 120, prefer=CreditBucket.MONTHLY) == (80, 0)

    def test_expiration_only_touches_monthly(self):
        assert split_debit(TransactionType.EXPIRATION, 80, 80, 500) == (80, 0)


class TestCreditPackages:

    def test_lookup(self):
        package = get_credit_package("standard")
        assert package is not None
        assert package.credits == 500
        assert package.prices["USD"] == 1999

    def test_unknown_package(self):
        assert get_credit_package("nope") is None
