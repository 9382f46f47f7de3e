"""Tests for the pure access decision function."""

from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

import pytest

from app.models.account import SubscriptionStatus
from app.services.access import (
    AccessReason,
    has_access,
    has_feature_access,
    trial_days_remaining,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _account(**fields):
    values = {
        "has_direct_access": False,
        "subscription_status": SubscriptionStatus.inactive,
        "subscription_plan": None,
        "subscription_tier": None,
        "subscription_end_date": None,
        "trial_ends_at": None,
        "payment_customer_ref": None,
    }
    values.update(fields)
    return SimpleNamespace(**values)


class TestDirectAccess:
    def test_lifetime_grant_allows(self):
        account = _account(has_direct_access=True, subscription_plan="lifetime")
        decision = has_access(account, NOW)
        assert decision.allowed is True
        assert decision.reason == AccessReason.direct_access
        assert decision.rule == "direct_access"

    def test_lifetime_grant_ignores_past_end_date(self):
        account = _account(
            has_direct_access=True,
            subscription_plan="lifetime",
            subscription_end_date=NOW - timedelta(days=400),
        )
        assert has_access(account, NOW).allowed is True

    def test_expired_temporary_grant_denies(self):
        account = _account(
            has_direct_access=True,
            subscription_status=SubscriptionStatus.active,
            subscription_plan="monthly",
            subscription_end_date=NOW - timedelta(seconds=1),
        )
        decision = has_access(account, NOW)
        assert decision.allowed is False
        assert decision.reason == AccessReason.direct_access_expired
        assert decision.message

    def test_grant_with_future_end_date_allows(self):
        account = _account(
            has_direct_access=True,
            subscription_plan="monthly",
            subscription_end_date=NOW + timedelta(days=10),
        )
        assert has_access(account, NOW).allowed is True

    def test_direct_access_survives_canceled_subscription(self):
        account = _account(
            has_direct_access=True,
            subscription_status=SubscriptionStatus.canceled,
            subscription_plan="lifetime",
        )
        assert has_access(account, NOW).allowed is True


class TestSubscription:
    def test_active_without_end_date_allows(self):
        account = _account(subscription_status=SubscriptionStatus.active)
        decision = has_access(account, NOW)
        assert decision.allowed is True
        assert decision.reason == AccessReason.subscription_active

    def test_active_with_past_end_date_denies(self):
        account = _account(
            subscription_status=SubscriptionStatus.active,
            subscription_end_date=NOW - timedelta(days=1),
        )
        decision = has_access(account, NOW)
        assert decision.allowed is False
        assert decision.reason == AccessReason.subscription_expired

    def test_trialing_with_future_trial_end_allows_with_days_left(self):
        account = _account(
            subscription_status=SubscriptionStatus.trialing,
            trial_ends_at=NOW + timedelta(days=2, hours=3),
        )
        decision = has_access(account, NOW)
        assert decision.allowed is True
        assert decision.reason == AccessReason.trialing
        assert decision.trial_days_left == 3

    def test_trialing_with_past_trial_end_denies(self):
        account = _account(
            subscription_status=SubscriptionStatus.trialing,
            trial_ends_at=NOW - timedelta(minutes=1),
        )
        decision = has_access(account, NOW)
        assert decision.allowed is False
        assert decision.reason == AccessReason.trial_expired

    def test_naive_datetimes_are_treated_as_utc(self):
        account = _account(
            subscription_status=SubscriptionStatus.active,
            subscription_end_date=(NOW + timedelta(hours=1)).replace(tzinfo=None),
        )
        assert has_access(account, NOW).allowed is True

    def test_status_given_as_plain_string(self):
        account = _account(subscription_status="active")
        assert has_access(account, NOW).allowed is True


class TestFallthrough:
    @pytest.mark.parametrize(
        ("status", "reason"),
        [
            (SubscriptionStatus.inactive, AccessReason.inactive),
            (SubscriptionStatus.past_due, AccessReason.past_due),
            (SubscriptionStatus.canceled, AccessReason.canceled),
        ],
    )
    def test_non_paying_status_denies_with_reason(self, status, reason):
        decision = has_access(_account(subscription_status=status), NOW)
        assert decision.allowed is False
        assert decision.reason == reason
        assert decision.rule == "fallthrough"

    def test_decision_is_pure(self):
        account = _account(subscription_status=SubscriptionStatus.active)
        snapshot = dict(vars(account))
        first = has_access(account, NOW)
        second = has_access(account, NOW)
        assert first == second
        assert vars(account) == snapshot


def test_as_dict_uses_plain_values():
    data = has_access(_account(), NOW).as_dict()
    assert data["allowed"] is False
    assert data["reason"] == "inactive"
    assert data["rule"] == "fallthrough"


def test_trial_days_remaining_never_negative():
    assert trial_days_remaining(NOW - timedelta(days=3), NOW) == 0
    assert trial_days_remaining(None, NOW) == 0


class TestFeatureAccess:
    def test_pro_tier_unlocks_pro_feature(self):
        account = _account(subscription_status=SubscriptionStatus.active, subscription_tier="pro")
        assert has_feature_access(account, "pro", NOW) is True

    def test_basic_tier_does_not_unlock_pro_feature(self):
        account = _account(subscription_status=SubscriptionStatus.active, subscription_tier="basic")
        assert has_feature_access(account, "pro", NOW) is False
        assert has_feature_access(account, "basic", NOW) is True

    def test_no_access_means_no_feature(self):
        account = _account(subscription_tier="pro")
        assert has_feature_access(account, "pro", NOW) is False
