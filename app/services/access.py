"""Access decision: one verdict from an account's entitlement fields.

The decision is a pure function of the account fields and ``now``. Rules are
evaluated in order and the first rule that returns a decision wins:

1. ``direct_access``  admin grant, unless a non-lifetime grant has ended
2. ``subscription``   active or trialing billing/voucher state
3. ``fallthrough``    everything else is denied with a status-specific reason
"""
from __future__ import annotations

import enum
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from app.models.account import SubscriptionPlan, SubscriptionStatus, SubscriptionTier
from app.services.common import make_aware, utcnow


class EntitlementFields(Protocol):
    has_direct_access: bool
    subscription_status: Any
    subscription_plan: str | None
    subscription_tier: str | None
    subscription_end_date: datetime | None
    trial_ends_at: datetime | None
    payment_customer_ref: str | None


class AccessReason(str, enum.Enum):
    direct_access = "direct_access"
    direct_access_expired = "direct_access_expired"
    subscription_active = "subscription_active"
    subscription_expired = "subscription_expired"
    trialing = "trialing"
    trial_expired = "trial_expired"
    past_due = "past_due"
    canceled = "canceled"
    inactive = "inactive"


MESSAGES: dict[AccessReason, str] = {
    AccessReason.direct_access_expired: "Your granted access has ended.",
    AccessReason.subscription_expired: (
        "Your subscription period has ended. Renew to continue learning."
    ),
    AccessReason.trial_expired: (
        "Your free trial has ended. Subscribe to continue learning."
    ),
    AccessReason.past_due: (
        "Your payment failed. Please update your payment method to continue."
    ),
    AccessReason.canceled: (
        "Your subscription has ended. Subscribe again to continue learning."
    ),
    AccessReason.inactive: "Start your free trial to access all features.",
}


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: AccessReason
    rule: str
    message: str | None = None
    trial_days_left: int | None = None

    def as_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "reason": self.reason.value,
            "rule": self.rule,
            "message": self.message,
            "trial_days_left": self.trial_days_left,
        }


def _status(value: Any) -> SubscriptionStatus:
    if isinstance(value, SubscriptionStatus):
        return value
    try:
        return SubscriptionStatus(str(value or "inactive"))
    except ValueError:
        return SubscriptionStatus.inactive


def _allow(reason: AccessReason, rule: str, **extra: Any) -> AccessDecision:
    return AccessDecision(allowed=True, reason=reason, rule=rule, **extra)


def _deny(reason: AccessReason, rule: str) -> AccessDecision:
    return AccessDecision(allowed=False, reason=reason, rule=rule, message=MESSAGES[reason])


def _ended(moment: datetime | None, now: datetime) -> bool:
    moment = make_aware(moment)
    return moment is not None and moment <= now


def trial_days_remaining(trial_ends_at: datetime | None, now: datetime | None = None) -> int:
    end = make_aware(trial_ends_at)
    if end is None:
        return 0
    now = now or utcnow()
    seconds = (end - now).total_seconds()
    return max(0, math.ceil(seconds / 86400))


def direct_access_rule(account: EntitlementFields, now: datetime) -> AccessDecision | None:
    if not account.has_direct_access:
        return None
    is_lifetime = account.subscription_plan == SubscriptionPlan.lifetime.value
    if not is_lifetime and _ended(account.subscription_end_date, now):
        return _deny(AccessReason.direct_access_expired, "direct_access")
    return _allow(AccessReason.direct_access, "direct_access")


def subscription_rule(account: EntitlementFields, now: datetime) -> AccessDecision | None:
    status = _status(account.subscription_status)
    if status == SubscriptionStatus.active:
        if _ended(account.subscription_end_date, now):
            return _deny(AccessReason.subscription_expired, "subscription")
        return _allow(AccessReason.subscription_active, "subscription")
    if status == SubscriptionStatus.trialing:
        if account.trial_ends_at is not None:
            if _ended(account.trial_ends_at, now):
                return _deny(AccessReason.trial_expired, "subscription")
        elif _ended(account.subscription_end_date, now):
            return _deny(AccessReason.trial_expired, "subscription")
        days_left = (
            trial_days_remaining(account.trial_ends_at, now)
            if account.trial_ends_at is not None
            else None
        )
        return _allow(AccessReason.trialing, "subscription", trial_days_left=days_left)
    return None


def fallthrough_rule(account: EntitlementFields, now: datetime) -> AccessDecision:
    status = _status(account.subscription_status)
    reason = {
        SubscriptionStatus.past_due: AccessReason.past_due,
        SubscriptionStatus.canceled: AccessReason.canceled,
    }.get(status, AccessReason.inactive)
    return _deny(reason, "fallthrough")


Rule = Callable[[EntitlementFields, datetime], AccessDecision | None]

RULES: tuple[Rule, ...] = (direct_access_rule, subscription_rule, fallthrough_rule)


def has_access(account: EntitlementFields, now: datetime | None = None) -> AccessDecision:
    now = make_aware(now) or utcnow()
    for rule in RULES:
        decision = rule(account, now)
        if decision is not None:
            return decision
    raise RuntimeError("access rules must end with a catch-all rule")


TIER_RANK = {SubscriptionTier.basic.value: 1, SubscriptionTier.pro.value: 2}


def has_feature_access(
    account: EntitlementFields,
    required_tier: str = SubscriptionTier.pro.value,
    now: datetime | None = None,
) -> bool:
    """Whether the account has access and its tier meets ``required_tier``."""
    if not has_access(account, now).allowed:
        return False
    current = TIER_RANK.get(account.subscription_tier or "", 0)
    return current >= TIER_RANK.get(required_tier, len(TIER_RANK) + 1)
