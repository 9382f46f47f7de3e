"""Processor-lag fallback for the access-gated entry point.

A user returning from checkout can beat the ``checkout.completed`` webhook.
When the stored decision denies access, the processor is asked directly for a
live subscription under the account's email and, if one exists, the same
fields checkout ingestion would write are applied before deciding again.
Only ``GET /me/access`` calls this.

:class:`SubscriptionBackfill` is the admin-triggered batch counterpart: it
fills in the period end for live subscriptions stored without one.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import UpstreamUnavailable
from app.metrics import ENTITLEMENT_EVENTS
from app.models.account import Account, SubscriptionStatus, SubscriptionTier
from app.models.audit import AuditActorType
from app.services.access import AccessDecision, has_access
from app.services.accounts import Accounts, preserve_grant
from app.services.audit import audit_events, entitlement_snapshot, snapshot_after
from app.services.billing_webhooks import subscription_fields
from app.services.common import utcnow
from app.services.payment_gateway import StripeGateway, stripe_gateway

logger = logging.getLogger(__name__)

LIVE_STATUSES = (SubscriptionStatus.active, SubscriptionStatus.trialing)


def _live_subscription(subscriptions: list[dict[str, Any]]) -> dict[str, Any] | None:
    for subscription in subscriptions:
        if subscription_fields(subscription)["subscription_status"] in LIVE_STATUSES:
            return subscription
    return None


class AccessSync:
    def __init__(
        self,
        db: Session,
        gateway: StripeGateway = stripe_gateway,
        enabled: bool | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.enabled = settings.processor_fallback_enabled if enabled is None else enabled
        self.clock = clock

    def decide(self, account: Account) -> AccessDecision:
        decision = has_access(account, self.clock())
        if decision.allowed or not self.enabled or not self.gateway.is_configured():
            return decision
        return self.reconcile_from_processor(account, decision)

    def reconcile_from_processor(
        self, account: Account, decision: AccessDecision
    ) -> AccessDecision:
        log_extra = {"account_id": str(account.id), "event": "processor_fallback"}
        try:
            subscription, customer_ref = self._find_live_subscription(account)
        except UpstreamUnavailable as exc:
            # Degrade to the stored decision
            ENTITLEMENT_EVENTS.labels("fallback", "upstream_unavailable").inc()
            logger.warning(
                "Processor fallback query failed: %s",
                exc,
                extra={**log_extra, "reason": "upstream_unavailable"},
            )
            return decision
        if subscription is None:
            ENTITLEMENT_EVENTS.labels("fallback", "not_found").inc()
            return decision

        metadata = subscription.get("metadata") or {}
        fields = subscription_fields(subscription)
        fields["payment_customer_ref"] = customer_ref
        fields["subscription_tier"] = metadata.get("tier") or SubscriptionTier.pro.value
        if fields["subscription_status"] == SubscriptionStatus.active:
            fields["trial_ends_at"] = None

        before = entitlement_snapshot(account)
        Accounts.apply_subscription_fields(self.db, account.id, **fields)
        audit_events.record(
            self.db,
            action="fallback.subscription_synced",
            entity_type="account",
            entity_id=account.id,
            actor_type=AuditActorType.processor,
            actor_id=customer_ref,
            before=before,
            after=snapshot_after(before, preserve_grant(fields, account.has_direct_access)),
        )
        self.db.commit()
        self.db.refresh(account)
        ENTITLEMENT_EVENTS.labels("fallback", "synced").inc()
        logger.info("Synced subscription from processor", extra=log_extra)
        return has_access(account, self.clock())

    def _find_live_subscription(
        self, account: Account
    ) -> tuple[dict[str, Any] | None, str | None]:
        try:
            customers = self.gateway.list_customers_by_email(account.email)
            for customer in customers:
                customer_id = customer.get("id")
                if not customer_id:
                    continue
                subscription = _live_subscription(
                    self.gateway.list_subscriptions_by_customer(customer_id)
                )
                if subscription is not None:
                    return subscription, customer_id
        except (httpx.HTTPError, RuntimeError, ValueError) as exc:
            raise UpstreamUnavailable(str(exc)) from exc
        return None, None


@dataclass(frozen=True)
class BackfillDetail:
    email: str
    status: str
    message: str | None = None
    subscription_status: str | None = None
    subscription_plan: str | None = None
    subscription_end_date: datetime | None = None


@dataclass
class BackfillResult:
    total: int = 0
    fixed: int = 0
    errors: int = 0
    details: list[BackfillDetail] = field(default_factory=list)

    def failed(self, email: str, message: str) -> None:
        self.errors += 1
        self.details.append(BackfillDetail(email=email, status="error", message=message))


class SubscriptionBackfill:
    """Admin reconcile for live subscriptions that were stored without an end date.

    Accounts holding an admin grant are skipped; their end date belongs to the grant.
    """

    def __init__(
        self,
        db: Session,
        gateway: StripeGateway = stripe_gateway,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.clock = clock

    def candidates(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(
                Account.subscription_status.in_(LIVE_STATUSES),
                Account.payment_customer_ref.is_not(None),
                Account.subscription_end_date.is_(None),
                Account.has_direct_access.is_(False),
            )
            .order_by(Account.created_at.asc())
        )
        return list(self.db.scalars(stmt).all())

    def run(self, *, actor_id: str | None = None, actor_email: str | None = None) -> BackfillResult:
        if not self.gateway.is_configured():
            raise UpstreamUnavailable("Stripe is not configured")
        accounts = self.candidates()
        result = BackfillResult(total=len(accounts))
        logger.info(
            "Subscription backfill started for %d account(s)",
            result.total,
            extra={"event": "subscription_backfill", "actor_id": actor_id},
        )
        for account in accounts:
            email = account.email
            try:
                subscriptions = self.gateway.list_subscriptions_by_customer(
                    account.payment_customer_ref, status="all", limit=10
                )
            except (httpx.HTTPError, RuntimeError, ValueError) as exc:
                ENTITLEMENT_EVENTS.labels("backfill", "upstream_unavailable").inc()
                logger.warning(
                    "Subscription backfill lookup failed for %s: %s",
                    email,
                    exc,
                    extra={"account_id": str(account.id), "reason": "upstream_unavailable"},
                )
                result.failed(email, str(exc))
                continue
            if not subscriptions:
                ENTITLEMENT_EVENTS.labels("backfill", "not_found").inc()
                result.failed(email, "No processor subscription found")
                continue
            subscription = _live_subscription(subscriptions)
            if subscription is None:
                ENTITLEMENT_EVENTS.labels("backfill", "not_live").inc()
                result.failed(email, "No active or trialing subscription at the processor")
                continue
            result.details.append(self._apply(account, subscription, actor_id))
            result.fixed += 1

        logger.info(
            "Subscription backfill finished: %d fixed, %d errors",
            result.fixed,
            result.errors,
            extra={"event": "subscription_backfill", "actor_id": actor_id},
        )
        audit_events.record(
            self.db,
            action="admin.subscriptions_synced",
            entity_type="subscription",
            actor_type=AuditActorType.admin,
            actor_id=actor_id,
            metadata={
                "admin_email": actor_email,
                "total": result.total,
                "fixed": result.fixed,
                "errors": result.errors,
            },
        )
        self.db.commit()
        return result

    def _apply(
        self, account: Account, subscription: dict[str, Any], actor_id: str | None
    ) -> BackfillDetail:
        fields = subscription_fields(subscription)
        before = entitlement_snapshot(account)
        Accounts.apply_subscription_fields(self.db, account.id, **fields)
        audit_events.record(
            self.db,
            action="admin.subscription_backfilled",
            entity_type="account",
            entity_id=account.id,
            actor_type=AuditActorType.admin,
            actor_id=actor_id,
            before=before,
            after=snapshot_after(before, fields),
            metadata={"subscription_ref": subscription.get("id")},
        )
        self.db.commit()
        self.db.refresh(account)
        ENTITLEMENT_EVENTS.labels("backfill", "fixed").inc()
        logger.info(
            "Subscription backfilled for %s",
            account.email,
            extra={"account_id": str(account.id), "event": "subscription_backfill"},
        )
        return BackfillDetail(
            email=account.email,
            status="fixed",
            subscription_status=account.subscription_status.value,
            subscription_plan=account.subscription_plan,
            subscription_end_date=account.subscription_end_date,
        )
