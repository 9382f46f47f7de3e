"""Billing webhook ingestion.

Each handler sets absolute entitlement state keyed on the processor customer
reference, so replaying an event converges to the same row. Verified events are
journaled in ``webhook_events``; a redelivery of an event that already
completed is acknowledged without being applied again. ``has_direct_access``
is never written here, and neither are the plan and end date of an account
that holds an admin grant.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Callable, Collection
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import AccountUpdateFailed, InvalidInput, UpstreamVerificationFailed
from app.metrics import ENTITLEMENT_EVENTS
from app.models.account import Account, SubscriptionPlan, SubscriptionStatus, SubscriptionTier
from app.models.audit import AuditActorType
from app.models.webhook_event import WebhookEvent, WebhookEventStatus
from app.services.accounts import Accounts, preserve_grant
from app.services.audit import audit_events, entitlement_snapshot, snapshot_after
from app.services.common import from_unix, is_unique_violation, normalize_email, utcnow
from app.services.identity import IdentityResolver
from app.services.notifications import NotificationKind, Notifier, notifier
from app.services.payment_gateway import StripeGateway, stripe_gateway

logger = logging.getLogger(__name__)

PROVIDER = "stripe"

EVENT_ALIASES = {
    "checkout.session.completed": "checkout.completed",
    "customer.subscription.updated": "subscription.updated",
    "customer.subscription.deleted": "subscription.deleted",
}

STATUS_MAP = {
    "active": SubscriptionStatus.active,
    "trialing": SubscriptionStatus.trialing,
    "past_due": SubscriptionStatus.past_due,
    "unpaid": SubscriptionStatus.past_due,
    "canceled": SubscriptionStatus.canceled,
    "incomplete": SubscriptionStatus.inactive,
    "incomplete_expired": SubscriptionStatus.inactive,
    "paused": SubscriptionStatus.inactive,
}

INTERVAL_PLANS = {
    "month": SubscriptionPlan.monthly.value,
    "year": SubscriptionPlan.yearly.value,
}


def canonical_event_type(event_type: str) -> str:
    return EVENT_ALIASES.get(event_type, event_type)


def map_status(processor_status: str | None) -> SubscriptionStatus:
    return STATUS_MAP.get(processor_status or "", SubscriptionStatus.inactive)


def _first_item(subscription: dict[str, Any]) -> dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def plan_from_subscription(subscription: dict[str, Any]) -> str | None:
    item = _first_item(subscription)
    price = item.get("price") or subscription.get("plan") or {}
    interval = (price.get("recurring") or {}).get("interval") or price.get("interval")
    return INTERVAL_PLANS.get(interval or "")


def period_end(subscription: dict[str, Any]) -> datetime | None:
    value = subscription.get("current_period_end") or _first_item(subscription).get(
        "current_period_end"
    )
    return from_unix(value)


def subscription_fields(subscription: dict[str, Any]) -> dict[str, object]:
    """Entitlement fields described by a processor subscription object."""
    status = map_status(subscription.get("status"))
    fields: dict[str, object] = {
        "subscription_status": status,
        "subscription_end_date": period_end(subscription),
    }
    if subscription.get("id"):
        fields["payment_subscription_ref"] = subscription["id"]
    plan = plan_from_subscription(subscription)
    if plan:
        fields["subscription_plan"] = plan
    if status == SubscriptionStatus.trialing:
        fields["trial_ends_at"] = from_unix(subscription.get("trial_end"))
    return fields


def checkout_fields(
    *,
    customer_ref: str | None,
    subscription_ref: str | None,
    plan: str | None,
    tier: str | None,
    now: datetime,
    trial_days: int = 0,
) -> dict[str, object]:
    fields: dict[str, object] = {
        "subscription_status": SubscriptionStatus.active,
        "subscription_plan": plan or SubscriptionPlan.monthly.value,
        "subscription_tier": tier or SubscriptionTier.pro.value,
        "subscription_end_date": None,
        "trial_ends_at": None,
    }
    if trial_days > 0:
        fields["subscription_status"] = SubscriptionStatus.trialing
        fields["trial_ends_at"] = now + timedelta(days=trial_days)
    if customer_ref:
        fields["payment_customer_ref"] = customer_ref
    if subscription_ref:
        fields["payment_subscription_ref"] = subscription_ref
    return fields


class WebhookIngestion:
    def __init__(
        self,
        db: Session,
        gateway: StripeGateway = stripe_gateway,
        admin_emails: Collection[str] = (),
        notifier: Notifier = notifier,
        trial_days: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.resolver = IdentityResolver(db, admin_emails)
        self.notifier = notifier
        self.trial_days = settings.checkout_trial_days if trial_days is None else trial_days
        self.clock = clock
        self._handlers: dict[str, Callable[[dict[str, Any], str], Account | None]] = {
            "checkout.completed": self._checkout_completed,
            "subscription.updated": self._subscription_updated,
            "subscription.deleted": self._subscription_deleted,
            "invoice.payment_failed": self._payment_failed,
            "invoice.payment_succeeded": self._payment_succeeded,
        }

    def ingest(self, raw_payload: bytes, signature_header: str | None) -> dict[str, Any]:
        if not self.gateway.verify_signature(raw_payload, signature_header):
            self._reject_signature(raw_payload)
            raise UpstreamVerificationFailed()

        try:
            event = json.loads(raw_payload)
        except ValueError as exc:
            raise InvalidInput("Malformed webhook payload") from exc
        if not isinstance(event, dict):
            raise InvalidInput("Malformed webhook payload")
        event_id = event.get("id")
        event_type = event.get("type")
        if not event_id or not event_type:
            raise InvalidInput("Webhook event is missing id or type")
        data = (event.get("data") or {}).get("object") or {}

        record = self._journal(event_id, event_type, event)
        if record.status in (WebhookEventStatus.processed, WebhookEventStatus.ignored):
            logger.info(
                "Duplicate webhook %s ignored",
                event_id,
                extra={"event_type": event_type, "event": "webhook_duplicate"},
            )
            ENTITLEMENT_EVENTS.labels("webhook", "duplicate").inc()
            return self._ack(record, duplicate=True)

        handler = self._handlers.get(canonical_event_type(event_type))
        if handler is None:
            self._finish(record, WebhookEventStatus.ignored)
            ENTITLEMENT_EVENTS.labels("webhook", "ignored").inc()
            logger.info("Unhandled webhook event type: %s", event_type, extra={"event_type": event_type})
            return self._ack(record)

        try:
            account = handler(data, event_id)
        except SQLAlchemyError as exc:
            self.db.rollback()
            self._finish(record, WebhookEventStatus.failed, error=str(exc))
            ENTITLEMENT_EVENTS.labels("webhook", "failed").inc()
            logger.exception(
                "Webhook %s failed", event_id, extra={"event_type": event_type}
            )
            raise AccountUpdateFailed() from exc

        if account is None:
            self._finish(record, WebhookEventStatus.ignored, error="no matching account")
        else:
            self._finish(record, WebhookEventStatus.processed, account_id=account.id)
        ENTITLEMENT_EVENTS.labels("webhook", canonical_event_type(event_type)).inc()
        return self._ack(record)

    # ── Journal ──────────────────────────────────────────

    def _journal(self, event_id: str, event_type: str, event: dict[str, Any]) -> WebhookEvent:
        existing = self._find_event(event_id)
        if existing is not None:
            return existing
        record = WebhookEvent(
            provider=PROVIDER,
            event_type=event_type,
            event_id=event_id,
            payload=event,
            status=WebhookEventStatus.pending,
        )
        try:
            self.db.add(record)
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            if not is_unique_violation(exc, "uq_webhook_events_provider_event"):
                raise
            winner = self._find_event(event_id)
            if winner is None:
                raise
            return winner
        self.db.refresh(record)
        return record

    def _find_event(self, event_id: str) -> WebhookEvent | None:
        stmt = select(WebhookEvent).where(
            WebhookEvent.provider == PROVIDER, WebhookEvent.event_id == event_id
        )
        return self.db.scalar(stmt)

    def _finish(
        self,
        record: WebhookEvent,
        status: WebhookEventStatus,
        *,
        account_id: object = None,
        error: str | None = None,
    ) -> None:
        record.status = status
        record.processed_at = self.clock()
        record.error_message = error
        if account_id is not None:
            record.account_id = account_id  # type: ignore[assignment]
        self.db.commit()

    @staticmethod
    def _ack(record: WebhookEvent, duplicate: bool = False) -> dict[str, Any]:
        return {
            "received": True,
            "event_id": record.event_id,
            "event_type": record.event_type,
            "status": record.status.value,
            "duplicate": duplicate,
        }

    def _reject_signature(self, raw_payload: bytes) -> None:
        ENTITLEMENT_EVENTS.labels("webhook", "invalid_signature").inc()
        logger.warning(
            "Webhook signature verification failed",
            extra={"event": "webhook_signature_invalid", "reason": "invalid_signature"},
        )
        audit_events.record(
            self.db,
            action="webhook.signature_rejected",
            entity_type="webhook",
            actor_type=AuditActorType.processor,
            is_success=False,
            metadata={"provider": PROVIDER, "payload_bytes": len(raw_payload)},
        )
        self.db.commit()

    # ── Handlers ─────────────────────────────────────────

    def _apply(
        self, account: Account, fields: dict[str, object], event_type: str, event_id: str
    ) -> Account:
        before = entitlement_snapshot(account)
        applied = preserve_grant(fields, account.has_direct_access)
        if len(applied) < len(fields):
            logger.info(
                "Kept admin grant terms on account %s during %s",
                account.id,
                event_type,
                extra={"account_id": str(account.id), "event": "direct_access_preserved"},
            )
        Accounts.apply_subscription_fields(self.db, account.id, **fields)
        audit_events.record(
            self.db,
            action=f"webhook.{event_type}",
            entity_type="account",
            entity_id=account.id,
            actor_type=AuditActorType.processor,
            actor_id=event_id,
            before=before,
            after=snapshot_after(before, applied),
        )
        self.db.commit()
        self.db.refresh(account)
        logger.info(
            "Applied %s to account %s",
            event_type,
            account.id,
            extra={"event_type": event_type, "account_id": str(account.id)},
        )
        return account

    def _by_customer(self, data: dict[str, Any], event_type: str) -> Account | None:
        customer_ref = data.get("customer")
        account = Accounts.find_by_customer_ref(self.db, customer_ref)
        if account is None:
            logger.warning(
                "No account for customer %s on %s",
                customer_ref,
                event_type,
                extra={"event_type": event_type, "reason": "unknown_customer"},
            )
        return account

    def _checkout_completed(self, data: dict[str, Any], event_id: str) -> Account | None:
        metadata = data.get("metadata") or {}
        external_id = metadata.get("userId") or data.get("client_reference_id")
        email = normalize_email(
            (data.get("customer_details") or {}).get("email")
            or data.get("customer_email")
            or metadata.get("email")
        )
        customer_ref = data.get("customer")
        fields = checkout_fields(
            customer_ref=customer_ref,
            subscription_ref=data.get("subscription"),
            plan=metadata.get("plan"),
            tier=metadata.get("tier"),
            now=self.clock(),
            trial_days=self.trial_days,
        )

        account = (
            Accounts.find_by_external_id(self.db, external_id)
            or Accounts.find_by_customer_ref(self.db, customer_ref)
            or Accounts.find_by_email(self.db, email)
        )
        if account is None:
            if not email:
                logger.warning(
                    "Checkout %s has no identity or email",
                    event_id,
                    extra={"event_type": "checkout.completed", "reason": "no_identity"},
                )
                return None
            account, created = Accounts.create(
                self.db,
                email=email,
                external_id=external_id,
                role=self.resolver.role_for(email),
                **fields,
            )
            if created:
                audit_events.record(
                    self.db,
                    action="webhook.checkout.completed",
                    entity_type="account",
                    entity_id=account.id,
                    actor_type=AuditActorType.processor,
                    actor_id=event_id,
                    after=entitlement_snapshot(account),
                    metadata={"created": True},
                )
                self.db.commit()
                self.db.refresh(account)
            else:
                account = self._apply(account, fields, "checkout.completed", event_id)
        else:
            account = self._apply(account, fields, "checkout.completed", event_id)

        self.notifier.notify(
            NotificationKind.welcome_member,
            account,
            {"plan": fields["subscription_plan"]},
        )
        return account

    def _subscription_updated(self, data: dict[str, Any], event_id: str) -> Account | None:
        account = self._by_customer(data, "subscription.updated")
        if account is None:
            return None
        return self._apply(account, subscription_fields(data), "subscription.updated", event_id)

    def _subscription_deleted(self, data: dict[str, Any], event_id: str) -> Account | None:
        account = self._by_customer(data, "subscription.deleted")
        if account is None:
            return None
        if account.has_direct_access:
            logger.info(
                "Subscription canceled for account %s; admin grant keeps access",
                account.id,
                extra={"account_id": str(account.id), "event": "direct_access_fallback"},
            )
        return self._apply(
            account,
            {"subscription_status": SubscriptionStatus.canceled},
            "subscription.deleted",
            event_id,
        )

    def _payment_failed(self, data: dict[str, Any], event_id: str) -> Account | None:
        account = self._by_customer(data, "invoice.payment_failed")
        if account is None:
            return None
        return self._apply(
            account,
            {"subscription_status": SubscriptionStatus.past_due},
            "invoice.payment_failed",
            event_id,
        )

    def _payment_succeeded(self, data: dict[str, Any], event_id: str) -> Account | None:
        account = self._by_customer(data, "invoice.payment_succeeded")
        if account is None:
            return None
        fields: dict[str, object] = {"subscription_status": SubscriptionStatus.active}
        lines = (data.get("lines") or {}).get("data") or []
        end = from_unix(((lines[0].get("period") or {}).get("end")) if lines else None)
        if end is not None:
            fields["subscription_end_date"] = end
        return self._apply(account, fields, "invoice.payment_succeeded", event_id)
