"""Audit trail for entitlement writes.

Every write path adds an :class:`AuditEvent` to the caller's session so the
audit row commits (or rolls back) together with the change it describes.
"""
import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.account import Account
from app.models.audit import AuditActorType, AuditEvent

logger = logging.getLogger(__name__)

ENTITLEMENT_FIELDS = (
    "subscription_status",
    "subscription_plan",
    "subscription_tier",
    "subscription_end_date",
    "trial_ends_at",
    "has_direct_access",
    "has_used_trial",
    "payment_customer_ref",
    "payment_subscription_ref",
    "role",
)


def _jsonable(value: object) -> object:
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return value


def entitlement_snapshot(account: Account | None) -> dict | None:
    if account is None:
        return None
    return {field: _jsonable(getattr(account, field)) for field in ENTITLEMENT_FIELDS}


def snapshot_after(before: dict | None, fields: dict) -> dict:
    """The snapshot ``before`` turns into once ``fields`` are applied."""
    after = dict(before or {})
    after.update(
        {key: _jsonable(value) for key, value in fields.items() if key in ENTITLEMENT_FIELDS}
    )
    return after


class AuditEvents:
    @staticmethod
    def record(
        db: Session,
        *,
        action: str,
        entity_type: str,
        entity_id: object = None,
        actor_type: AuditActorType = AuditActorType.system,
        actor_id: str | None = None,
        before: dict | None = None,
        after: dict | None = None,
        metadata: dict | None = None,
        is_success: bool = True,
        request_id: str | None = None,
    ) -> AuditEvent:
        event = AuditEvent(
            actor_type=actor_type,
            actor_id=actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            before=before,
            after=after,
            metadata_=metadata,
            is_success=is_success,
            request_id=request_id,
        )
        db.add(event)
        logger.info(
            "audit %s %s %s",
            action,
            entity_type,
            event.entity_id,
            extra={"event": action, "actor_id": actor_id},
        )
        return event

    @staticmethod
    def list(
        db: Session,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
        action: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AuditEvent]:
        stmt = select(AuditEvent)
        if entity_type:
            stmt = stmt.where(AuditEvent.entity_type == entity_type)
        if entity_id:
            stmt = stmt.where(AuditEvent.entity_id == entity_id)
        if action:
            stmt = stmt.where(AuditEvent.action == action)
        stmt = stmt.order_by(AuditEvent.occurred_at.desc()).limit(limit).offset(offset)
        return list(db.scalars(stmt).all())


audit_events = AuditEvents()
