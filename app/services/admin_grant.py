"""Admin-granted access: set or revoke an account's entitlement by email."""
from __future__ import annotations

import enum
import logging
from collections.abc import Callable, Collection
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.errors import AccountUpdateFailed, Forbidden, InvalidInput, NotFound
from app.metrics import ENTITLEMENT_EVENTS
from app.models.account import Account, SubscriptionPlan, SubscriptionStatus, SubscriptionTier
from app.models.audit import AdminGrantLog, AuditActorType
from app.services.accounts import Accounts
from app.services.audit import audit_events, entitlement_snapshot, snapshot_after
from app.services.common import add_months, normalize_email, utcnow
from app.services.identity import IdentityResolver
from app.services.notifications import NotificationKind, Notifier, notifier

logger = logging.getLogger(__name__)


class GrantDuration(str, enum.Enum):
    lifetime = "lifetime"
    one_month = "1_month"
    three_months = "3_months"
    six_months = "6_months"
    one_year = "1_year"
    revoke = "revoke"


DURATION_MONTHS = {
    GrantDuration.one_month: 1,
    GrantDuration.three_months: 3,
    GrantDuration.six_months: 6,
    GrantDuration.one_year: 12,
}


def parse_duration(value: str | GrantDuration) -> GrantDuration:
    try:
        return GrantDuration(value)
    except ValueError as exc:
        allowed = ", ".join(d.value for d in GrantDuration)
        raise InvalidInput(
            f"Invalid duration. Allowed: {allowed}", code="invalid_duration"
        ) from exc


def grant_fields(duration: GrantDuration, now: datetime) -> dict[str, object]:
    if duration == GrantDuration.revoke:
        return {
            "subscription_status": SubscriptionStatus.inactive,
            "subscription_plan": None,
            "subscription_tier": None,
            "subscription_end_date": None,
            "trial_ends_at": None,
            "has_direct_access": False,
        }
    if duration == GrantDuration.lifetime:
        plan = SubscriptionPlan.lifetime
        end_date = None
    else:
        months = DURATION_MONTHS[duration]
        plan = SubscriptionPlan.yearly if months >= 12 else SubscriptionPlan.monthly
        end_date = add_months(now, months)
    return {
        "subscription_status": SubscriptionStatus.active,
        "subscription_plan": plan.value,
        "subscription_tier": SubscriptionTier.pro.value,
        "subscription_end_date": end_date,
        "trial_ends_at": None,
        "has_direct_access": True,
    }


@dataclass(frozen=True)
class GrantResult:
    success: bool
    message: str
    target_email: str
    duration: str
    account_id: str
    has_linked_identity: bool
    created_placeholder: bool
    subscription_end_date: datetime | None

    @property
    def warning(self) -> str | None:
        if self.has_linked_identity:
            return None
        return "This user hasn't signed up yet. Access applies once they sign in with this email."


class AdminGrantService:
    def __init__(
        self,
        db: Session,
        admin_emails: Collection[str] = (),
        notifier: Notifier = notifier,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.resolver = IdentityResolver(db, admin_emails)
        self.notifier = notifier
        self.clock = clock

    def grant(
        self,
        caller_is_admin: bool,
        target_email: str,
        duration: str | GrantDuration,
        *,
        admin_id: str | None = None,
        admin_email: str | None = None,
    ) -> GrantResult:
        if not caller_is_admin:
            ENTITLEMENT_EVENTS.labels("admin_grant", "forbidden").inc()
            logger.warning(
                "Unauthorized admin grant attempt",
                extra={
                    "event": "unauthorized_access_attempt",
                    "actor_id": admin_id,
                    "target_email": normalize_email(target_email),
                },
            )
            raise Forbidden()

        email = normalize_email(target_email)
        if not email or "@" not in email:
            raise InvalidInput("A valid target email is required", code="invalid_email")
        parsed = parse_duration(duration)

        account = Accounts.find_by_email(self.db, email)
        created = False
        if account is None:
            if parsed == GrantDuration.revoke:
                raise NotFound(
                    f"No account exists for {email}, nothing to revoke",
                    code="nothing_to_revoke",
                )
            account, created = self.resolver.find_or_create_placeholder(email)

        now = self.clock()
        fields = grant_fields(parsed, now)
        before = entitlement_snapshot(account)
        action = "revoke" if parsed == GrantDuration.revoke else "grant"
        try:
            Accounts.apply_fields(self.db, account.id, **fields)
            self.db.add(
                AdminGrantLog(
                    admin_id=admin_id,
                    admin_email=normalize_email(admin_email) or None,
                    target_email=email,
                    duration=parsed.value,
                    created_at=now,
                )
            )
            audit_events.record(
                self.db,
                action=f"admin_grant.{action}",
                entity_type="account",
                entity_id=account.id,
                actor_type=AuditActorType.admin,
                actor_id=admin_id,
                before=before,
                after=snapshot_after(before, fields),
                metadata={"duration": parsed.value, "target_email": email},
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            ENTITLEMENT_EVENTS.labels("admin_grant", "failed").inc()
            logger.exception(
                "Admin grant failed for %s",
                email,
                extra={"target_email": email, "actor_id": admin_id},
            )
            raise AccountUpdateFailed() from exc

        self.db.refresh(account)
        ENTITLEMENT_EVENTS.labels("admin_grant", parsed.value).inc()
        logger.info(
            "Admin action: %s for %s",
            parsed.value,
            email,
            extra={
                "event": "admin_action",
                "actor_id": admin_id,
                "target_email": email,
                "account_id": str(account.id),
            },
        )

        kind = (
            NotificationKind.access_revoked
            if parsed == GrantDuration.revoke
            else NotificationKind.access_granted
        )
        self.notifier.notify(kind, account, {"duration": parsed.value})

        verb = "Revoked access from" if action == "revoke" else "Granted access to"
        return GrantResult(
            success=True,
            message=f"{verb} {email} ({parsed.value})",
            target_email=email,
            duration=parsed.value,
            account_id=str(account.id),
            has_linked_identity=account.has_linked_identity,
            created_placeholder=created,
            subscription_end_date=account.subscription_end_date,
        )

    def list_logs(
        self, target_email: str | None = None, limit: int = 50, offset: int = 0
    ) -> tuple[list[AdminGrantLog], int]:
        stmt = select(AdminGrantLog)
        if target_email:
            stmt = stmt.where(AdminGrantLog.target_email == normalize_email(target_email))
        total = self.db.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        stmt = stmt.order_by(AdminGrantLog.created_at.desc()).limit(limit).offset(offset)
        return list(self.db.scalars(stmt).all()), total

    def lookup(self, email: str) -> Account:
        account = Accounts.find_by_email(self.db, email)
        if account is None:
            raise NotFound(f"No account exists for {normalize_email(email)}")
        return account
