"""Voucher validation, redemption and administration.

Redemption writes, in one transaction and in this order: the account's
entitlement fields, a conditional increment of the voucher counter, then the
redemption record. The ``(account_id, voucher_id)`` unique constraint on the
redemption record is what guarantees a single redemption per account; the
pre-check query only produces a friendlier error earlier.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Collection
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.errors import (
    AccountUpdateFailed,
    AlreadyRedeemed,
    Conflict,
    InvalidInput,
    NotAuthenticated,
    NotFound,
    VoucherExhausted,
    VoucherExpired,
    VoucherInactive,
)
from app.metrics import ENTITLEMENT_EVENTS
from app.models.account import Account, SubscriptionPlan, SubscriptionStatus
from app.models.audit import AuditActorType
from app.models.voucher import Voucher, VoucherRedemption
from app.schemas.voucher import VoucherCreate, VoucherUpdate
from app.services.accounts import Accounts, preserve_grant
from app.services.audit import audit_events, entitlement_snapshot, snapshot_after
from app.services.common import add_months, coerce_uuid, is_unique_violation, make_aware, utcnow
from app.services.identity import CallerIdentity, IdentityResolver
from app.services.notifications import NotificationKind, Notifier, notifier

logger = logging.getLogger(__name__)


def canonical_code(code: str | None) -> str:
    return (code or "").strip().upper()


@dataclass(frozen=True)
class VoucherSummary:
    code: str
    tier: str
    duration_months: int
    description: str | None


@dataclass(frozen=True)
class RedemptionResult:
    account_id: str
    code: str
    tier: str
    duration_months: int
    subscription_end_date: datetime

    @property
    def message(self) -> str:
        return f"Voucher redeemed: {self.duration_months} month(s) of {self.tier} access"


def redemption_fields(voucher: Voucher, now: datetime) -> dict[str, object]:
    plan = (
        SubscriptionPlan.yearly if voucher.duration_months >= 12 else SubscriptionPlan.monthly
    )
    # has_direct_access is never set here; a held grant keeps its plan and end date
    return {
        "subscription_status": SubscriptionStatus.active,
        "subscription_plan": plan.value,
        "subscription_tier": voucher.tier,
        "subscription_end_date": add_months(now, voucher.duration_months),
        "trial_ends_at": None,
    }


class VoucherService:
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

    # ── Lookup & checks ──────────────────────────────────

    def get_by_code(self, code: str | None) -> Voucher | None:
        canonical = canonical_code(code)
        if not canonical:
            return None
        return self.db.scalar(select(Voucher).where(Voucher.code == canonical))

    def _load(self, code: str | None) -> Voucher:
        if not canonical_code(code):
            raise InvalidInput("Voucher code is required", code="invalid_code")
        voucher = self.get_by_code(code)
        if voucher is None:
            raise InvalidInput("Invalid voucher code", code="invalid_code")
        return voucher

    def _ensure_redeemable(self, voucher: Voucher, now: datetime) -> None:
        if not voucher.is_active:
            raise VoucherInactive()
        if make_aware(voucher.expires_at) < now:
            raise VoucherExpired()
        if voucher.redemption_count >= voucher.max_redemptions:
            raise VoucherExhausted()

    def find_redemption(self, account_id: UUID, voucher_id: UUID) -> VoucherRedemption | None:
        stmt = select(VoucherRedemption).where(
            VoucherRedemption.account_id == account_id,
            VoucherRedemption.voucher_id == voucher_id,
        )
        return self.db.scalar(stmt)

    # ── Self-service ─────────────────────────────────────

    def validate(self, code: str | None) -> VoucherSummary:
        voucher = self._load(code)
        self._ensure_redeemable(voucher, self.clock())
        return VoucherSummary(
            code=voucher.code,
            tier=voucher.tier,
            duration_months=voucher.duration_months,
            description=voucher.description,
        )

    def redeem(self, caller: CallerIdentity | None, code: str | None) -> RedemptionResult:
        if caller is None or not caller.external_id:
            raise NotAuthenticated()
        canonical = canonical_code(code)
        if not canonical:
            raise InvalidInput("Voucher code is required", code="invalid_code")

        account = self.resolver.resolve_caller(caller)
        voucher = self._load(canonical)
        now = self.clock()
        self._ensure_redeemable(voucher, now)
        if self.find_redemption(account.id, voucher.id) is not None:
            self._reject(account, canonical, "already_redeemed")
            raise AlreadyRedeemed()

        fields = redemption_fields(voucher, now)
        before = entitlement_snapshot(account)
        log_extra = {"account_id": str(account.id), "voucher_code": canonical}
        try:
            Accounts.apply_subscription_fields(self.db, account.id, **fields)

            counted = self.db.execute(
                update(Voucher)
                .where(
                    Voucher.id == voucher.id,
                    Voucher.redemption_count < Voucher.max_redemptions,
                )
                .values(redemption_count=Voucher.redemption_count + 1)
                .execution_options(synchronize_session=False)
            )
            if counted.rowcount == 0:  # type: ignore[union-attr]
                self.db.rollback()
                self._reject(account, canonical, "voucher_exhausted")
                raise VoucherExhausted()

            self.db.add(
                VoucherRedemption(
                    account_id=account.id,
                    voucher_id=voucher.id,
                    granted_tier=voucher.tier,
                    granted_duration=voucher.duration_months,
                    redeemed_at=now,
                )
            )
            self.db.flush()
            audit_events.record(
                self.db,
                action="voucher.redeemed",
                entity_type="account",
                entity_id=account.id,
                actor_type=AuditActorType.user,
                actor_id=caller.external_id,
                before=before,
                after=snapshot_after(before, preserve_grant(fields, account.has_direct_access)),
                metadata={"voucher_code": canonical, "voucher_id": str(voucher.id)},
            )
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            if is_unique_violation(exc, "uq_voucher_redemptions_account_voucher"):
                self._reject(account, canonical, "already_redeemed")
                raise AlreadyRedeemed() from exc
            logger.exception("Voucher redemption failed", extra=log_extra)
            raise AccountUpdateFailed() from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Voucher redemption failed", extra=log_extra)
            ENTITLEMENT_EVENTS.labels("voucher", "failed").inc()
            raise AccountUpdateFailed() from exc

        self.db.refresh(account)
        ENTITLEMENT_EVENTS.labels("voucher", "redeemed").inc()
        logger.info("Voucher %s redeemed", canonical, extra=log_extra)
        self.notifier.notify(
            NotificationKind.voucher_redeemed,
            account,
            {"tier": voucher.tier, "duration_months": voucher.duration_months},
        )
        return RedemptionResult(
            account_id=str(account.id),
            code=canonical,
            tier=voucher.tier,
            duration_months=voucher.duration_months,
            subscription_end_date=fields["subscription_end_date"],  # type: ignore[arg-type]
        )

    def _reject(self, account: Account, code: str, reason: str) -> None:
        ENTITLEMENT_EVENTS.labels("voucher", reason).inc()
        logger.info(
            "Voucher %s rejected: %s",
            code,
            reason,
            extra={"account_id": str(account.id), "voucher_code": code, "reason": reason},
        )

    # ── Administration ───────────────────────────────────

    def create(self, payload: VoucherCreate, created_by: UUID | None = None) -> Voucher:
        code = canonical_code(payload.code)
        if self.get_by_code(code) is not None:
            raise Conflict(f"Voucher code {code} already exists")
        voucher = Voucher(
            code=code,
            type=payload.type,
            tier=payload.tier.value,
            duration_months=payload.duration_months,
            max_redemptions=payload.max_redemptions,
            expires_at=payload.expires_at,
            description=payload.description,
            created_by=created_by,
        )
        try:
            self.db.add(voucher)
            self.db.flush()
            audit_events.record(
                self.db,
                action="voucher.created",
                entity_type="voucher",
                entity_id=voucher.id,
                actor_type=AuditActorType.admin,
                actor_id=str(created_by) if created_by else None,
                after={"code": code, "tier": voucher.tier, "duration_months": voucher.duration_months},
            )
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            if is_unique_violation(exc, "uq_vouchers_code"):
                raise Conflict(f"Voucher code {code} already exists") from exc
            raise
        self.db.refresh(voucher)
        logger.info("Created voucher %s", code, extra={"voucher_code": code})
        return voucher

    def get(self, voucher_id: str | UUID) -> Voucher:
        try:
            voucher_uuid = coerce_uuid(voucher_id)
        except ValueError as exc:
            raise NotFound("Voucher not found") from exc
        voucher = self.db.get(Voucher, voucher_uuid)
        if voucher is None:
            raise NotFound("Voucher not found")
        return voucher

    def list_vouchers(
        self, *, is_active: bool | None = None, limit: int = 50, offset: int = 0
    ) -> tuple[list[Voucher], int]:
        stmt = select(Voucher)
        if is_active is not None:
            stmt = stmt.where(Voucher.is_active.is_(is_active))
        total = self.db.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        stmt = stmt.order_by(Voucher.created_at.desc()).limit(limit).offset(offset)
        return list(self.db.scalars(stmt).all()), total

    def update(
        self, voucher_id: str | UUID, payload: VoucherUpdate, actor_id: str | None = None
    ) -> Voucher:
        voucher = self.get(voucher_id)
        changes = payload.model_dump(exclude_unset=True, exclude_none=True)
        if not changes:
            return voucher
        if changes.get("max_redemptions", voucher.max_redemptions) < voucher.redemption_count:
            raise _cap_below_count(voucher.redemption_count)
        before = {key: _plain(getattr(voucher, key)) for key in changes}

        # Redemptions may land after the read above; the cap is re-checked in the UPDATE
        stmt = update(Voucher).where(Voucher.id == voucher.id).values(**changes)
        if "max_redemptions" in changes:
            stmt = stmt.where(Voucher.redemption_count <= changes["max_redemptions"])
        result = self.db.execute(stmt.execution_options(synchronize_session=False))
        if result.rowcount == 0:  # type: ignore[union-attr]
            self.db.rollback()
            self.db.refresh(voucher)
            logger.info(
                "Voucher %s cap change lost to a concurrent redemption",
                voucher.code,
                extra={"voucher_code": voucher.code, "reason": "cap_below_count"},
            )
            raise _cap_below_count(voucher.redemption_count)
        audit_events.record(
            self.db,
            action="voucher.updated",
            entity_type="voucher",
            entity_id=voucher.id,
            actor_type=AuditActorType.admin,
            actor_id=actor_id,
            before=before,
            after={key: _plain(value) for key, value in changes.items()},
        )
        self.db.commit()
        self.db.refresh(voucher)
        return voucher

    def deactivate(self, voucher_id: str | UUID, actor_id: str | None = None) -> Voucher:
        return self.update(voucher_id, VoucherUpdate(is_active=False), actor_id=actor_id)


def _plain(value: object) -> object:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _cap_below_count(redemption_count: int) -> InvalidInput:
    return InvalidInput(
        f"max_redemptions cannot be lower than the {redemption_count} "
        "redemptions already made"
    )
