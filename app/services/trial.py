"""Self-service trial start.

Each account gets one trial. ``has_used_trial`` is flipped by the same
conditional UPDATE that opens the trial window, so two concurrent requests
cannot both start one.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import AccountUpdateFailed, InvalidInput
from app.metrics import ENTITLEMENT_EVENTS
from app.models.account import Account, SubscriptionStatus, SubscriptionTier
from app.models.audit import AuditActorType
from app.services.access import has_access
from app.services.audit import audit_events, entitlement_snapshot, snapshot_after
from app.services.common import utcnow

logger = logging.getLogger(__name__)


def parse_tier(value: str | SubscriptionTier | None) -> SubscriptionTier:
    try:
        return SubscriptionTier(value)
    except ValueError as exc:
        raise InvalidInput(
            'Invalid plan. Must be "basic" or "pro"', code="invalid_plan"
        ) from exc


@dataclass(frozen=True)
class TrialResult:
    account_id: str
    tier: str
    started_at: datetime
    ends_at: datetime
    days_left: int

    @property
    def message(self) -> str:
        return "Trial started successfully"


class TrialService:
    def __init__(
        self,
        db: Session,
        trial_days: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.trial_days = settings.self_service_trial_days if trial_days is None else trial_days
        self.clock = clock

    def start(self, account: Account, tier: str | SubscriptionTier) -> TrialResult:
        parsed = parse_tier(tier)
        now = self.clock()
        log_extra = {"account_id": str(account.id), "event": "trial_start"}

        if account.has_used_trial:
            self._reject(account, "trial_already_used")
        if has_access(account, now).allowed:
            self._reject(account, "already_subscribed")

        ends_at = now + timedelta(days=self.trial_days)
        fields = {
            "subscription_status": SubscriptionStatus.trialing,
            "subscription_tier": parsed.value,
            "trial_ends_at": ends_at,
            "has_used_trial": True,
        }
        before = entitlement_snapshot(account)
        try:
            started = self.db.execute(
                update(Account)
                .where(Account.id == account.id, Account.has_used_trial.is_(False))
                .values(**fields, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if started.rowcount == 0:  # type: ignore[union-attr]
                self.db.rollback()
                self._reject(account, "trial_already_used")
            audit_events.record(
                self.db,
                action="trial.started",
                entity_type="account",
                entity_id=account.id,
                actor_type=AuditActorType.user,
                actor_id=str(account.id),
                before=before,
                after=snapshot_after(before, fields),
                metadata={"tier": parsed.value, "trial_days": self.trial_days},
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            ENTITLEMENT_EVENTS.labels("trial", "failed").inc()
            logger.exception("Trial start failed", extra=log_extra)
            raise AccountUpdateFailed() from exc

        self.db.refresh(account)
        ENTITLEMENT_EVENTS.labels("trial", "started").inc()
        logger.info("Trial started on %s", parsed.value, extra=log_extra)
        return TrialResult(
            account_id=str(account.id),
            tier=parsed.value,
            started_at=now,
            ends_at=ends_at,
            days_left=self.trial_days,
        )

    def _reject(self, account: Account, reason: str) -> None:
        ENTITLEMENT_EVENTS.labels("trial", reason).inc()
        logger.info(
            "Trial start rejected: %s",
            reason,
            extra={"account_id": str(account.id), "event": "trial_start", "reason": reason},
        )
        message = "Trial already used" if reason == "trial_already_used" else "Already subscribed"
        raise InvalidInput(message, code=reason)
