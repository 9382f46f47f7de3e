"""Identity resolver: map a verified external identity onto one Account.

Lookup order is external id, then case-insensitive email (merging placeholder
accounts created by an admin grant or a billing webhook), then creation.
"""
from __future__ import annotations

import logging
from collections.abc import Collection
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from app.errors import InvalidInput, NotAuthenticated
from app.metrics import ENTITLEMENT_EVENTS
from app.models.account import Account, AccountRole
from app.models.audit import AuditActorType
from app.services.accounts import Accounts
from app.services.audit import audit_events
from app.services.common import normalize_email

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ("name", "first_name", "last_name", "image_url")


@dataclass(frozen=True)
class CallerIdentity:
    """Verified caller as supplied by the identity provider."""

    external_id: str
    email: str
    profile: dict[str, str] = field(default_factory=dict)


def _clean_profile(profile: dict | None) -> dict[str, str]:
    if not profile:
        return {}
    return {key: profile[key] for key in PROFILE_FIELDS if profile.get(key)}


class IdentityResolver:
    def __init__(self, db: Session, admin_emails: Collection[str] = ()) -> None:
        self.db = db
        self.admin_emails = frozenset(normalize_email(e) for e in admin_emails)

    # ── Admin policy ─────────────────────────────────────

    def is_admin_email(self, email: str | None) -> bool:
        normalized = normalize_email(email)
        return bool(normalized) and normalized in self.admin_emails

    def is_admin(self, account: Account) -> bool:
        return account.role == AccountRole.admin or self.is_admin_email(account.email)

    def role_for(self, email: str | None) -> AccountRole:
        return AccountRole.admin if self.is_admin_email(email) else AccountRole.user

    # ── Resolution ───────────────────────────────────────

    def resolve_caller(self, caller: CallerIdentity) -> Account:
        return self.resolve(caller.external_id, caller.email, caller.profile)

    def resolve(
        self, external_id: str | None, email: str | None, profile: dict | None = None
    ) -> Account:
        if not external_id:
            raise NotAuthenticated()
        profile_fields = _clean_profile(profile)

        account = Accounts.find_by_external_id(self.db, external_id)
        if account is not None:
            return self._sync_role(account)

        normalized = normalize_email(email)
        if not normalized:
            raise InvalidInput(
                "Email address is required but not yet available",
                code="email_required",
            )

        account = Accounts.find_by_email(self.db, normalized)
        if account is not None:
            return self._merge(account, external_id, profile_fields)

        account, created = Accounts.create(
            self.db,
            email=normalized,
            external_id=external_id,
            role=self.role_for(normalized),
            **profile_fields,
        )
        if not created:
            if external_id in account.external_ids:
                return account
            # Lost the race to a placeholder writer for the same email.
            return self._merge(account, external_id, profile_fields)

        audit_events.record(
            self.db,
            action="account.created",
            entity_type="account",
            entity_id=account.id,
            actor_type=AuditActorType.user,
            actor_id=external_id,
            after={"email": account.email, "external_ids": [external_id]},
        )
        self.db.commit()
        ENTITLEMENT_EVENTS.labels("identity", "created").inc()
        return account

    def find_or_create_placeholder(self, email: str) -> tuple[Account, bool]:
        """Return the account for ``email``, creating one with no identities."""
        normalized = normalize_email(email)
        account = Accounts.find_by_email(self.db, normalized)
        if account is not None:
            return account, False
        account, created = Accounts.create(
            self.db, email=normalized, role=self.role_for(normalized)
        )
        if created:
            logger.info(
                "Created placeholder account %s",
                account.id,
                extra={"account_id": str(account.id), "target_email": normalized},
            )
        return account, created

    def _merge(
        self, account: Account, external_id: str, profile_fields: dict[str, str]
    ) -> Account:
        previous_ids = sorted(account.external_ids)
        account = Accounts.link_identity(self.db, account, external_id)

        updates: dict[str, object] = {
            key: value
            for key, value in profile_fields.items()
            if not getattr(account, key)
        }
        if self.is_admin_email(account.email) and account.role != AccountRole.admin:
            updates["role"] = AccountRole.admin
        if updates:
            Accounts.apply_fields(self.db, account.id, **updates)

        audit_events.record(
            self.db,
            action="account.identity_linked",
            entity_type="account",
            entity_id=account.id,
            actor_type=AuditActorType.user,
            actor_id=external_id,
            before={"external_ids": previous_ids},
            after={"external_ids": sorted(account.external_ids)},
            metadata={"backfilled": sorted(updates)},
        )
        self.db.commit()
        self.db.refresh(account)
        ENTITLEMENT_EVENTS.labels("identity", "merged").inc()
        logger.info(
            "Linked external identity to account %s",
            account.id,
            extra={"account_id": str(account.id), "event": "identity_linked"},
        )
        return account

    def _sync_role(self, account: Account) -> Account:
        if account.role == AccountRole.admin or not self.is_admin_email(account.email):
            return account
        Accounts.apply_fields(self.db, account.id, role=AccountRole.admin)
        audit_events.record(
            self.db,
            action="account.role_promoted",
            entity_type="account",
            entity_id=account.id,
            before={"role": account.role.value},
            after={"role": AccountRole.admin.value},
        )
        self.db.commit()
        self.db.refresh(account)
        return account
