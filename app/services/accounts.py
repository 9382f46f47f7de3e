"""Account store operations.

All entitlement writes go through :meth:`Accounts.apply_fields`, a single
``UPDATE ... WHERE id = :id`` statement, so concurrent writers never
read-modify-write a whole row. Creation is optimistic: the unique constraints
on ``accounts.email`` and ``account_identities.external_id`` decide the
winner of a race and the loser re-fetches it.
"""
import logging
import uuid

from sqlalchemy import case, func, literal, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.errors import InvalidInput, NotFound
from app.models.account import Account, AccountIdentity, AccountRole
from app.services.common import coerce_uuid, is_unique_violation, normalize_email, utcnow

logger = logging.getLogger(__name__)

_CREATE_CONSTRAINTS = ("uq_accounts_email", "uq_account_identities_external_id")

# Owned by an admin grant while has_direct_access is set
GRANT_FIELDS = ("subscription_plan", "subscription_end_date")


def preserve_grant(fields: dict[str, object], has_direct_access: bool) -> dict[str, object]:
    """``fields`` minus the grant-owned ones when the account holds a grant."""
    if not has_direct_access:
        return dict(fields)
    return {key: value for key, value in fields.items() if key not in GRANT_FIELDS}


class Accounts:
    @staticmethod
    def get(db: Session, account_id: str | uuid.UUID) -> Account:
        account = db.get(Account, coerce_uuid(account_id))
        if not account:
            raise NotFound("Account not found")
        return account

    @staticmethod
    def find_by_external_id(db: Session, external_id: str | None) -> Account | None:
        if not external_id:
            return None
        stmt = (
            select(Account)
            .join(AccountIdentity, AccountIdentity.account_id == Account.id)
            .where(AccountIdentity.external_id == external_id)
        )
        return db.scalar(stmt)

    @staticmethod
    def find_by_email(db: Session, email: str | None) -> Account | None:
        normalized = normalize_email(email)
        if not normalized:
            return None
        stmt = (
            select(Account)
            .where(func.lower(Account.email) == normalized)
            .order_by(Account.created_at.asc())
            .limit(1)
        )
        return db.scalar(stmt)

    @staticmethod
    def find_by_customer_ref(db: Session, customer_ref: str | None) -> Account | None:
        if not customer_ref:
            return None
        stmt = (
            select(Account)
            .where(Account.payment_customer_ref == customer_ref)
            .order_by(Account.created_at.asc())
            .limit(1)
        )
        return db.scalar(stmt)

    @staticmethod
    def apply_fields(db: Session, account_id: uuid.UUID, **fields: object) -> None:
        """Atomically set a group of fields on one account. Does not commit."""
        if not fields:
            return
        stmt = (
            update(Account)
            .where(Account.id == account_id)
            .values(**fields, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = db.execute(stmt)
        if result.rowcount == 0:  # type: ignore[union-attr]
            raise NotFound("Account not found")

    @staticmethod
    def apply_subscription_fields(db: Session, account_id: uuid.UUID, **fields: object) -> None:
        """Like :meth:`apply_fields`, for subscription sources (processor, vouchers).

        Plan and end date keep their stored values on a row whose
        ``has_direct_access`` is set. The check is part of the UPDATE, so a
        grant committed after the caller read the row still wins.
        """
        columns = Account.__table__.c
        guarded = {
            key: case(
                (Account.has_direct_access.is_(True), getattr(Account, key)),
                else_=literal(value, columns[key].type),
            )
            if key in GRANT_FIELDS
            else value
            for key, value in fields.items()
        }
        Accounts.apply_fields(db, account_id, **guarded)

    @staticmethod
    def create(
        db: Session,
        *,
        email: str,
        external_id: str | None = None,
        role: AccountRole = AccountRole.user,
        **fields: object,
    ) -> tuple[Account, bool]:
        """Insert an account, or return the concurrent winner.

        Returns ``(account, created)``. When another writer inserted the same
        email (or linked the same external id) first, the transaction is rolled
        back and the surviving row is returned with ``created=False``.
        """
        normalized = normalize_email(email)
        if not normalized:
            raise InvalidInput("Email is required")
        account = Account(email=normalized, role=role, **fields)
        try:
            db.add(account)
            db.flush()
            if external_id:
                db.add(AccountIdentity(account_id=account.id, external_id=external_id))
                db.flush()
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            if not is_unique_violation(exc, *_CREATE_CONSTRAINTS):
                raise
            winner = Accounts.find_by_external_id(db, external_id) or Accounts.find_by_email(
                db, normalized
            )
            if winner is None:
                raise
            logger.info(
                "Account creation race resolved to existing account %s",
                winner.id,
                extra={"account_id": str(winner.id), "event": "account_create_race"},
            )
            return winner, False
        db.refresh(account)
        logger.info(
            "Created account %s (linked=%s)",
            account.id,
            bool(external_id),
            extra={"account_id": str(account.id), "event": "account_created"},
        )
        return account, True

    @staticmethod
    def link_identity(db: Session, account: Account, external_id: str) -> Account:
        """Attach an external id to an account; commits.

        If the id was linked concurrently, the account that owns it is returned.
        """
        try:
            db.add(AccountIdentity(account_id=account.id, external_id=external_id))
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            if not is_unique_violation(exc, "uq_account_identities_external_id"):
                raise
            owner = Accounts.find_by_external_id(db, external_id)
            if owner is None:
                raise
            return owner
        db.refresh(account)
        return account


accounts = Accounts()
