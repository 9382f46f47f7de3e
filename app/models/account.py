import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base, TimestampMixin


class AccountRole(str, enum.Enum):
    user = "user"
    admin = "admin"


class SubscriptionStatus(str, enum.Enum):
    inactive = "inactive"
    trialing = "trialing"
    active = "active"
    past_due = "past_due"
    canceled = "canceled"


class SubscriptionPlan(str, enum.Enum):
    monthly = "monthly"
    yearly = "yearly"
    lifetime = "lifetime"


class SubscriptionTier(str, enum.Enum):
    basic = "basic"
    pro = "pro"


class Account(TimestampMixin, Base):
    """One logical user.

    Placeholder accounts (created by an admin grant or a billing webhook before
    the user ever signed in) are plain rows with no identities attached; the
    identity resolver links them on first sign-in.
    """

    __tablename__ = "accounts"
    __table_args__ = (UniqueConstraint("email", name="uq_accounts_email"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    # Stored trimmed and lower-cased
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[AccountRole] = mapped_column(
        Enum(AccountRole), default=AccountRole.user, nullable=False
    )

    name: Mapped[str | None] = mapped_column(String(255))
    first_name: Mapped[str | None] = mapped_column(String(120))
    last_name: Mapped[str | None] = mapped_column(String(120))
    image_url: Mapped[str | None] = mapped_column(String(1024))

    subscription_status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus), default=SubscriptionStatus.inactive, nullable=False
    )
    # Descriptive only, never authoritative for access
    subscription_plan: Mapped[str | None] = mapped_column(String(40))
    subscription_tier: Mapped[str | None] = mapped_column(String(40))
    subscription_end_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    trial_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    has_direct_access: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    # Set once by the self-service trial start, never cleared
    has_used_trial: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    payment_customer_ref: Mapped[str | None] = mapped_column(String(255), index=True)
    payment_subscription_ref: Mapped[str | None] = mapped_column(String(255))

    identities = relationship(
        "AccountIdentity",
        back_populates="account",
        lazy="selectin",
        order_by="AccountIdentity.created_at",
    )

    @property
    def external_ids(self) -> set[str]:
        return {identity.external_id for identity in self.identities}

    @property
    def has_linked_identity(self) -> bool:
        return bool(self.identities)


class AccountIdentity(TimestampMixin, Base):
    __tablename__ = "account_identities"
    __table_args__ = (
        UniqueConstraint("external_id", name="uq_account_identities_external_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False, index=True
    )
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)

    account = relationship("Account", back_populates="identities")
