"""entitlements schema

Revision ID: 001_entitlements
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""

from alembic import op
import sqlalchemy as sa

revision = "001_entitlements"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Accounts
    op.create_table(
        "accounts",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column(
            "role",
            sa.Enum("user", "admin", name="accountrole"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("first_name", sa.String(length=120), nullable=True),
        sa.Column("last_name", sa.String(length=120), nullable=True),
        sa.Column("image_url", sa.String(length=1024), nullable=True),
        sa.Column(
            "subscription_status",
            sa.Enum(
                "inactive",
                "trialing",
                "active",
                "past_due",
                "canceled",
                name="subscriptionstatus",
            ),
            nullable=False,
        ),
        sa.Column("subscription_plan", sa.String(length=40), nullable=True),
        sa.Column("subscription_tier", sa.String(length=40), nullable=True),
        sa.Column("subscription_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("has_direct_access", sa.Boolean(), nullable=False),
        sa.Column("has_used_trial", sa.Boolean(), nullable=False),
        sa.Column("payment_customer_ref", sa.String(length=255), nullable=True),
        sa.Column("payment_subscription_ref", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email", name="uq_accounts_email"),
    )
    op.create_index(
        "ix_accounts_payment_customer_ref", "accounts", ["payment_customer_ref"]
    )

    # External identities
    op.create_table(
        "account_identities",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("account_id", sa.UUID(), nullable=False),
        sa.Column("external_id", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("external_id", name="uq_account_identities_external_id"),
    )
    op.create_index(
        "ix_account_identities_account_id", "account_identities", ["account_id"]
    )

    # Vouchers
    op.create_table(
        "vouchers",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column(
            "type",
            sa.Enum("ramadan", "promo", "special", name="vouchertype"),
            nullable=False,
        ),
        sa.Column("tier", sa.String(length=40), nullable=False),
        sa.Column("duration_months", sa.Integer(), nullable=False),
        sa.Column("max_redemptions", sa.Integer(), nullable=False),
        sa.Column("redemption_count", sa.Integer(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_by", sa.UUID(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["created_by"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code", name="uq_vouchers_code"),
        sa.CheckConstraint(
            "redemption_count <= max_redemptions", name="ck_vouchers_redemption_cap"
        ),
    )

    # Voucher redemptions
    op.create_table(
        "voucher_redemptions",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("account_id", sa.UUID(), nullable=False),
        sa.Column("voucher_id", sa.UUID(), nullable=False),
        sa.Column("granted_tier", sa.String(length=40), nullable=False),
        sa.Column("granted_duration", sa.Integer(), nullable=False),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.ForeignKeyConstraint(["voucher_id"], ["vouchers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "account_id",
            "voucher_id",
            name="uq_voucher_redemptions_account_voucher",
        ),
    )
    op.create_index(
        "ix_voucher_redemptions_account_id", "voucher_redemptions", ["account_id"]
    )
    op.create_index(
        "ix_voucher_redemptions_voucher_id", "voucher_redemptions", ["voucher_id"]
    )

    # Admin grant log
    op.create_table(
        "admin_grant_logs",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("admin_id", sa.String(length=255), nullable=True),
        sa.Column("admin_email", sa.String(length=255), nullable=True),
        sa.Column("target_email", sa.String(length=255), nullable=False),
        sa.Column("duration", sa.String(length=40), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_admin_grant_logs_target_email", "admin_grant_logs", ["target_email"]
    )

    # Audit events
    op.create_table(
        "audit_events",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "actor_type",
            sa.Enum("system", "user", "admin", "processor", name="auditactortype"),
            nullable=True,
        ),
        sa.Column("actor_id", sa.String(length=255), nullable=True),
        sa.Column("action", sa.String(length=80), nullable=True),
        sa.Column("entity_type", sa.String(length=80), nullable=True),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("is_success", sa.Boolean(), nullable=True),
        sa.Column("request_id", sa.String(length=120), nullable=True),
        sa.Column("before", sa.JSON(), nullable=True),
        sa.Column("after", sa.JSON(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    # Webhook journal
    op.create_table(
        "webhook_events",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("provider", sa.String(length=80), nullable=False),
        sa.Column("event_type", sa.String(length=120), nullable=False),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "pending",
                "processed",
                "ignored",
                "failed",
                name="webhookeventstatus",
            ),
            nullable=True,
        ),
        sa.Column("account_id", sa.UUID(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "provider", "event_id", name="uq_webhook_events_provider_event"
        ),
    )


def downgrade() -> None:
    op.drop_table("webhook_events")
    op.drop_table("audit_events")
    op.drop_index("ix_admin_grant_logs_target_email", table_name="admin_grant_logs")
    op.drop_table("admin_grant_logs")
    op.drop_index("ix_voucher_redemptions_voucher_id", table_name="voucher_redemptions")
    op.drop_index("ix_voucher_redemptions_account_id", table_name="voucher_redemptions")
    op.drop_table("voucher_redemptions")
    op.drop_table("vouchers")
    op.drop_index("ix_account_identities_account_id", table_name="account_identities")
    op.drop_table("account_identities")
    op.drop_index("ix_accounts_payment_customer_ref", table_name="accounts")
    op.drop_table("accounts")
    for enum_name in (
        "webhookeventstatus",
        "auditactortype",
        "vouchertype",
        "subscriptionstatus",
        "accountrole",
    ):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
