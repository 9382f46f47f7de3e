from app.models.account import (  # noqa: F401
    Account,
    AccountIdentity,
    AccountRole,
    SubscriptionPlan,
    SubscriptionStatus,
    SubscriptionTier,
)
from app.models.audit import AdminGrantLog, AuditActorType, AuditEvent  # noqa: F401
from app.models.voucher import Voucher, VoucherRedemption, VoucherType  # noqa: F401
from app.models.webhook_event import WebhookEvent, WebhookEventStatus  # noqa: F401
