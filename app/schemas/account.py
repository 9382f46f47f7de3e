from datetime import datetime
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from app.models.account import AccountRole, SubscriptionStatus, SubscriptionTier


class AccessDecisionRead(BaseModel):
    allowed: bool
    reason: str
    rule: str
    message: str | None = None
    trial_days_left: int | None = None


class AccountRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    role: AccountRole
    name: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    image_url: str | None = None
    subscription_status: SubscriptionStatus
    subscription_plan: str | None = None
    subscription_tier: str | None = None
    subscription_end_date: datetime | None = None
    trial_ends_at: datetime | None = None
    has_direct_access: bool
    has_used_trial: bool
    payment_customer_ref: str | None = None
    has_linked_identity: bool
    created_at: datetime


class MeResponse(BaseModel):
    account: AccountRead
    access: AccessDecisionRead
    is_admin: bool


class TrialStartRequest(BaseModel):
    # Older clients send the tier as "plan"
    tier: SubscriptionTier = Field(validation_alias=AliasChoices("tier", "plan"))


class TrialStartResponse(BaseModel):
    success: bool
    message: str
    tier: str
    started_at: datetime
    ends_at: datetime
    days_left: int
