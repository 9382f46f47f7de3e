from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.services.admin_grant import GrantDuration


class GrantRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    duration: GrantDuration


class GrantResponse(BaseModel):
    success: bool
    message: str
    target_email: str
    duration: str
    account_id: str
    has_linked_identity: bool
    created_placeholder: bool
    subscription_end_date: datetime | None = None
    warning: str | None = None


class GrantLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    admin_id: str | None = None
    admin_email: str | None = None
    target_email: str
    duration: str
    created_at: datetime


class SubscriptionSyncDetail(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    email: str
    status: str
    message: str | None = None
    subscription_status: str | None = None
    subscription_plan: str | None = None
    subscription_end_date: datetime | None = None


class SubscriptionSyncResponse(BaseModel):
    success: bool
    total: int
    fixed: int
    errors: int
    details: list[SubscriptionSyncDetail]
