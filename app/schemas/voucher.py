from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.account import SubscriptionTier
from app.models.voucher import VoucherType


def _canonical(value: str) -> str:
    return value.strip().upper()


class VoucherCodeRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)


class VoucherCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    code: str = Field(min_length=3, max_length=64)
    type: VoucherType = VoucherType.promo
    tier: SubscriptionTier = SubscriptionTier.pro
    duration_months: int = Field(ge=1, le=12)
    max_redemptions: int = Field(default=1000, ge=1)
    expires_at: datetime
    description: str | None = Field(default=None, max_length=500)

    @field_validator("code")
    @classmethod
    def canonical_code(cls, value: str) -> str:
        return _canonical(value)


class VoucherUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    is_active: bool | None = None
    max_redemptions: int | None = Field(default=None, ge=1)
    expires_at: datetime | None = None
    description: str | None = Field(default=None, max_length=500)


class VoucherRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    type: VoucherType
    tier: str
    duration_months: int
    max_redemptions: int
    redemption_count: int
    expires_at: datetime
    is_active: bool
    description: str | None = None
    created_by: UUID | None = None
    created_at: datetime


class VoucherSummaryRead(BaseModel):
    valid: bool = True
    code: str
    tier: str
    duration_months: int
    description: str | None = None


class VoucherRedeemResponse(BaseModel):
    success: bool = True
    message: str
    tier: str
    duration_months: int
    subscription_end_date: datetime
