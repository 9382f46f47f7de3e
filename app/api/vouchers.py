from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.deps import get_admin_emails, get_db, get_notifier, require_caller
from app.schemas.voucher import (
    VoucherCodeRequest,
    VoucherRedeemResponse,
    VoucherSummaryRead,
)
from app.services.identity import CallerIdentity
from app.services.notifications import Notifier
from app.services.voucher import VoucherService

router = APIRouter(prefix="/vouchers", tags=["vouchers"])


@router.post("/validate", response_model=VoucherSummaryRead)
def validate_voucher(payload: VoucherCodeRequest, db: Session = Depends(get_db)):
    summary = VoucherService(db).validate(payload.code)
    return VoucherSummaryRead(
        code=summary.code,
        tier=summary.tier,
        duration_months=summary.duration_months,
        description=summary.description,
    )


@router.post("/redeem", response_model=VoucherRedeemResponse)
def redeem_voucher(
    payload: VoucherCodeRequest,
    caller: CallerIdentity = Depends(require_caller),
    db: Session = Depends(get_db),
    admin_emails: frozenset[str] = Depends(get_admin_emails),
    notifier: Notifier = Depends(get_notifier),
):
    result = VoucherService(db, admin_emails, notifier).redeem(caller, payload.code)
    return VoucherRedeemResponse(
        message=result.message,
        tier=result.tier,
        duration_months=result.duration_months,
        subscription_end_date=result.subscription_end_date,
    )
