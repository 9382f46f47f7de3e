"""Caller account and access-decision routes."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.deps import get_db, get_gateway, get_resolver, require_account
from app.models.account import Account
from app.schemas.account import (
    AccessDecisionRead,
    AccountRead,
    MeResponse,
    TrialStartRequest,
    TrialStartResponse,
)
from app.services.access import has_access
from app.services.access_sync import AccessSync
from app.services.identity import IdentityResolver
from app.services.payment_gateway import StripeGateway
from app.services.trial import TrialService

router = APIRouter(prefix="/me", tags=["account"])


@router.get("", response_model=MeResponse)
def read_me(
    account: Account = Depends(require_account),
    resolver: IdentityResolver = Depends(get_resolver),
) -> MeResponse:
    return MeResponse(
        account=AccountRead.model_validate(account),
        access=AccessDecisionRead(**has_access(account).as_dict()),
        is_admin=resolver.is_admin(account),
    )


@router.get("/access", response_model=AccessDecisionRead)
def read_access(
    account: Account = Depends(require_account),
    gateway: StripeGateway = Depends(get_gateway),
    db: Session = Depends(get_db),
) -> AccessDecisionRead:
    """Access-gated entry point; may query the processor when access is denied."""
    decision = AccessSync(db, gateway).decide(account)
    return AccessDecisionRead(**decision.as_dict())


@router.post("/trial", response_model=TrialStartResponse)
def start_trial(
    payload: TrialStartRequest,
    account: Account = Depends(require_account),
    db: Session = Depends(get_db),
) -> TrialStartResponse:
    result = TrialService(db).start(account, payload.tier)
    return TrialStartResponse(
        success=True,
        message=result.message,
        tier=result.tier,
        started_at=result.started_at,
        ends_at=result.ends_at,
        days_left=result.days_left,
    )
