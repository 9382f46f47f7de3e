"""Admin routes: access grants, account lookup, subscription sync and vouchers."""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.api.deps import (
    get_admin_emails,
    get_db,
    get_gateway,
    get_notifier,
    get_resolver,
    require_account,
    require_admin,
)
from app.models.account import Account
from app.schemas.account import AccessDecisionRead, AccountRead, MeResponse
from app.schemas.admin import (
    GrantLogRead,
    GrantRequest,
    GrantResponse,
    SubscriptionSyncDetail,
    SubscriptionSyncResponse,
)
from app.schemas.common import ListResponse
from app.schemas.voucher import VoucherCreate, VoucherRead, VoucherUpdate
from app.services.access import has_access
from app.services.access_sync import SubscriptionBackfill
from app.services.admin_grant import AdminGrantService
from app.services.identity import IdentityResolver
from app.services.notifications import Notifier
from app.services.payment_gateway import StripeGateway
from app.services.response import list_response
from app.services.voucher import VoucherService

router = APIRouter(prefix="/admin", tags=["admin"])


# ── Grants ───────────────────────────────────────────────


@router.post("/grants", response_model=GrantResponse)
def grant_access(
    payload: GrantRequest,
    account: Account = Depends(require_account),
    resolver: IdentityResolver = Depends(get_resolver),
    db: Session = Depends(get_db),
    admin_emails: frozenset[str] = Depends(get_admin_emails),
    notifier: Notifier = Depends(get_notifier),
):
    service = AdminGrantService(db, admin_emails, notifier)
    result = service.grant(
        resolver.is_admin(account),
        payload.email,
        payload.duration,
        admin_id=str(account.id),
        admin_email=account.email,
    )
    return GrantResponse(
        success=result.success,
        message=result.message,
        target_email=result.target_email,
        duration=result.duration,
        account_id=result.account_id,
        has_linked_identity=result.has_linked_identity,
        created_placeholder=result.created_placeholder,
        subscription_end_date=result.subscription_end_date,
        warning=result.warning,
    )


@router.get("/grants", response_model=ListResponse[GrantLogRead])
def list_grants(
    email: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    _: Account = Depends(require_admin),
    db: Session = Depends(get_db),
):
    items, total = AdminGrantService(db).list_logs(email, limit=limit, offset=offset)
    return list_response(items, limit, offset, total=total)


@router.get("/accounts/lookup", response_model=MeResponse)
def lookup_account(
    email: str = Query(min_length=3),
    _: Account = Depends(require_admin),
    resolver: IdentityResolver = Depends(get_resolver),
    db: Session = Depends(get_db),
):
    target = AdminGrantService(db).lookup(email)
    return MeResponse(
        account=AccountRead.model_validate(target),
        access=AccessDecisionRead(**has_access(target).as_dict()),
        is_admin=resolver.is_admin(target),
    )


# ── Subscriptions ────────────────────────────────────────


@router.post("/subscriptions/sync", response_model=SubscriptionSyncResponse)
def sync_subscriptions(
    admin: Account = Depends(require_admin),
    gateway: StripeGateway = Depends(get_gateway),
    db: Session = Depends(get_db),
):
    result = SubscriptionBackfill(db, gateway).run(
        actor_id=str(admin.id), actor_email=admin.email
    )
    return SubscriptionSyncResponse(
        success=True,
        total=result.total,
        fixed=result.fixed,
        errors=result.errors,
        details=[SubscriptionSyncDetail.model_validate(detail) for detail in result.details],
    )


# ── Vouchers ─────────────────────────────────────────────


@router.post("/vouchers", response_model=VoucherRead, status_code=status.HTTP_201_CREATED)
def create_voucher(
    payload: VoucherCreate,
    admin: Account = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return VoucherService(db).create(payload, created_by=admin.id)


@router.get("/vouchers", response_model=ListResponse[VoucherRead])
def list_vouchers(
    is_active: bool | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    _: Account = Depends(require_admin),
    db: Session = Depends(get_db),
):
    items, total = VoucherService(db).list_vouchers(
        is_active=is_active, limit=limit, offset=offset
    )
    return list_response(items, limit, offset, total=total)


@router.get("/vouchers/{voucher_id}", response_model=VoucherRead)
def get_voucher(
    voucher_id: str,
    _: Account = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return VoucherService(db).get(voucher_id)


@router.patch("/vouchers/{voucher_id}", response_model=VoucherRead)
def update_voucher(
    voucher_id: str,
    payload: VoucherUpdate,
    admin: Account = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return VoucherService(db).update(voucher_id, payload, actor_id=str(admin.id))


@router.delete("/vouchers/{voucher_id}", response_model=VoucherRead)
def deactivate_voucher(
    voucher_id: str,
    admin: Account = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return VoucherService(db).deactivate(voucher_id, actor_id=str(admin.id))
