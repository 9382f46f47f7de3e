from collections.abc import Iterator

from fastapi import Depends, Header, Request
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from app.config import admin_email_set, settings
from app.db import SessionLocal
from app.errors import Forbidden, NotAuthenticated
from app.models.account import Account
from app.services.identity import CallerIdentity, IdentityResolver
from app.services.notifications import Notifier, notifier
from app.services.payment_gateway import StripeGateway, stripe_gateway

# Identity provider claim -> account profile field
_PROFILE_CLAIMS = {
    "name": "name",
    "given_name": "first_name",
    "family_name": "last_name",
    "picture": "image_url",
}


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_admin_emails() -> frozenset[str]:
    return admin_email_set(settings)


def get_gateway() -> StripeGateway:
    return stripe_gateway


def get_notifier() -> Notifier:
    return notifier


def _extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


def decode_identity_token(token: str) -> dict:
    if not settings.identity_jwt_secret:
        raise NotAuthenticated("Identity verification is not configured")
    options = {"verify_aud": bool(settings.identity_jwt_audience)}
    try:
        return jwt.decode(
            token,
            settings.identity_jwt_secret,
            algorithms=[settings.identity_jwt_algorithm],
            audience=settings.identity_jwt_audience,
            options=options,
        )
    except JWTError as exc:
        raise NotAuthenticated("Invalid token") from exc


def caller_from_claims(claims: dict) -> CallerIdentity:
    subject = claims.get("sub")
    if not subject:
        raise NotAuthenticated("Token has no subject")
    profile = {
        field: str(claims[claim]) for claim, field in _PROFILE_CLAIMS.items() if claims.get(claim)
    }
    return CallerIdentity(
        external_id=str(subject),
        email=str(claims.get("email") or ""),
        profile=profile,
    )


def require_caller(
    request: Request,
    authorization: str | None = Header(default=None),
) -> CallerIdentity:
    token = _extract_bearer_token(authorization)
    if not token:
        raise NotAuthenticated()
    caller = caller_from_claims(decode_identity_token(token))
    request.state.actor_id = caller.external_id
    return caller


def get_resolver(
    db: Session = Depends(get_db),
    admin_emails: frozenset[str] = Depends(get_admin_emails),
) -> IdentityResolver:
    return IdentityResolver(db, admin_emails)


def require_account(
    caller: CallerIdentity = Depends(require_caller),
    resolver: IdentityResolver = Depends(get_resolver),
) -> Account:
    return resolver.resolve_caller(caller)


def require_admin(
    account: Account = Depends(require_account),
    resolver: IdentityResolver = Depends(get_resolver),
) -> Account:
    if not resolver.is_admin(account):
        raise Forbidden()
    return account
