import os
import uuid
from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from jose import jwt

# Configure the app BEFORE any app imports
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["IDENTITY_JWT_SECRET"] = "test-identity-secret"
os.environ["IDENTITY_JWT_ALGORITHM"] = "HS256"
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["ADMIN_EMAILS"] = "owner@ayatbits.test"
os.environ["CHECKOUT_TRIAL_DAYS"] = "0"

from app.db import Base, engine  # noqa: E402
from app.models.account import (  # noqa: E402
    Account,
    AccountIdentity,
    AccountRole,
    SubscriptionStatus,
)
from app.models.voucher import Voucher, VoucherType  # noqa: E402
from app.services.payment_gateway import StripeGateway  # noqa: E402

ADMIN_EMAILS = frozenset({"owner@ayatbits.test"})
WEBHOOK_SECRET = "whsec_test"

# Create all tables
Base.metadata.create_all(engine)


@pytest.fixture(scope="session")
def test_engine():
    return engine


@pytest.fixture()
def db_session(test_engine):
    """Session bound to the shared in-memory connection (StaticPool)."""
    from app.db import SessionLocal

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def _clean_tables(test_engine):
    yield
    with test_engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


class RecordingNotifier:
    """Collects notifications instead of sending email."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict]] = []

    def notify(self, kind, account, context=None) -> None:
        self.sent.append((kind.value, account.email, dict(context or {})))

    def kinds(self) -> list[str]:
        return [kind for kind, _, _ in self.sent]


@pytest.fixture()
def recording_notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def gateway() -> StripeGateway:
    return StripeGateway(
        secret_key="sk_test_123",
        webhook_secret=WEBHOOK_SECRET,
        api_base="https://stripe.test/v1",
        tolerance_seconds=300,
        timeout=5,
    )


def _unique_email() -> str:
    return f"test-{uuid.uuid4().hex}@example.com"


def make_account(db_session, email: str | None = None, external_id: str | None = None, **fields):
    account = Account(email=(email or _unique_email()).lower(), **fields)
    db_session.add(account)
    db_session.flush()
    if external_id:
        db_session.add(AccountIdentity(account_id=account.id, external_id=external_id))
    db_session.commit()
    db_session.refresh(account)
    return account


@pytest.fixture()
def account(db_session):
    return make_account(db_session, external_id=f"user_{uuid.uuid4().hex[:12]}")


@pytest.fixture()
def admin_account(db_session):
    return make_account(
        db_session,
        email="admin@ayatbits.test",
        external_id="user_admin",
        role=AccountRole.admin,
    )


def make_voucher(db_session, code: str = "RAMADAN2026", **fields):
    values = {
        "type": VoucherType.ramadan,
        "tier": "pro",
        "duration_months": 1,
        "max_redemptions": 100,
        "redemption_count": 0,
        "expires_at": datetime.now(UTC) + timedelta(days=30),
        "is_active": True,
    }
    values.update(fields)
    voucher = Voucher(code=code, **values)
    db_session.add(voucher)
    db_session.commit()
    db_session.refresh(voucher)
    return voucher


@pytest.fixture()
def voucher(db_session):
    return make_voucher(db_session)


# ============ FastAPI Test Client Fixtures ============


@pytest.fixture()
def client(db_session, gateway, recording_notifier):
    """Create a test client with injected dependencies."""
    from app.api.deps import get_admin_emails, get_db, get_gateway, get_notifier
    from app.main import app

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: recording_notifier
    app.dependency_overrides[get_admin_emails] = lambda: ADMIN_EMAILS

    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def create_identity_token(
    subject: str,
    email: str,
    *,
    name: str | None = None,
    expires_in: timedelta = timedelta(minutes=15),
) -> str:
    now = datetime.now(UTC)
    payload = {
        "sub": subject,
        "email": email,
        "iat": int(now.timestamp()),
        "exp": int((now + expires_in).timestamp()),
    }
    if name:
        payload["name"] = name
    return jwt.encode(payload, os.environ["IDENTITY_JWT_SECRET"], algorithm="HS256")


def bearer(subject: str, email: str, **kwargs) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_identity_token(subject, email, **kwargs)}"}


@pytest.fixture()
def admin_headers() -> dict[str, str]:
    # Allowlisted email: promoted to admin on first resolve
    return bearer("user_owner", "owner@ayatbits.test", name="Owner")


@pytest.fixture()
def user_headers() -> dict[str, str]:
    return bearer("user_member", "member@example.com", name="Member")


__all__ = [
    "ADMIN_EMAILS",
    "WEBHOOK_SECRET",
    "RecordingNotifier",
    "SubscriptionStatus",
    "bearer",
    "make_account",
    "make_voucher",
]
