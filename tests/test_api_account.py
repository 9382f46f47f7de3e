from datetime import UTC, datetime, timedelta

import httpx

from app.models.account import SubscriptionStatus
from tests.conftest import bearer, create_identity_token, make_account


def test_me_requires_token(client):
    response = client.get("/me")
    assert response.status_code == 401
    assert response.json()["code"] == "not_authenticated"


def test_me_rejects_invalid_token(client):
    response = client.get("/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


def test_me_rejects_expired_token(client):
    token = create_identity_token(
        "user_old", "old@example.com", expires_in=timedelta(minutes=-5)
    )
    response = client.get("/me", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_me_creates_account_on_first_request(client, user_headers):
    response = client.get("/me", headers=user_headers)
    assert response.status_code == 200
    body = response.json()
    assert body["account"]["email"] == "member@example.com"
    assert body["account"]["name"] == "Member"
    assert body["account"]["has_linked_identity"] is True
    assert body["account"]["subscription_status"] == "inactive"
    assert body["access"]["allowed"] is False
    assert body["access"]["reason"] == "inactive"
    assert body["is_admin"] is False


def test_me_is_idempotent(client, user_headers):
    first = client.get("/me", headers=user_headers).json()
    second = client.get("/api/v1/me", headers=user_headers).json()
    assert first["account"]["id"] == second["account"]["id"]


def test_allowlisted_caller_is_admin(client, admin_headers):
    body = client.get("/me", headers=admin_headers).json()
    assert body["is_admin"] is True
    assert body["account"]["role"] == "admin"


def test_access_for_direct_grant(client, db_session):
    make_account(
        db_session,
        email="granted@example.com",
        external_id="user_granted",
        has_direct_access=True,
        subscription_plan="lifetime",
    )

    response = client.get("/me/access", headers=bearer("user_granted", "granted@example.com"))

    assert response.status_code == 200
    assert response.json()["allowed"] is True
    assert response.json()["rule"] == "direct_access"


def test_access_for_trial_reports_days_left(client, db_session):
    make_account(
        db_session,
        email="trial@example.com",
        external_id="user_trial",
        subscription_status=SubscriptionStatus.trialing,
        trial_ends_at=datetime.now(UTC) + timedelta(days=4, hours=1),
    )

    body = client.get("/me/access", headers=bearer("user_trial", "trial@example.com")).json()

    assert body["allowed"] is True
    assert body["trial_days_left"] == 5


def test_access_falls_back_to_processor(client, gateway, monkeypatch):
    period_end = int((datetime.now(UTC) + timedelta(days=30)).timestamp())
    monkeypatch.setattr(gateway, "list_customers_by_email", lambda email: [{"id": "cus_lag"}])
    monkeypatch.setattr(
        gateway,
        "list_subscriptions_by_customer",
        lambda customer_id: [
            {"id": "sub_lag", "status": "active", "current_period_end": period_end}
        ],
    )
    headers = bearer("user_lag", "lag@example.com")

    body = client.get("/me/access", headers=headers).json()
    me = client.get("/me", headers=headers).json()

    assert body["allowed"] is True
    assert me["account"]["payment_customer_ref"] == "cus_lag"
    assert me["account"]["subscription_status"] == "active"


def test_access_survives_processor_outage(client, gateway, monkeypatch):
    def unreachable(email):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(gateway, "list_customers_by_email", unreachable)

    response = client.get("/me/access", headers=bearer("user_down", "down@example.com"))

    assert response.status_code == 200
    assert response.json()["allowed"] is False


def test_start_trial(client, user_headers):
    response = client.post("/me/trial", json={"plan": "basic"}, headers=user_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["tier"] == "basic"
    assert body["days_left"] == 7
    me = client.get("/me", headers=user_headers).json()
    assert me["access"]["reason"] == "trialing"
    assert me["account"]["has_used_trial"] is True
    assert me["account"]["subscription_tier"] == "basic"


def test_trial_starts_once(client, user_headers):
    client.post("/me/trial", json={"tier": "pro"}, headers=user_headers)

    response = client.post("/me/trial", json={"tier": "pro"}, headers=user_headers)

    assert response.status_code == 400
    assert response.json()["code"] == "trial_already_used"


def test_trial_requires_token(client):
    response = client.post("/me/trial", json={"tier": "pro"})
    assert response.status_code == 401


def test_trial_rejects_unknown_tier(client, user_headers):
    response = client.post("/me/trial", json={"tier": "gold"}, headers=user_headers)
    assert response.status_code == 422
