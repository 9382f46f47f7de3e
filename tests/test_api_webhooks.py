import json
import time

from sqlalchemy import select

from app.models.account import Account, SubscriptionStatus
from tests.conftest import make_account


def _post_event(client, gateway, event_type, data, event_id="evt_api_1", signature=None):
    payload = json.dumps({"id": event_id, "type": event_type, "data": {"object": data}}).encode()
    if signature is None:
        timestamp = int(time.time())
        signature = f"t={timestamp},v1={gateway.compute_signature(payload, timestamp)}"
    return client.post(
        "/webhooks/stripe",
        content=payload,
        headers={"Stripe-Signature": signature, "Content-Type": "application/json"},
    )


def test_invalid_signature_is_400(client, gateway):
    response = _post_event(
        client, gateway, "checkout.completed", {}, signature="t=1,v1=bad"
    )
    assert response.status_code == 400
    assert response.json()["code"] == "invalid_signature"


def test_missing_signature_is_400(client):
    response = client.post("/webhooks/stripe", content=b"{}")
    assert response.status_code == 400


def test_checkout_grants_access(client, gateway, db_session, recording_notifier):
    make_account(db_session, email="buyer@example.com", external_id="user_buyer")

    response = _post_event(
        client,
        gateway,
        "checkout.session.completed",
        {
            "customer": "cus_api",
            "subscription": "sub_api",
            "client_reference_id": "user_buyer",
            "metadata": {"plan": "monthly"},
        },
    )

    assert response.status_code == 200
    assert response.json() == {
        "received": True,
        "event_id": "evt_api_1",
        "event_type": "checkout.session.completed",
        "status": "processed",
        "duplicate": False,
    }
    account = db_session.scalar(select(Account).where(Account.email == "buyer@example.com"))
    assert account.subscription_status == SubscriptionStatus.active
    assert account.payment_customer_ref == "cus_api"
    assert recording_notifier.kinds() == ["welcome_member"]


def test_redelivery_is_acknowledged_as_duplicate(client, gateway, db_session):
    make_account(db_session, payment_customer_ref="cus_dup")

    _post_event(client, gateway, "invoice.payment_failed", {"customer": "cus_dup"})
    response = _post_event(client, gateway, "invoice.payment_failed", {"customer": "cus_dup"})

    assert response.status_code == 200
    assert response.json()["duplicate"] is True


def test_unhandled_event_type_is_acknowledged(client, gateway):
    response = _post_event(client, gateway, "charge.refunded", {"id": "ch_1"})
    assert response.status_code == 200
    assert response.json()["status"] == "ignored"


def test_versioned_path(client, gateway, db_session):
    make_account(
        db_session, payment_customer_ref="cus_v1", subscription_status=SubscriptionStatus.active
    )
    payload = json.dumps(
        {"id": "evt_v1", "type": "customer.subscription.deleted", "data": {"object": {"customer": "cus_v1"}}}
    ).encode()
    timestamp = int(time.time())

    response = client.post(
        "/api/v1/webhooks/stripe",
        content=payload,
        headers={"Stripe-Signature": f"t={timestamp},v1={gateway.compute_signature(payload, timestamp)}"},
    )

    assert response.status_code == 200
    account = db_session.scalar(select(Account).where(Account.payment_customer_ref == "cus_v1"))
    assert account.subscription_status == SubscriptionStatus.canceled
