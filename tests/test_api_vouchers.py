from tests.conftest import bearer, make_voucher


def test_validate_needs_no_auth(client, voucher):
    response = client.post("/vouchers/validate", json={"code": "ramadan2026"})
    assert response.status_code == 200
    body = response.json()
    assert body["valid"] is True
    assert body["code"] == "RAMADAN2026"
    assert body["tier"] == "pro"
    assert body["duration_months"] == 1


def test_validate_unknown_code(client):
    response = client.post("/vouchers/validate", json={"code": "NOPE"})
    assert response.status_code == 400
    assert response.json()["code"] == "invalid_code"


def test_validate_empty_code_is_validation_error(client):
    response = client.post("/vouchers/validate", json={"code": ""})
    assert response.status_code == 422
    assert response.json()["code"] == "validation_error"


def test_redeem_requires_auth(client, voucher):
    response = client.post("/vouchers/redeem", json={"code": "RAMADAN2026"})
    assert response.status_code == 401


def test_redeem_grants_access(client, voucher, user_headers, recording_notifier):
    response = client.post("/vouchers/redeem", json={"code": "RAMADAN2026"}, headers=user_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["tier"] == "pro"
    assert body["duration_months"] == 1
    assert body["subscription_end_date"]
    me = client.get("/me", headers=user_headers).json()
    assert me["access"]["allowed"] is True
    assert me["account"]["has_direct_access"] is False
    assert recording_notifier.kinds() == ["voucher_redeemed"]


def test_second_redeem_conflicts(client, voucher, user_headers):
    client.post("/vouchers/redeem", json={"code": "RAMADAN2026"}, headers=user_headers)

    response = client.post("/vouchers/redeem", json={"code": "RAMADAN2026"}, headers=user_headers)

    assert response.status_code == 409
    assert response.json()["code"] == "already_redeemed"


def test_last_slot_goes_to_first_caller(client, db_session):
    make_voucher(db_session, max_redemptions=100, redemption_count=99)

    first = client.post(
        "/vouchers/redeem", json={"code": "RAMADAN2026"}, headers=bearer("user_a", "a@example.com")
    )
    second = client.post(
        "/api/v1/vouchers/redeem",
        json={"code": "RAMADAN2026"},
        headers=bearer("user_b", "b@example.com"),
    )

    assert first.status_code == 200
    assert second.status_code == 400
    assert second.json()["code"] == "voucher_exhausted"


def test_inactive_voucher(client, db_session, user_headers):
    make_voucher(db_session, code="OLDPROMO", is_active=False)
    response = client.post("/vouchers/redeem", json={"code": "oldpromo"}, headers=user_headers)
    assert response.status_code == 400
    assert response.json()["code"] == "voucher_inactive"
