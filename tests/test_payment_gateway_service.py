"""Unit tests for the Stripe gateway service."""

import hashlib
import hmac
from collections.abc import Callable
from typing import Any
from unittest.mock import MagicMock, patch

import httpx
import pytest

from app.services import payment_gateway

SIGNED_AT = 1_760_000_000


@pytest.fixture()
def configured_gateway() -> payment_gateway.StripeGateway:
    return payment_gateway.StripeGateway(
        secret_key="sk_test_abc123",
        webhook_secret="whsec_abc",
        api_base="https://stripe.test/v1/",
        tolerance_seconds=300,
        timeout=3,
    )


@pytest.fixture()
def unconfigured_gateway() -> payment_gateway.StripeGateway:
    return payment_gateway.StripeGateway(secret_key="", webhook_secret="")


@pytest.fixture()
def webhook_payload() -> bytes:
    return b'{"id":"evt_123","type":"invoice.payment_failed","data":{"object":{}}}'


@pytest.fixture()
def response_factory() -> Callable[[dict[str, Any], int], MagicMock]:
    def _build(payload: dict[str, Any], status_code: int = 200) -> MagicMock:
        response = MagicMock()
        response.status_code = status_code
        response.json.return_value = payload
        return response

    return _build


@pytest.fixture()
def mocked_http_client() -> tuple[MagicMock, MagicMock]:
    with patch("app.services.payment_gateway.httpx.Client") as mock_client_cls:
        mock_client = MagicMock(name="mock_httpx_client")
        mock_client_cls.return_value.__enter__.return_value = mock_client
        yield mock_client_cls, mock_client


def _header(secret: str, payload: bytes, timestamp: int = SIGNED_AT) -> str:
    digest = hmac.new(
        secret.encode("utf-8"), f"{timestamp}.".encode() + payload, hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={digest}"


def test_is_configured_returns_true_when_secret_key_present(configured_gateway):
    assert configured_gateway.is_configured() is True


def test_is_configured_returns_false_when_secret_key_missing(unconfigured_gateway):
    assert unconfigured_gateway.is_configured() is False


def test_get_raises_when_not_configured(unconfigured_gateway):
    with pytest.raises(RuntimeError, match="not configured"):
        unconfigured_gateway.list_customers_by_email("someone@example.com")


def test_list_customers_by_email_sends_query(
    configured_gateway, mocked_http_client, response_factory
):
    mock_client_cls, mock_client = mocked_http_client
    mock_client.get.return_value = response_factory({"data": [{"id": "cus_1"}]})

    customers = configured_gateway.list_customers_by_email("buyer@example.com")

    assert customers == [{"id": "cus_1"}]
    mock_client_cls.assert_called_once_with(timeout=3)
    mock_client.get.assert_called_once_with(
        "https://stripe.test/v1/customers",
        params={"email": "buyer@example.com", "limit": 1},
        headers={"Authorization": "Bearer sk_test_abc123"},
    )


def test_list_subscriptions_by_customer(configured_gateway, mocked_http_client, response_factory):
    _, mock_client = mocked_http_client
    mock_client.get.return_value = response_factory({"data": [{"id": "sub_1"}]})

    subscriptions = configured_gateway.list_subscriptions_by_customer("cus_1")

    assert subscriptions == [{"id": "sub_1"}]
    assert mock_client.get.call_args.kwargs["params"] == {
        "customer": "cus_1",
        "status": "all",
        "limit": 10,
    }


def test_retrieve_subscription(configured_gateway, mocked_http_client, response_factory):
    _, mock_client = mocked_http_client
    mock_client.get.return_value = response_factory({"id": "sub_9", "status": "active"})

    subscription = configured_gateway.retrieve_subscription("sub_9")

    assert subscription["status"] == "active"
    assert mock_client.get.call_args.args[0] == "https://stripe.test/v1/subscriptions/sub_9"


def test_http_error_propagates(configured_gateway, mocked_http_client, response_factory):
    _, mock_client = mocked_http_client
    response = response_factory({}, 500)
    response.raise_for_status.side_effect = httpx.HTTPStatusError(
        "server error", request=MagicMock(), response=MagicMock()
    )
    mock_client.get.return_value = response

    with pytest.raises(httpx.HTTPStatusError):
        configured_gateway.list_customers_by_email("buyer@example.com")


class TestVerifySignature:
    def test_valid_signature(self, configured_gateway, webhook_payload):
        header = _header("whsec_abc", webhook_payload)
        assert configured_gateway.verify_signature(webhook_payload, header, now=SIGNED_AT + 5)

    def test_any_v1_signature_may_match(self, configured_gateway, webhook_payload):
        valid = _header("whsec_abc", webhook_payload).split(",")[1]
        header = f"t={SIGNED_AT},v1=stale,{valid}"
        assert configured_gateway.verify_signature(webhook_payload, header, now=SIGNED_AT)

    def test_tampered_payload(self, configured_gateway, webhook_payload):
        header = _header("whsec_abc", webhook_payload)
        assert not configured_gateway.verify_signature(
            webhook_payload + b" ", header, now=SIGNED_AT
        )

    def test_wrong_secret(self, configured_gateway, webhook_payload):
        header = _header("whsec_other", webhook_payload)
        assert not configured_gateway.verify_signature(webhook_payload, header, now=SIGNED_AT)

    def test_timestamp_outside_tolerance(self, configured_gateway, webhook_payload):
        header = _header("whsec_abc", webhook_payload)
        assert not configured_gateway.verify_signature(
            webhook_payload, header, now=SIGNED_AT + 301
        )

    @pytest.mark.parametrize("header", [None, "", "v1=abc", "t=abc,v1=abc", "t=123"])
    def test_malformed_header(self, configured_gateway, webhook_payload, header):
        assert not configured_gateway.verify_signature(webhook_payload, header, now=SIGNED_AT)

    def test_missing_webhook_secret(self, unconfigured_gateway, webhook_payload):
        header = _header("", webhook_payload)
        assert not unconfigured_gateway.verify_signature(webhook_payload, header, now=SIGNED_AT)

    def test_compute_signature_matches_hmac(self, configured_gateway, webhook_payload):
        expected = _header("whsec_abc", webhook_payload).split("v1=")[1]
        assert configured_gateway.compute_signature(webhook_payload, SIGNED_AT) == expected
