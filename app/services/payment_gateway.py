"""Stripe payment-processor boundary: webhook signatures and read-only queries."""

import hashlib
import hmac
import logging
import time
from typing import Any

import httpx

from app.config import settings

logger = logging.getLogger(__name__)


class StripeGateway:
    """Thin wrapper around the Stripe REST API."""

    def __init__(
        self,
        secret_key: str | None = None,
        webhook_secret: str | None = None,
        api_base: str | None = None,
        tolerance_seconds: int | None = None,
        timeout: float | None = None,
    ) -> None:
        self._secret_key = secret_key if secret_key is not None else settings.stripe_secret_key
        self._webhook_secret = (
            webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret
        )
        self._api_base = (api_base or settings.stripe_api_base).rstrip("/")
        self._tolerance = (
            tolerance_seconds
            if tolerance_seconds is not None
            else settings.stripe_webhook_tolerance_seconds
        )
        self._timeout = timeout if timeout is not None else settings.processor_timeout_seconds

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._secret_key}"}

    def is_configured(self) -> bool:
        return bool(self._secret_key)

    def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self.is_configured():
            raise RuntimeError("Stripe is not configured")
        with httpx.Client(timeout=self._timeout) as client:
            resp = client.get(
                f"{self._api_base}{path}",
                params=params,
                headers=self._headers(),
            )
        resp.raise_for_status()
        data: dict[str, Any] = resp.json()
        return data

    # ── Queries ──────────────────────────────────────────

    def list_customers_by_email(self, email: str, limit: int = 1) -> list[dict[str, Any]]:
        data = self._get("/customers", {"email": email, "limit": limit})
        result: list[dict[str, Any]] = data.get("data", [])
        return result

    def list_subscriptions_by_customer(
        self, customer_id: str, status: str = "all", limit: int = 10
    ) -> list[dict[str, Any]]:
        data = self._get(
            "/subscriptions",
            {"customer": customer_id, "status": status, "limit": limit},
        )
        result: list[dict[str, Any]] = data.get("data", [])
        return result

    def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        return self._get(f"/subscriptions/{subscription_id}")

    # ── Webhook ──────────────────────────────────────────

    def verify_signature(
        self, payload: bytes, signature_header: str | None, now: float | None = None
    ) -> bool:
        """Validate a ``Stripe-Signature`` header (``t=...,v1=...``)."""
        if not self._webhook_secret or not signature_header:
            return False
        timestamp: str | None = None
        signatures: list[str] = []
        for part in signature_header.split(","):
            key, _, value = part.strip().partition("=")
            if key == "t":
                timestamp = value
            elif key == "v1":
                signatures.append(value)
        if not timestamp or not signatures:
            return False
        try:
            signed_at = int(timestamp)
        except ValueError:
            return False
        current = time.time() if now is None else now
        if self._tolerance and abs(current - signed_at) > self._tolerance:
            logger.warning("Stripe webhook timestamp outside tolerance: %s", timestamp)
            return False
        expected = self.compute_signature(payload, signed_at)
        return any(hmac.compare_digest(expected, candidate) for candidate in signatures)

    def compute_signature(self, payload: bytes, timestamp: int) -> str:
        signed_payload = f"{timestamp}.".encode() + payload
        return hmac.new(
            (self._webhook_secret or "").encode("utf-8"),
            signed_payload,
            hashlib.sha256,
        ).hexdigest()


stripe_gateway = StripeGateway()
