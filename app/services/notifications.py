"""Fire-and-forget account notifications.

``notify`` never raises: delivery failures are logged and swallowed so a
grant, redemption or webhook never fails because an email could not be sent.
"""
from __future__ import annotations

import enum
import logging
from collections.abc import Callable

from app.models.account import Account
from app.services import email as email_service

logger = logging.getLogger(__name__)


class NotificationKind(str, enum.Enum):
    access_granted = "access_granted"
    access_revoked = "access_revoked"
    welcome_member = "welcome_member"
    voucher_redeemed = "voucher_redeemed"


DURATION_LABELS = {
    "lifetime": "lifetime",
    "1_month": "1 month",
    "3_months": "3 months",
    "6_months": "6 months",
    "1_year": "1 year",
}


def _render(kind: NotificationKind, account: Account, context: dict) -> tuple[str, str, str]:
    name = account.first_name or account.name
    if kind == NotificationKind.access_granted:
        duration = str(context.get("duration", ""))
        return email_service.render_access_granted(
            name, DURATION_LABELS.get(duration, duration)
        )
    if kind == NotificationKind.access_revoked:
        return email_service.render_access_revoked(name)
    if kind == NotificationKind.welcome_member:
        return email_service.render_welcome_member(name, context.get("plan"))
    return email_service.render_voucher_redeemed(
        name, str(context.get("tier", "")), int(context.get("duration_months", 0))
    )


class Notifier:
    def __init__(self, sender: Callable[..., bool] | None = None) -> None:
        self._sender = sender

    def _send(self, *args: str) -> bool:
        sender = self._sender or email_service.send_email
        return sender(*args)

    def notify(
        self, kind: NotificationKind, account: Account, context: dict | None = None
    ) -> None:
        context = context or {}
        try:
            subject, body_html, body_text = _render(kind, account, context)
            delivered = self._send(account.email, subject, body_html, body_text)
        except Exception:
            logger.exception(
                "Notification %s failed for account %s",
                kind.value,
                account.id,
                extra={"account_id": str(account.id), "event": "notification_failed"},
            )
            return
        if not delivered:
            logger.warning(
                "Notification %s was not delivered to account %s",
                kind.value,
                account.id,
                extra={"account_id": str(account.id), "event": "notification_failed"},
            )


notifier = Notifier()
