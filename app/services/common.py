"""Shared service utilities: UUID coercion, email and time normalization."""
from __future__ import annotations

import calendar
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.exc import IntegrityError


def coerce_uuid(value: Any) -> uuid.UUID | None:
    """Convert a string or UUID to UUID, or return None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def normalize_email(value: str | None) -> str:
    """Trim and lower-case an email; empty string when missing."""
    return (value or "").strip().lower()


def utcnow() -> datetime:
    return datetime.now(UTC)


def make_aware(dt: datetime | None) -> datetime | None:
    """Ensure datetime is timezone-aware (UTC). SQLite doesn't preserve tz info."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def add_months(base: datetime, months: int) -> datetime:
    """Calendar-month arithmetic, clamping to the last day of the target month."""
    month_index = base.month - 1 + months
    year = base.year + month_index // 12
    month = month_index % 12 + 1
    day = min(base.day, calendar.monthrange(year, month)[1])
    return base.replace(year=year, month=month, day=day)


def from_unix(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def is_unique_violation(error: IntegrityError, *constraints: str) -> bool:
    """Return True when an IntegrityError came from one of the named constraints.

    Postgres reports the constraint name; SQLite only reports the columns, so
    both forms are matched against the message.
    """
    original = getattr(error, "orig", None)
    diag = getattr(original, "diag", None)
    constraint_name = getattr(diag, "constraint_name", None)
    if constraint_name and constraint_name in constraints:
        return True
    message = str(original or error).lower()
    if "unique" not in message and "duplicate" not in message:
        return False
    if not constraints:
        return True
    return any(_constraint_matches(name, message) for name in constraints)


_CONSTRAINT_COLUMNS = {
    "uq_accounts_email": "accounts.email",
    "uq_account_identities_external_id": "account_identities.external_id",
    "uq_vouchers_code": "vouchers.code",
    "uq_voucher_redemptions_account_voucher": "voucher_redemptions.account_id",
    "uq_webhook_events_provider_event": "webhook_events.provider",
}


def _constraint_matches(name: str, message: str) -> bool:
    if name in message:
        return True
    column = _CONSTRAINT_COLUMNS.get(name)
    return bool(column and column in message)
