import logging
import os
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape

from app.config import settings

logger = logging.getLogger(__name__)


def _env_value(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value


def _env_int(name: str, default: int) -> int:
    raw = _env_value(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = _env_value(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


def _get_smtp_config() -> dict:
    return {
        "host": _env_value("SMTP_HOST") or "localhost",
        "port": _env_int("SMTP_PORT", 587),
        "username": _env_value("SMTP_USERNAME"),
        "password": _env_value("SMTP_PASSWORD"),
        "use_tls": _env_bool("SMTP_USE_TLS", True),
        "use_ssl": _env_bool("SMTP_USE_SSL", False),
        "from_email": _env_value("SMTP_FROM_EMAIL") or "noreply@example.com",
        "from_name": _env_value("SMTP_FROM_NAME") or settings.brand_name,
    }


def send_email(
    to_email: str,
    subject: str,
    body_html: str,
    body_text: str | None = None,
) -> bool:
    config = _get_smtp_config()
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = f"{config['from_name']} <{config['from_email']}>"
    msg["To"] = to_email

    if body_text:
        msg.attach(MIMEText(body_text, "plain"))
    msg.attach(MIMEText(body_html, "html"))

    try:
        if config["use_ssl"]:
            server = smtplib.SMTP_SSL(config["host"], config["port"], timeout=10)
        else:
            server = smtplib.SMTP(config["host"], config["port"], timeout=10)

        if config["use_tls"] and not config["use_ssl"]:
            server.starttls()

        if config["username"] and config["password"]:
            server.login(config["username"], config["password"])

        server.sendmail(config["from_email"], to_email, msg.as_string())
        server.quit()

        logger.info("Email sent to %s", to_email)
        return True
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("Failed to send email to %s: %s", to_email, exc)
        return False


def _dashboard_link() -> str:
    return escape(f"{settings.app_url.rstrip('/')}/dashboard", quote=True)


def render_access_granted(name: str | None, duration_label: str) -> tuple[str, str, str]:
    who = escape(name or "there")
    label = escape(duration_label)
    link = _dashboard_link()
    subject = f"You now have {settings.brand_name} Pro access"
    body_html = (
        f"<p>Hi {who},</p>"
        f"<p>You have been granted {label} of full access.</p>"
        f'<p><a href="{link}">Start learning</a></p>'
    )
    body_text = f"Hi {who}, you have been granted {label} of full access: {link}"
    return subject, body_html, body_text


def render_access_revoked(name: str | None) -> tuple[str, str, str]:
    who = escape(name or "there")
    subject = f"Your {settings.brand_name} access has changed"
    body_html = (
        f"<p>Hi {who},</p>"
        "<p>Your granted access has ended. You can subscribe at any time to continue.</p>"
    )
    body_text = f"Hi {who}, your granted access has ended."
    return subject, body_html, body_text


def render_welcome_member(name: str | None, plan: str | None) -> tuple[str, str, str]:
    who = escape(name or "there")
    plan_label = escape(plan or "membership")
    link = _dashboard_link()
    subject = f"Welcome to {settings.brand_name}"
    body_html = (
        f"<p>Hi {who},</p>"
        f"<p>Thank you for joining with the {plan_label} plan.</p>"
        f'<p><a href="{link}">Open your dashboard</a></p>'
    )
    body_text = f"Hi {who}, thank you for joining with the {plan_label} plan: {link}"
    return subject, body_html, body_text


def render_voucher_redeemed(
    name: str | None, tier: str, months: int
) -> tuple[str, str, str]:
    who = escape(name or "there")
    tier_label = escape(tier)
    subject = "Your voucher has been applied"
    body_html = (
        f"<p>Hi {who},</p>"
        f"<p>Your voucher unlocked {months} month(s) of {tier_label} access.</p>"
    )
    body_text = f"Hi {who}, your voucher unlocked {months} month(s) of {tier_label} access."
    return subject, body_html, body_text
