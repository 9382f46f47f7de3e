"""Payment-processor webhook routes."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.api.deps import get_admin_emails, get_db, get_gateway, get_notifier
from app.schemas.webhook import WebhookAck
from app.services.billing_webhooks import WebhookIngestion
from app.services.notifications import Notifier
from app.services.payment_gateway import StripeGateway

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
    admin_emails: frozenset[str] = Depends(get_admin_emails),
    notifier: Notifier = Depends(get_notifier),
) -> dict:
    """Handle Stripe webhooks; no auth, signature verified."""
    body = await request.body()
    signature = request.headers.get("stripe-signature")
    ingestion = WebhookIngestion(db, gateway, admin_emails, notifier)
    return ingestion.ingest(body, signature)
