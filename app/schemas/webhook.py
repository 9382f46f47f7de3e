from pydantic import BaseModel


class WebhookAck(BaseModel):
    received: bool
    event_id: str
    event_type: str
    status: str
    duplicate: bool = False
