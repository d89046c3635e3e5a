from typing import Optional

from pydantic import BaseModel


class WebhookResponse(BaseModel):
    status: str  # processed, ignored, duplicate
    processed: bool
    provider: str
    event_id: str
    event_type: Optional[str] = None
