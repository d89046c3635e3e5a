"""
Billing webhook endpoints.

Provides:
- POST /billing/webhooks/{provider} - Ingest a signed provider notification
"""

from typing import Any

import structlog
from fastapi import APIRouter, BackgroundTasks, Request

from app.modules.billing.api.v1.webhook_models import WebhookResponse
from app.modules.billing.domain.billing.processor import WebhookProcessor
from app.shared.core.exceptions import UnknownProviderError

logger = structlog.get_logger()
router = APIRouter(tags=["Billing Webhooks"])


def get_webhook_processor(request: Request, provider: str) -> WebhookProcessor:
    processors: dict[str, WebhookProcessor] = getattr(
        request.app.state, "webhook_processors", {}
    )
    processor = processors.get(provider.strip().lower())
    if processor is None:
        raise UnknownProviderError(provider)
    return processor


@router.post("/webhooks/{provider}", response_model=WebhookResponse)
async def receive_webhook(
    provider: str, request: Request, background_tasks: BackgroundTasks
) -> Any:
    """
    Verify and apply one webhook delivery.

    The signature is checked over the raw body before anything is decoded.
    2xx means the delivery committed or was already processed; 4xx means it
    is forged or structurally broken; 5xx means it rolled back and should be
    redelivered. Notifications run after the response is sent.
    """
    processor = get_webhook_processor(request, provider)
    payload = await request.body()
    result = await processor.handle(payload, request.headers)
    if result.notifications:
        background_tasks.add_task(processor.publish, result)
    return result.to_response()
