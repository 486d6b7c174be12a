"""
Payment webhook endpoint.

Answers with plain status codes the provider understands: 2xx stops
redelivery, anything else makes it try again.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from portal.config.settings import Settings, SettingsDep
from portal.infra.database import get_session
from portal.v1.core.registries import webhook_provider_registry
from portal.v1.webhooks.ingestor import WebhookIngestor

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def get_ingestor(settings: Settings = SettingsDep) -> WebhookIngestor:
    return WebhookIngestor(settings)


@router.post("/{provider}")
async def receive_webhook(
    provider: str,
    request: Request,
    session: AsyncSession = Depends(get_session),
    ingestor: WebhookIngestor = Depends(get_ingestor),
) -> JSONResponse:
    """Receive a payment provider webhook."""
    raw_body = await request.body()

    signature = None
    if webhook_provider_registry.has(provider):
        header = webhook_provider_registry.get(provider).signature_header
        signature = request.headers.get(header)

    outcome = await ingestor.ingest(session, provider, raw_body, signature)
    return JSONResponse(status_code=outcome.http_status, content=outcome.body())
