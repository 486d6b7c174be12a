"""
Payment providers: order creation, signature verification and payload parsing.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from portal.config.settings import Settings
from portal.v1.core.exceptions import MalformedPayloadError, PaymentProviderError
from portal.v1.core.registries import WebhookProviderRegistry, webhook_provider_registry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParsedEvent:
    """Provider-neutral view of a webhook payload."""

    event_id: str
    event_type: str
    order_id: str | None = None
    payment_id: str | None = None
    amount: int | None = None
    currency: str | None = None

    @property
    def entity_id(self) -> str | None:
        return self.payment_id or self.order_id


@dataclass(frozen=True)
class ProviderOrder:
    """An order created with the payment provider, ready for its checkout widget."""

    order_id: str
    amount: int
    currency: str
    key_id: str


class RazorpayProvider:
    """
    Razorpay: orders through the REST API, webhooks signed with an
    HMAC-SHA256 hex digest of the raw body.
    """

    name = "razorpay"
    signature_header = "x-razorpay-signature"

    def __init__(
        self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None
    ):
        self.settings = settings
        self.transport = transport

    async def create_order(
        self, amount: int, currency: str, receipt: str, notes: dict[str, str]
    ) -> ProviderOrder:
        """Create an order through the Orders API; checkout needs its id."""
        key_id = self.settings.razorpay_key_id
        key_secret = self.settings.razorpay_key_secret
        if not key_id or not key_secret:
            raise PaymentProviderError("Razorpay API keys are not configured")

        payload = {"amount": amount, "currency": currency, "receipt": receipt, "notes": notes}
        try:
            async with httpx.AsyncClient(
                base_url=self.settings.razorpay_api_url,
                auth=(key_id, key_secret),
                timeout=self.settings.payment_timeout_s,
                transport=self.transport,
            ) as client:
                response = await client.post("/orders", json=payload)
                response.raise_for_status()
                order = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "Razorpay order creation rejected",
                extra={"status_code": e.response.status_code, "receipt": receipt},
            )
            raise PaymentProviderError(
                "Payment provider rejected the order",
                details={"status_code": e.response.status_code},
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(
                "Razorpay order creation failed",
                extra={"error": str(e), "receipt": receipt},
            )
            raise PaymentProviderError("Payment provider unavailable") from e

        if not isinstance(order, dict) or not order.get("id"):
            raise PaymentProviderError("Payment provider returned no order id")

        return ProviderOrder(
            order_id=order["id"],
            amount=int(order.get("amount", amount)),
            currency=order.get("currency", currency),
            key_id=key_id,
        )

    def verify(self, raw_body: bytes, signature: str | None) -> bool:
        secret = self.settings.razorpay_webhook_secret
        if not signature or not raw_body or not secret:
            return False

        expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(signature.encode(), expected.encode())

    def parse(self, payload: dict[str, Any]) -> ParsedEvent:
        event_id = payload.get("event_id") or payload.get("id")
        if not event_id:
            raise MalformedPayloadError("Webhook payload has no event id")

        body = payload.get("payload") or {}
        payment = (body.get("payment") or {}).get("entity") or {}
        order = (body.get("order") or {}).get("entity") or {}
        refund = (body.get("refund") or {}).get("entity") or {}

        return ParsedEvent(
            event_id=str(event_id),
            event_type=payload.get("event") or "unknown",
            order_id=payment.get("order_id") or order.get("id"),
            payment_id=payment.get("id") or refund.get("payment_id"),
            amount=payment.get("amount") or order.get("amount"),
            currency=payment.get("currency") or order.get("currency"),
        )


def register_webhook_providers(
    app_settings: Settings, registry: WebhookProviderRegistry = webhook_provider_registry
) -> None:
    """Register the shipped payment providers."""
    provider = RazorpayProvider(app_settings)
    if registry.has(provider.name) and registry.is_frozen():
        return
    registry.register(provider.name, provider)
