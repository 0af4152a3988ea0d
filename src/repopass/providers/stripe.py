"""Stripe payment provider adapter."""
from __future__ import annotations

import hashlib
import hmac
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

import httpx

from repopass.constants import Timeouts
from repopass.credentials import StripeCredentials
from repopass.exceptions import ConfigurationError
from repopass.models import (
    CheckoutMetadata,
    CreateProductResult,
    PaymentProviderType,
    PaymentResult,
    PriceDetails,
    ProductDetails,
    WebhookEvent,
    WebhookEventKind,
)
from repopass.providers.base import (
    PaymentProviderAdapter,
    header_value,
    parse_json_body,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"


def _epoch_to_datetime(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def parse_signature_header(signature: str) -> tuple[Optional[str], list[str]]:
    """Split ``t=timestamp,v1=sig,v1=sig2`` into the timestamp and v1 signatures."""
    timestamp = None
    signatures: list[str] = []
    for part in signature.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


def compute_signature(secret: str, timestamp: str, payload: bytes) -> str:
    signed_payload = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


class StripeProvider(PaymentProviderAdapter):
    """Stripe adapter. Amounts are sent in cents."""

    credentials_type = StripeCredentials
    default_api_base = "https://api.stripe.com/v1"

    def __init__(
        self,
        *,
        webhook_secret: Optional[str] = None,
        tolerance_seconds: int = Timeouts.STRIPE_SIGNATURE_TOLERANCE,
        clock: Callable[[], float] = time.time,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds
        self._clock = clock
        self.publishable_key: Optional[str] = None

    @property
    def provider_type(self) -> PaymentProviderType:
        return PaymentProviderType.STRIPE

    def _configure(self, credentials: StripeCredentials) -> None:
        self.publishable_key = credentials.publishable_key
        if credentials.webhook_secret:
            self.webhook_secret = credentials.webhook_secret

    def _build_client(self, credentials: StripeCredentials) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_base,
            auth=(credentials.secret_key, ""),
            timeout=Timeouts.PROVIDER_HTTP,
            transport=self._transport,
        )

    async def create_product(
        self,
        product: ProductDetails,
        price: PriceDetails,
    ) -> CreateProductResult:
        """Create a Stripe product and its price."""
        created = await self._request(
            "POST",
            "/products",
            data={
                "name": product.name,
                "description": product.description,
                "metadata[repository_id]": product.repository_id,
            },
        )
        price_id = await self._create_price(created["id"], price)
        return CreateProductResult(product_id=created["id"], price_id=price_id)

    async def _create_price(self, product_id: str, price: PriceDetails) -> str:
        data: dict[str, Any] = {
            "product": product_id,
            "unit_amount": price.amount_cents,
            "currency": price.currency,
        }
        if price.is_recurring:
            data["recurring[interval]"] = price.interval.value
            data["recurring[interval_count]"] = price.interval_count
        created = await self._request("POST", "/prices", data=data)
        return created["id"]

    async def update_product(self, product_id: str, product: ProductDetails) -> None:
        await self._request(
            "POST",
            f"/products/{product_id}",
            data={"name": product.name, "description": product.description},
        )

    async def update_price(
        self,
        product_id: str,
        price_id: str,
        price: PriceDetails,
    ) -> str:
        """Stripe prices are immutable: create a new one and archive the old."""
        new_price_id = await self._create_price(product_id, price)
        if price_id and price_id != new_price_id:
            await self._request("POST", f"/prices/{price_id}", data={"active": "false"})
        return new_price_id

    async def create_checkout_url(
        self,
        price_id: str,
        metadata: CheckoutMetadata,
        *,
        recurring: bool = False,
    ) -> str:
        data: dict[str, Any] = {
            "mode": "subscription" if recurring else "payment",
            "line_items[0][price]": price_id,
            "line_items[0][quantity]": 1,
            "success_url": f"{self.site_url}/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self.site_url}/products/{metadata.repository_id}",
        }
        if metadata.email:
            data["customer_email"] = metadata.email
        if metadata.purchase_id:
            data["client_reference_id"] = metadata.purchase_id
        for key, value in metadata.to_dict().items():
            data[f"metadata[{key}]"] = value
            if recurring:
                data[f"subscription_data[metadata][{key}]"] = value

        session = await self._request("POST", "/checkout/sessions", data=data)
        return session["url"]

    async def verify_webhook(self, payload: bytes, headers: Mapping[str, str]) -> bool:
        """Verify the Stripe-Signature header. Raises if no secret is configured."""
        if not self.webhook_secret:
            raise ConfigurationError("Stripe webhook secret not configured")

        signature = header_value(headers, SIGNATURE_HEADER)
        if not signature:
            logger.warning("Missing Stripe-Signature header")
            return False

        timestamp, signatures = parse_signature_header(signature)
        if not timestamp or not signatures:
            logger.warning("Missing timestamp or signature in Stripe-Signature header")
            return False

        try:
            age = abs(self._clock() - int(timestamp))
        except ValueError:
            return False
        if age > self.tolerance_seconds:
            logger.warning("Stripe-Signature timestamp outside tolerance (%ss)", int(age))
            return False

        expected = compute_signature(self.webhook_secret, timestamp, payload)
        return any(hmac.compare_digest(expected, candidate) for candidate in signatures)

    async def parse_event(self, payload: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        body = parse_json_body(payload)
        event_type = str(body.get("type") or "")
        obj = (body.get("data") or {}).get("object") or {}
        event = WebhookEvent(
            provider=self.provider_type,
            kind=WebhookEventKind.IGNORED,
            event_type=event_type,
            event_id=body.get("id"),
            raw=body,
        )

        if event_type == "checkout.session.completed":
            payment = await self.handle_payment_success(obj)
            event.kind = WebhookEventKind.PAYMENT_SUCCEEDED
            event.payment = payment
            event.metadata = payment.metadata
            event.subscription_id = payment.subscription_id
            event.payment_id = payment.payment_intent_id
            event.amount_cents = payment.amount_cents

        elif event_type == "customer.subscription.deleted":
            event.kind = WebhookEventKind.SUBSCRIPTION_CANCELED
            event.subscription_id = obj.get("id")
            event.metadata = CheckoutMetadata.from_dict(obj.get("metadata"))

        elif event_type == "invoice.payment_succeeded":
            # Only subscription cycles are renewals; the first invoice rides on checkout
            if obj.get("billing_reason") == "subscription_cycle":
                event.kind = WebhookEventKind.SUBSCRIPTION_RENEWED
                event.subscription_id = obj.get("subscription")
                event.amount_cents = int(obj.get("amount_paid") or 0)
                lines = (obj.get("lines") or {}).get("data") or []
                if lines:
                    event.next_billing_at = _epoch_to_datetime(
                        (lines[0].get("period") or {}).get("end")
                    )

        elif event_type == "invoice.payment_failed":
            failure = await self.handle_payment_failure(obj)
            event.kind = WebhookEventKind.PAYMENT_FAILED
            event.subscription_id = failure.subscription_id
            event.amount_cents = failure.amount_cents
            event.email = obj.get("customer_email")
            event.metadata = failure.metadata

        return event

    async def handle_payment_success(self, data: dict[str, Any]) -> PaymentResult:
        """Normalize a completed Checkout Session."""
        metadata = dict(data.get("metadata") or {})
        if not metadata.get("email"):
            metadata["email"] = (
                data.get("customer_email")
                or (data.get("customer_details") or {}).get("email")
                or ""
            )
        return PaymentResult(
            success=True,
            amount_cents=int(data.get("amount_total") or 0),
            metadata=CheckoutMetadata.from_dict(metadata),
            customer_id=data.get("customer"),
            subscription_id=data.get("subscription"),
            payment_intent_id=data.get("payment_intent") or data.get("id"),
        )

    async def handle_payment_failure(self, data: dict[str, Any]) -> PaymentResult:
        """Normalize a failed invoice."""
        metadata = (data.get("subscription_details") or {}).get("metadata") or data.get("metadata")
        return PaymentResult(
            success=False,
            amount_cents=int(data.get("amount_due") or 0),
            metadata=CheckoutMetadata.from_dict(metadata),
            customer_id=data.get("customer"),
            subscription_id=data.get("subscription"),
            payment_intent_id=data.get("payment_intent"),
        )

    async def cancel_subscription(self, subscription_id: str) -> None:
        await self._request("DELETE", f"/subscriptions/{subscription_id}")
        logger.info("Canceled Stripe subscription %s", subscription_id)
