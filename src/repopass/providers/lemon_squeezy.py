"""Lemon Squeezy payment provider adapter (JSON:API)."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Mapping, Optional

import httpx

from repopass.constants import Timeouts
from repopass.credentials import LemonSqueezyCredentials
from repopass.models import (
    CheckoutMetadata,
    CreateProductResult,
    PaymentProviderType,
    PaymentResult,
    PriceDetails,
    PriceInterval,
    ProductDetails,
    WebhookEvent,
    WebhookEventKind,
)
from repopass.providers.base import (
    PaymentProviderAdapter,
    cents_from_decimal,
    parse_json_body,
)

logger = logging.getLogger(__name__)

JSON_API = "application/vnd.api+json"

_EVENT_KINDS = {
    "order_created": WebhookEventKind.PAYMENT_SUCCEEDED,
    "subscription_cancelled": WebhookEventKind.SUBSCRIPTION_CANCELED,
    "subscription_payment_success": WebhookEventKind.SUBSCRIPTION_RENEWED,
    "subscription_payment_failed": WebhookEventKind.PAYMENT_FAILED,
}


def _parse_iso(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _variant_interval(price: PriceDetails) -> Optional[str]:
    if price.interval == PriceInterval.ONE_TIME:
        return None
    return price.interval.value


class LemonSqueezyProvider(PaymentProviderAdapter):
    """Lemon Squeezy adapter. Amounts are sent in dollars."""

    credentials_type = LemonSqueezyCredentials
    default_api_base = "https://api.lemonsqueezy.com/v1"

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.store_id: Optional[str] = None

    @property
    def provider_type(self) -> PaymentProviderType:
        return PaymentProviderType.LEMON_SQUEEZY

    def _configure(self, credentials: LemonSqueezyCredentials) -> None:
        self.store_id = credentials.store_id

    def _build_client(self, credentials: LemonSqueezyCredentials) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_base,
            headers={
                "Authorization": f"Bearer {credentials.api_key}",
                "Accept": JSON_API,
                "Content-Type": JSON_API,
            },
            timeout=Timeouts.PROVIDER_HTTP,
            transport=self._transport,
        )

    def _store_id_value(self) -> Any:
        store_id = self.store_id or ""
        return int(store_id) if store_id.isdigit() else store_id

    async def _create_variant(self, product_id: str, price: PriceDetails, name: str) -> str:
        attributes: dict[str, Any] = {
            "product_id": product_id,
            "name": name,
            "price": price.amount_cents / 100,
            "interval": _variant_interval(price),
        }
        if price.is_recurring:
            attributes["interval_count"] = price.interval_count
        variant = await self._request(
            "POST",
            "/variants",
            json={"data": {"type": "variants", "attributes": attributes}},
        )
        return str(variant["data"]["id"])

    async def create_product(
        self,
        product: ProductDetails,
        price: PriceDetails,
    ) -> CreateProductResult:
        created = await self._request(
            "POST",
            "/products",
            json={
                "data": {
                    "type": "products",
                    "attributes": {
                        "store_id": self._store_id_value(),
                        "name": product.name,
                        "description": product.description,
                    },
                }
            },
        )
        product_id = str(created["data"]["id"])
        variant_id = await self._create_variant(product_id, price, "Default")
        return CreateProductResult(product_id=product_id, price_id=variant_id)

    async def update_product(self, product_id: str, product: ProductDetails) -> None:
        await self._request(
            "PATCH",
            f"/products/{product_id}",
            json={
                "data": {
                    "type": "products",
                    "id": product_id,
                    "attributes": {
                        "name": product.name,
                        "description": product.description,
                    },
                }
            },
        )

    async def update_price(
        self,
        product_id: str,
        price_id: str,
        price: PriceDetails,
    ) -> str:
        """Variants keep their price history, so a new variant is created."""
        return await self._create_variant(product_id, price, "Updated Price")

    async def create_checkout_url(
        self,
        price_id: str,
        metadata: CheckoutMetadata,
        *,
        recurring: bool = False,
    ) -> str:
        checkout = await self._request(
            "POST",
            "/checkouts",
            json={
                "data": {
                    "type": "checkouts",
                    "attributes": {
                        "checkout_data": {
                            "email": metadata.email,
                            "custom": metadata.to_dict(),
                        },
                    },
                    "relationships": {
                        "store": {"data": {"type": "stores", "id": str(self.store_id)}},
                        "variant": {"data": {"type": "variants", "id": str(price_id)}},
                    },
                }
            },
        )
        return checkout["data"]["attributes"]["url"]

    @staticmethod
    def _custom_data(body: dict[str, Any]) -> Optional[CheckoutMetadata]:
        meta = body.get("meta") or {}
        attributes = (body.get("data") or {}).get("attributes") or {}
        candidates = (
            meta.get("custom_data"),
            attributes.get("custom_data"),
            ((attributes.get("first_order_item") or {}).get("variant") or {}).get("custom_data"),
        )
        for candidate in candidates:
            parsed = CheckoutMetadata.from_dict(candidate)
            if parsed is not None:
                return parsed
        return None

    async def parse_event(self, payload: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        body = parse_json_body(payload)
        event_name = str((body.get("meta") or {}).get("event_name") or "")
        data = body.get("data") or {}
        attributes = data.get("attributes") or {}
        kind = _EVENT_KINDS.get(event_name, WebhookEventKind.IGNORED)
        # The first invoice of a subscription is already covered by order_created
        if kind == WebhookEventKind.SUBSCRIPTION_RENEWED and attributes.get("billing_reason") == "initial":
            kind = WebhookEventKind.IGNORED
        event = WebhookEvent(
            provider=self.provider_type,
            kind=kind,
            event_type=event_name,
            event_id=str(data.get("id")) if data.get("id") is not None else None,
            metadata=self._custom_data(body),
            email=attributes.get("user_email"),
            raw=body,
        )

        if kind == WebhookEventKind.PAYMENT_SUCCEEDED:
            payment = await self.handle_payment_success(body)
            event.payment = payment
            event.payment_id = payment.payment_intent_id
            event.subscription_id = payment.subscription_id
            event.amount_cents = payment.amount_cents
        elif kind == WebhookEventKind.SUBSCRIPTION_CANCELED:
            event.subscription_id = str(data.get("id"))
        elif kind == WebhookEventKind.SUBSCRIPTION_RENEWED:
            event.subscription_id = str(attributes.get("subscription_id") or data.get("id"))
            event.amount_cents = cents_from_decimal(attributes.get("total"))
            event.next_billing_at = _parse_iso(attributes.get("renews_at"))
        elif kind == WebhookEventKind.PAYMENT_FAILED:
            failure = await self.handle_payment_failure(body)
            event.subscription_id = failure.subscription_id
            event.amount_cents = failure.amount_cents

        return event

    async def handle_payment_success(self, data: dict[str, Any]) -> PaymentResult:
        """Normalize an ``order_created`` body."""
        order = data.get("data") or {}
        attributes = order.get("attributes") or {}
        subscription_id = attributes.get("subscription_id") or (
            attributes.get("first_order_item") or {}
        ).get("subscription_id")
        return PaymentResult(
            success=True,
            amount_cents=cents_from_decimal(attributes.get("total")),
            metadata=self._custom_data(data),
            customer_id=str(attributes["customer_id"]) if attributes.get("customer_id") else None,
            subscription_id=str(subscription_id) if subscription_id else None,
            payment_intent_id=str(order.get("id")) if order.get("id") is not None else None,
        )

    async def handle_payment_failure(self, data: dict[str, Any]) -> PaymentResult:
        record = data.get("data") or {}
        attributes = record.get("attributes") or {}
        subscription_id = attributes.get("subscription_id") or record.get("id")
        return PaymentResult(
            success=False,
            amount_cents=cents_from_decimal(attributes.get("total")),
            metadata=self._custom_data(data),
            subscription_id=str(subscription_id) if subscription_id else None,
        )

    async def cancel_subscription(self, subscription_id: str) -> None:
        await self._request("DELETE", f"/subscriptions/{subscription_id}")
        logger.info("Canceled Lemon Squeezy subscription %s", subscription_id)
