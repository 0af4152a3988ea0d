"""Paddle (classic) payment provider adapter."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

import httpx

from repopass.constants import Timeouts
from repopass.credentials import PaddleCredentials
from repopass.exceptions import ProviderAPIError, UnsupportedOperation
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
    is_truthy_flag,
    parse_form_body,
)

logger = logging.getLogger(__name__)

_ALERT_KINDS = {
    "payment_succeeded": WebhookEventKind.PAYMENT_SUCCEEDED,
    "subscription_payment_succeeded": WebhookEventKind.SUBSCRIPTION_RENEWED,
    "subscription_cancelled": WebhookEventKind.SUBSCRIPTION_CANCELED,
    "subscription_payment_failed": WebhookEventKind.PAYMENT_FAILED,
    "payment_refunded": WebhookEventKind.REFUNDED,
}


def _passthrough(form: Mapping[str, str]) -> Optional[CheckoutMetadata]:
    raw = form.get("passthrough")
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Paddle passthrough is not valid JSON")
        return None
    if not isinstance(data, dict):
        return None
    if not data.get("email") and form.get("email"):
        data["email"] = form["email"]
    return CheckoutMetadata.from_dict(data)


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


class PaddleProvider(PaymentProviderAdapter):
    """Paddle adapter. Amounts are sent in dollars."""

    credentials_type = PaddleCredentials
    default_api_base = "https://api.paddle.com"

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._vendor_id: Optional[str] = None
        self._auth_code: Optional[str] = None

    @property
    def provider_type(self) -> PaymentProviderType:
        return PaymentProviderType.PADDLE

    def _configure(self, credentials: PaddleCredentials) -> None:
        self._vendor_id = credentials.vendor_id
        self._auth_code = credentials.api_key

    def _build_client(self, credentials: PaddleCredentials) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_base,
            timeout=Timeouts.PROVIDER_HTTP,
            transport=self._transport,
        )

    async def _call(self, path: str, fields: dict[str, Any]) -> dict[str, Any]:
        data = {
            "vendor_id": self._vendor_id,
            "vendor_auth_code": self._auth_code,
            **fields,
        }
        body = await self._request("POST", path, data=data)
        if body.get("success") is False:
            error = body.get("error") or {}
            raise ProviderAPIError(
                f"paddle API error: {error.get('message', 'request rejected')}",
                provider=self.name,
                transient=False,
            )
        return body.get("response") or {}

    async def create_product(
        self,
        product: ProductDetails,
        price: PriceDetails,
    ) -> CreateProductResult:
        fields: dict[str, Any] = {
            "product_title": product.name,
            "product_description": product.description,
            "price": price.amount_decimal,
            "currency": price.currency.upper(),
        }
        if price.interval == PriceInterval.ONE_TIME:
            path = "/2.0/product/generate_pay_link"
        else:
            path = "/2.0/subscription/plans_create"
            if price.interval == PriceInterval.DAY:
                fields["billing_type"] = "day"
                fields["billing_period"] = price.interval_count
            else:
                fields["billing_type"] = "month"
                fields["billing_period"] = 1 if price.interval == PriceInterval.MONTH else 12

        response = await self._call(path, fields)
        product_id = response.get("product_id") or response.get("plan_id")
        if not product_id:
            raise ProviderAPIError(
                "paddle did not return a product id", provider=self.name, transient=False
            )
        return CreateProductResult(product_id=str(product_id), price_id=str(product_id))

    async def update_product(self, product_id: str, product: ProductDetails) -> None:
        raise UnsupportedOperation(
            self.name, "update_product", "products are edited from the Paddle dashboard"
        )

    async def update_price(
        self,
        product_id: str,
        price_id: str,
        price: PriceDetails,
    ) -> str:
        raise UnsupportedOperation(
            self.name, "update_price", "a new product must be created for a new price"
        )

    async def create_checkout_url(
        self,
        price_id: str,
        metadata: CheckoutMetadata,
        *,
        recurring: bool = False,
    ) -> str:
        response = await self._call(
            "/2.0/product/generate_pay_link",
            {
                "product_id": price_id,
                "customer_email": metadata.email,
                "passthrough": json.dumps(metadata.to_dict()),
            },
        )
        return response["url"]

    async def parse_event(self, payload: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        form = parse_form_body(payload)
        alert_name = form.get("alert_name", "")
        kind = _ALERT_KINDS.get(alert_name, WebhookEventKind.IGNORED)
        # The first charge of a new subscription is the purchase itself
        if kind == WebhookEventKind.SUBSCRIPTION_RENEWED and is_truthy_flag(form.get("initial_payment")):
            kind = WebhookEventKind.PAYMENT_SUCCEEDED

        event = WebhookEvent(
            provider=self.provider_type,
            kind=kind,
            event_type=alert_name,
            event_id=form.get("alert_id"),
            metadata=_passthrough(form),
            subscription_id=form.get("subscription_id") or None,
            payment_id=form.get("order_id") or None,
            email=form.get("email") or None,
            amount_cents=cents_from_decimal(form.get("sale_gross") or form.get("amount")),
            next_billing_at=_parse_date(form.get("next_bill_date")),
            raw=dict(form),
        )
        if kind == WebhookEventKind.PAYMENT_SUCCEEDED:
            event.payment = await self.handle_payment_success(form)
        return event

    async def handle_payment_success(self, data: dict[str, Any]) -> PaymentResult:
        return PaymentResult(
            success=True,
            amount_cents=cents_from_decimal(data.get("sale_gross")),
            metadata=_passthrough(data),
            customer_id=data.get("user_id") or None,
            subscription_id=data.get("subscription_id") or None,
            payment_intent_id=data.get("order_id") or None,
        )

    async def handle_payment_failure(self, data: dict[str, Any]) -> PaymentResult:
        return PaymentResult(
            success=False,
            amount_cents=cents_from_decimal(data.get("amount")),
            metadata=_passthrough(data),
            subscription_id=data.get("subscription_id") or None,
            payment_intent_id=data.get("order_id") or None,
        )

    async def cancel_subscription(self, subscription_id: str) -> None:
        await self._call("/2.0/subscription/users_cancel", {"subscription_id": subscription_id})
        logger.info("Canceled Paddle subscription %s", subscription_id)
