"""Gumroad payment provider adapter.

Gumroad has no separate price entity (the price id is the product id) and
no API for cancelling memberships. Sale pings are form-encoded and carry
no event type; the ``refunded``/``cancelled``/``is_recurring_charge`` flags
decide the kind.
"""
from __future__ import annotations

import logging
from typing import Any, Mapping, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit, parse_qsl

import httpx

from repopass.constants import Timeouts
from repopass.credentials import GumroadCredentials
from repopass.exceptions import ProviderAPIError, UnsupportedOperation
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
    cents_from_decimal,
    is_truthy_flag,
    parse_form_body,
)

logger = logging.getLogger(__name__)

_METADATA_KEYS = ("repository_id", "github_username", "purchase_id")


def _form_metadata(form: Mapping[str, str]) -> Optional[CheckoutMetadata]:
    """Recover checkout metadata from top-level, custom_fields[...] or url_params[...] fields."""
    values: dict[str, str] = {"email": form.get("email", "")}
    for key in _METADATA_KEYS:
        for candidate in (key, f"custom_fields[{key}]", f"url_params[{key}]"):
            if form.get(candidate):
                values[key] = form[candidate]
                break
    return CheckoutMetadata.from_dict(values)


class GumroadProvider(PaymentProviderAdapter):
    """Gumroad adapter. Amounts are sent in dollars."""

    credentials_type = GumroadCredentials
    default_api_base = "https://api.gumroad.com/v2"

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._access_token: Optional[str] = None

    @property
    def provider_type(self) -> PaymentProviderType:
        return PaymentProviderType.GUMROAD

    def _configure(self, credentials: GumroadCredentials) -> None:
        self._access_token = credentials.access_token

    def _build_client(self, credentials: GumroadCredentials) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_base,
            timeout=Timeouts.PROVIDER_HTTP,
            transport=self._transport,
        )

    async def _call(self, method: str, path: str, fields: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        params = {"access_token": self._access_token}
        if method == "GET":
            body = await self._request(method, path, params=params)
        else:
            body = await self._request(method, path, data={**params, **(fields or {})})
        if body.get("success") is False:
            raise ProviderAPIError(
                f"gumroad API error: {body.get('message', 'request rejected')}",
                provider=self.name,
                transient=False,
            )
        return body

    async def create_product(
        self,
        product: ProductDetails,
        price: PriceDetails,
    ) -> CreateProductResult:
        fields: dict[str, Any] = {
            "name": product.name,
            "description": product.description,
            "price": price.amount_cents / 100,
            "currency": price.currency.lower(),
        }
        body = await self._call("POST", "/products", fields)
        product_id = str(body["product"]["id"])
        return CreateProductResult(product_id=product_id, price_id=product_id)

    async def update_product(self, product_id: str, product: ProductDetails) -> None:
        await self._call(
            "PUT",
            f"/products/{product_id}",
            {"name": product.name, "description": product.description},
        )

    async def update_price(
        self,
        product_id: str,
        price_id: str,
        price: PriceDetails,
    ) -> str:
        await self._call("PUT", f"/products/{product_id}", {"price": price.amount_cents / 100})
        return product_id

    async def create_checkout_url(
        self,
        price_id: str,
        metadata: CheckoutMetadata,
        *,
        recurring: bool = False,
    ) -> str:
        body = await self._call("GET", f"/products/{price_id}")
        remote = body.get("product") or {}
        permalink = remote.get("short_url") or remote.get("url")
        if not permalink:
            raise ProviderAPIError(
                f"gumroad product {price_id} has no public URL",
                provider=self.name,
                transient=False,
            )

        # Query parameters come back on the sale ping as url_params[...]
        parts = urlsplit(permalink)
        query = dict(parse_qsl(parts.query))
        query["wanted"] = "true"
        query.update({k: v for k, v in metadata.to_dict().items() if v})
        return urlunsplit(parts._replace(query=urlencode(query)))

    async def parse_event(self, payload: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        form = parse_form_body(payload)
        if is_truthy_flag(form.get("refunded")):
            kind = WebhookEventKind.REFUNDED
        elif is_truthy_flag(form.get("cancelled")):
            kind = WebhookEventKind.SUBSCRIPTION_CANCELED
        elif is_truthy_flag(form.get("is_recurring_charge")):
            kind = WebhookEventKind.SUBSCRIPTION_RENEWED
        else:
            kind = WebhookEventKind.PAYMENT_SUCCEEDED

        event = WebhookEvent(
            provider=self.provider_type,
            kind=kind,
            event_type=f"sale.{kind.value}",
            event_id=form.get("sale_id"),
            metadata=_form_metadata(form),
            subscription_id=form.get("subscription_id") or None,
            payment_id=form.get("sale_id") or None,
            email=form.get("email") or None,
            amount_cents=cents_from_decimal(form.get("price")),
            raw=dict(form),
        )
        if kind == WebhookEventKind.PAYMENT_SUCCEEDED:
            event.payment = await self.handle_payment_success(form)
        return event

    async def handle_payment_success(self, data: dict[str, Any]) -> PaymentResult:
        return PaymentResult(
            success=True,
            amount_cents=cents_from_decimal(data.get("price")),
            metadata=_form_metadata(data),
            customer_id=data.get("purchaser_id") or None,
            subscription_id=data.get("subscription_id") or None,
            payment_intent_id=data.get("sale_id") or None,
        )

    async def handle_payment_failure(self, data: dict[str, Any]) -> PaymentResult:
        return PaymentResult(
            success=False,
            amount_cents=cents_from_decimal(data.get("price")),
            metadata=_form_metadata(data),
            subscription_id=data.get("subscription_id") or None,
            payment_intent_id=data.get("sale_id") or None,
        )

    async def cancel_subscription(self, subscription_id: str) -> None:
        raise UnsupportedOperation(
            self.name,
            "cancel_subscription",
            "memberships are cancelled from the Gumroad dashboard",
        )
