from __future__ import annotations

import json
import time
from typing import Callable
from urllib.parse import parse_qs, parse_qsl, urlencode, urlsplit

import httpx
import pytest

from repopass.credentials import (
    GumroadCredentials,
    LemonSqueezyCredentials,
    PaddleCredentials,
    StripeCredentials,
)
from repopass.exceptions import (
    ConfigurationError,
    ProviderAPIError,
    UnsupportedOperation,
    ValidationError,
)
from repopass.models import (
    CheckoutMetadata,
    PriceDetails,
    PriceInterval,
    ProductDetails,
    WebhookEventKind,
)
from repopass.providers import GumroadProvider, LemonSqueezyProvider, PaddleProvider, StripeProvider
from repopass.providers.stripe import compute_signature, parse_signature_header

PRODUCT = ProductDetails(name="Acme Toolkit", description="Access to acme/toolkit", repository_id="repo_1")
ONE_TIME = PriceDetails(amount_cents=4900)
MONTHLY = PriceDetails(amount_cents=900, interval=PriceInterval.MONTH)
METADATA = CheckoutMetadata(
    repository_id="repo_1", github_username="alice", email="alice@example.com", purchase_id="pur_1"
)


class Recorder:
    def __init__(self, respond: Callable[[httpx.Request], httpx.Response]) -> None:
        self.requests: list[httpx.Request] = []
        self._respond = respond

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._respond(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def form(request: httpx.Request) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


# =============================================================================
# Stripe
# =============================================================================

async def _stripe(respond, **kwargs) -> tuple[StripeProvider, Recorder]:
    recorder = Recorder(respond)
    provider = StripeProvider(site_url="https://repopass.test/", transport=recorder.transport, **kwargs)
    await provider.initialize(StripeCredentials(secret_key="sk_test_1", publishable_key="pk_test_1"))
    return provider, recorder


def _stripe_catalog(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/v1/products":
        return httpx.Response(200, json={"id": "prod_1"})
    if request.url.path == "/v1/prices":
        return httpx.Response(200, json={"id": "price_1"})
    if request.url.path == "/v1/checkout/sessions":
        return httpx.Response(200, json={"id": "cs_1", "url": "https://checkout.stripe.com/c/cs_1"})
    return httpx.Response(200, json={"id": "ok"})


@pytest.mark.asyncio
async def test_stripe_one_time_product_has_no_recurring_price():
    provider, recorder = await _stripe(_stripe_catalog)

    result = await provider.create_product(PRODUCT, ONE_TIME)

    assert (result.product_id, result.price_id) == ("prod_1", "price_1")
    price_form = form(recorder.requests[1])
    assert price_form["unit_amount"] == "4900"
    assert price_form["product"] == "prod_1"
    assert not any(key.startswith("recurring") for key in price_form)
    assert recorder.requests[0].headers["authorization"].startswith("Basic ")


@pytest.mark.asyncio
async def test_stripe_subscription_price_is_recurring():
    provider, recorder = await _stripe(_stripe_catalog)

    await provider.create_product(PRODUCT, MONTHLY)

    price_form = form(recorder.requests[1])
    assert price_form["recurring[interval]"] == "month"
    assert price_form["recurring[interval_count]"] == "1"


@pytest.mark.asyncio
async def test_stripe_update_price_creates_new_price_and_archives_old():
    provider, recorder = await _stripe(_stripe_catalog)

    new_price = await provider.update_price("prod_1", "price_old", ONE_TIME)

    assert new_price == "price_1"
    archive = recorder.requests[-1]
    assert archive.url.path == "/v1/prices/price_old"
    assert form(archive) == {"active": "false"}


@pytest.mark.asyncio
async def test_stripe_checkout_carries_metadata():
    provider, recorder = await _stripe(_stripe_catalog)

    url = await provider.create_checkout_url("price_1", METADATA, recurring=True)

    assert url == "https://checkout.stripe.com/c/cs_1"
    data = form(recorder.requests[0])
    assert data["mode"] == "subscription"
    assert data["metadata[github_username]"] == "alice"
    assert data["metadata[purchase_id]"] == "pur_1"
    assert data["subscription_data[metadata][repository_id]"] == "repo_1"
    assert data["client_reference_id"] == "pur_1"
    assert data["success_url"] == "https://repopass.test/success?session_id={CHECKOUT_SESSION_ID}"
    assert data["cancel_url"] == "https://repopass.test/products/repo_1"


@pytest.mark.asyncio
async def test_stripe_api_errors_carry_status_and_transience():
    provider, _ = await _stripe(lambda r: httpx.Response(400, json={"error": {"message": "No such price"}}))
    with pytest.raises(ProviderAPIError) as exc_info:
        await provider.create_checkout_url("price_x", METADATA)
    assert exc_info.value.status_code == 400
    assert exc_info.value.transient is False
    assert "No such price" in exc_info.value.message

    provider, _ = await _stripe(lambda r: httpx.Response(503))
    with pytest.raises(ProviderAPIError) as exc_info:
        await provider.cancel_subscription("sub_1")
    assert exc_info.value.transient is True


@pytest.mark.asyncio
async def test_uninitialized_adapter_refuses_api_calls():
    with pytest.raises(ConfigurationError):
        await StripeProvider().create_product(PRODUCT, ONE_TIME)


def test_parse_signature_header():
    assert parse_signature_header("t=123,v1=abc,v0=zzz,v1=def") == ("123", ["abc", "def"])


@pytest.mark.asyncio
async def test_stripe_verify_webhook():
    now = 1_700_000_000
    provider = StripeProvider(webhook_secret="whsec_test", clock=lambda: now)
    payload = b'{"id": "evt_1"}'
    good = f"t={now},v1={compute_signature('whsec_test', str(now), payload)}"

    assert await provider.verify_webhook(payload, {"Stripe-Signature": good}) is True
    assert await provider.verify_webhook(payload + b" ", {"stripe-signature": good}) is False
    assert await provider.verify_webhook(payload, {}) is False

    stale = now - 301
    old = f"t={stale},v1={compute_signature('whsec_test', str(stale), payload)}"
    assert await provider.verify_webhook(payload, {"stripe-signature": old}) is False


@pytest.mark.asyncio
async def test_stripe_verify_webhook_fails_closed_without_secret():
    with pytest.raises(ConfigurationError):
        await StripeProvider().verify_webhook(b"{}", {"stripe-signature": f"t={int(time.time())},v1=x"})


def _stripe_event(event_type: str, obj: dict) -> bytes:
    return json.dumps({"id": "evt_1", "type": event_type, "data": {"object": obj}}).encode()


@pytest.mark.asyncio
async def test_stripe_checkout_completed_event():
    provider = StripeProvider()
    event = await provider.parse_event(
        _stripe_event(
            "checkout.session.completed",
            {
                "id": "cs_1",
                "amount_total": 4900,
                "customer": "cus_1",
                "payment_intent": "pi_1",
                "customer_details": {"email": "alice@example.com"},
                "metadata": {"repositoryId": "repo_1", "githubUsername": "alice"},
            },
        ),
        {},
    )

    assert event.kind == WebhookEventKind.PAYMENT_SUCCEEDED
    assert event.metadata == CheckoutMetadata("repo_1", "alice", "alice@example.com")
    assert event.payment.customer_id == "cus_1"
    assert event.payment_id == "pi_1"
    assert event.amount_cents == 4900


@pytest.mark.asyncio
async def test_stripe_subscription_events():
    provider = StripeProvider()

    deleted = await provider.parse_event(
        _stripe_event("customer.subscription.deleted", {"id": "sub_1", "metadata": {}}), {}
    )
    assert deleted.kind == WebhookEventKind.SUBSCRIPTION_CANCELED
    assert deleted.subscription_id == "sub_1"

    renewal = await provider.parse_event(
        _stripe_event(
            "invoice.payment_succeeded",
            {
                "subscription": "sub_1",
                "billing_reason": "subscription_cycle",
                "amount_paid": 900,
                "lines": {"data": [{"period": {"end": 1_700_000_000}}]},
            },
        ),
        {},
    )
    assert renewal.kind == WebhookEventKind.SUBSCRIPTION_RENEWED
    assert renewal.amount_cents == 900
    assert renewal.next_billing_at.year == 2023

    first_invoice = await provider.parse_event(
        _stripe_event("invoice.payment_succeeded", {"subscription": "sub_1", "billing_reason": "subscription_create"}),
        {},
    )
    assert first_invoice.kind == WebhookEventKind.IGNORED

    failed = await provider.parse_event(
        _stripe_event("invoice.payment_failed", {"subscription": "sub_1", "amount_due": 900}), {}
    )
    assert failed.kind == WebhookEventKind.PAYMENT_FAILED
    assert failed.subscription_id == "sub_1"


@pytest.mark.asyncio
async def test_stripe_malformed_body_is_validation_error():
    with pytest.raises(ValidationError):
        await StripeProvider().parse_event(b"not json", {})


# =============================================================================
# Lemon Squeezy
# =============================================================================

@pytest.mark.asyncio
async def test_lemon_squeezy_product_then_variant_in_dollars():
    def respond(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/products":
            return httpx.Response(201, json={"data": {"id": "11"}})
        return httpx.Response(201, json={"data": {"id": "22"}})

    recorder = Recorder(respond)
    provider = LemonSqueezyProvider(transport=recorder.transport)
    await provider.initialize(LemonSqueezyCredentials(api_key="ls_key", store_id="7"))

    result = await provider.create_product(PRODUCT, ONE_TIME)

    assert (result.product_id, result.price_id) == ("11", "22")
    product = json.loads(recorder.requests[0].content)["data"]["attributes"]
    assert product["store_id"] == 7
    variant = json.loads(recorder.requests[1].content)["data"]["attributes"]
    assert variant["price"] == 49.0
    assert variant["interval"] is None
    assert recorder.requests[0].headers["authorization"] == "Bearer ls_key"


@pytest.mark.asyncio
async def test_lemon_squeezy_checkout_custom_data():
    recorder = Recorder(
        lambda r: httpx.Response(201, json={"data": {"attributes": {"url": "https://ls.test/checkout/1"}}})
    )
    provider = LemonSqueezyProvider(transport=recorder.transport)
    await provider.initialize(LemonSqueezyCredentials(api_key="ls_key", store_id="7"))

    url = await provider.create_checkout_url("22", METADATA)

    assert url == "https://ls.test/checkout/1"
    data = json.loads(recorder.requests[0].content)["data"]
    assert data["attributes"]["checkout_data"]["custom"]["purchase_id"] == "pur_1"
    assert data["relationships"]["variant"]["data"]["id"] == "22"


@pytest.mark.asyncio
async def test_lemon_squeezy_event_mapping():
    provider = LemonSqueezyProvider()
    order = {
        "meta": {"event_name": "order_created", "custom_data": METADATA.to_dict()},
        "data": {"id": 900, "attributes": {"total": "49.00", "customer_id": 5, "user_email": "alice@example.com"}},
    }
    event = await provider.parse_event(json.dumps(order).encode(), {})
    assert event.kind == WebhookEventKind.PAYMENT_SUCCEEDED
    assert event.metadata.purchase_id == "pur_1"
    assert event.payment_id == "900"
    assert event.amount_cents == 4900

    renewal = {
        "meta": {"event_name": "subscription_payment_success"},
        "data": {"id": 5, "attributes": {
            "subscription_id": 77,
            "billing_reason": "renewal",
            "total": "9.00",
            "renews_at": "2024-02-01T00:00:00Z",
        }},
    }
    event = await provider.parse_event(json.dumps(renewal).encode(), {})
    assert event.kind == WebhookEventKind.SUBSCRIPTION_RENEWED
    assert event.subscription_id == "77"
    assert event.next_billing_at.month == 2

    first_invoice = {
        "meta": {"event_name": "subscription_payment_success"},
        "data": {"id": 4, "attributes": {"subscription_id": 77, "billing_reason": "initial", "total": "9.00"}},
    }
    event = await provider.parse_event(json.dumps(first_invoice).encode(), {})
    assert event.kind == WebhookEventKind.IGNORED

    cancelled = {"meta": {"event_name": "subscription_cancelled"}, "data": {"id": 77, "attributes": {}}}
    event = await provider.parse_event(json.dumps(cancelled).encode(), {})
    assert event.kind == WebhookEventKind.SUBSCRIPTION_CANCELED
    assert event.subscription_id == "77"

    unknown = {"meta": {"event_name": "license_key_created"}, "data": {}}
    event = await provider.parse_event(json.dumps(unknown).encode(), {})
    assert event.kind == WebhookEventKind.IGNORED


# =============================================================================
# Gumroad
# =============================================================================

@pytest.mark.asyncio
async def test_gumroad_price_id_is_product_id():
    recorder = Recorder(lambda r: httpx.Response(200, json={"success": True, "product": {"id": "gp_1"}}))
    provider = GumroadProvider(transport=recorder.transport)
    await provider.initialize(GumroadCredentials(access_token="gum_token"))

    result = await provider.create_product(PRODUCT, ONE_TIME)

    assert (result.product_id, result.price_id) == ("gp_1", "gp_1")
    data = form(recorder.requests[0])
    assert data["access_token"] == "gum_token"
    assert data["price"] == "49.0"


@pytest.mark.asyncio
async def test_gumroad_checkout_url_carries_metadata_in_query():
    recorder = Recorder(
        lambda r: httpx.Response(200, json={"success": True, "product": {"short_url": "https://gum.co/abc"}})
    )
    provider = GumroadProvider(transport=recorder.transport)
    await provider.initialize(GumroadCredentials(access_token="gum_token"))

    url = await provider.create_checkout_url("gp_1", METADATA)

    query = dict(parse_qsl(urlsplit(url).query))
    assert url.startswith("https://gum.co/abc?")
    assert query["wanted"] == "true"
    assert query["github_username"] == "alice"
    assert query["purchase_id"] == "pur_1"


@pytest.mark.asyncio
async def test_gumroad_rejected_call_is_permanent_error():
    recorder = Recorder(lambda r: httpx.Response(200, json={"success": False, "message": "bad token"}))
    provider = GumroadProvider(transport=recorder.transport)
    await provider.initialize(GumroadCredentials(access_token="gum_token"))

    with pytest.raises(ProviderAPIError) as exc_info:
        await provider.update_price("gp_1", "gp_1", ONE_TIME)
    assert exc_info.value.transient is False


@pytest.mark.asyncio
async def test_gumroad_cannot_cancel_subscriptions():
    with pytest.raises(UnsupportedOperation) as exc_info:
        await GumroadProvider().cancel_subscription("sub_1")
    assert exc_info.value.http_status == 501


@pytest.mark.asyncio
async def test_gumroad_flags_decide_event_kind():
    provider = GumroadProvider()
    base = {
        "sale_id": "sale_1",
        "email": "alice@example.com",
        "price": "49",
        "url_params[repository_id]": "repo_1",
        "url_params[github_username]": "alice",
    }

    sale = await provider.parse_event(urlencode(base).encode(), {})
    assert sale.kind == WebhookEventKind.PAYMENT_SUCCEEDED
    assert sale.metadata == CheckoutMetadata("repo_1", "alice", "alice@example.com")
    assert sale.payment.payment_intent_id == "sale_1"
    assert sale.amount_cents == 4900

    refund = await provider.parse_event(urlencode({**base, "refunded": "true"}).encode(), {})
    assert refund.kind == WebhookEventKind.REFUNDED

    cancel = await provider.parse_event(urlencode({**base, "cancelled": "true"}).encode(), {})
    assert cancel.kind == WebhookEventKind.SUBSCRIPTION_CANCELED

    renewal = await provider.parse_event(urlencode({**base, "is_recurring_charge": "true"}).encode(), {})
    assert renewal.kind == WebhookEventKind.SUBSCRIPTION_RENEWED


@pytest.mark.asyncio
async def test_gumroad_and_paddle_accept_unsigned_webhooks():
    assert await GumroadProvider().verify_webhook(b"anything", {}) is True
    assert await PaddleProvider().verify_webhook(b"anything", {}) is True


# =============================================================================
# Paddle
# =============================================================================

@pytest.mark.asyncio
async def test_paddle_yearly_plan():
    recorder = Recorder(lambda r: httpx.Response(200, json={"success": True, "response": {"product_id": 42}}))
    provider = PaddleProvider(transport=recorder.transport)
    await provider.initialize(PaddleCredentials(vendor_id="123", api_key="auth"))

    result = await provider.create_product(PRODUCT, PriceDetails(12000, interval=PriceInterval.YEAR))

    assert result.product_id == "42"
    data = form(recorder.requests[0])
    assert recorder.requests[0].url.path == "/2.0/subscription/plans_create"
    assert data["billing_type"] == "month"
    assert data["billing_period"] == "12"
    assert data["price"] == "120.00"
    assert data["vendor_auth_code"] == "auth"


@pytest.mark.asyncio
async def test_paddle_checkout_passthrough():
    recorder = Recorder(
        lambda r: httpx.Response(200, json={"success": True, "response": {"url": "https://pay.paddle.com/x"}})
    )
    provider = PaddleProvider(transport=recorder.transport)
    await provider.initialize(PaddleCredentials(vendor_id="123", api_key="auth"))

    url = await provider.create_checkout_url("42", METADATA)

    assert url == "https://pay.paddle.com/x"
    assert json.loads(form(recorder.requests[0])["passthrough"])["purchase_id"] == "pur_1"


@pytest.mark.asyncio
async def test_paddle_cannot_update_catalog():
    provider = PaddleProvider()
    with pytest.raises(UnsupportedOperation):
        await provider.update_product("42", PRODUCT)
    with pytest.raises(UnsupportedOperation):
        await provider.update_price("42", "42", ONE_TIME)


@pytest.mark.asyncio
async def test_paddle_alerts():
    provider = PaddleProvider()
    passthrough = json.dumps({"repository_id": "repo_1", "github_username": "alice"})

    first = await provider.parse_event(
        urlencode({
            "alert_name": "subscription_payment_succeeded",
            "initial_payment": "1",
            "subscription_id": "ps_1",
            "order_id": "ord_1",
            "sale_gross": "9.00",
            "email": "alice@example.com",
            "passthrough": passthrough,
        }).encode(),
        {},
    )
    assert first.kind == WebhookEventKind.PAYMENT_SUCCEEDED
    assert first.metadata.email == "alice@example.com"
    assert first.payment.subscription_id == "ps_1"

    renewal = await provider.parse_event(
        urlencode({
            "alert_name": "subscription_payment_succeeded",
            "initial_payment": "0",
            "subscription_id": "ps_1",
            "sale_gross": "9.00",
            "next_bill_date": "2024-03-01",
        }).encode(),
        {},
    )
    assert renewal.kind == WebhookEventKind.SUBSCRIPTION_RENEWED
    assert renewal.next_billing_at.day == 1

    refund = await provider.parse_event(
        urlencode({"alert_name": "payment_refunded", "order_id": "ord_1"}).encode(), {}
    )
    assert refund.kind == WebhookEventKind.REFUNDED
    assert refund.payment_id == "ord_1"


@pytest.mark.asyncio
async def test_empty_form_body_is_validation_error():
    with pytest.raises(ValidationError):
        await PaddleProvider().parse_event(b"", {})
