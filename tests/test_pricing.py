from __future__ import annotations

from urllib.parse import parse_qs

import httpx
import pytest

from repopass.exceptions import NotFoundError, ValidationError
from repopass.models import PaymentProviderType, PricingType, SubscriptionCadence
from repopass.pricing import PricingService
from repopass.providers.factory import PaymentProviderFactory

from .conftest import OWNER_ID, make_repository


def _factory(cipher, store, handler) -> PaymentProviderFactory:
    transport = httpx.MockTransport(handler)
    return PaymentProviderFactory(
        cipher,
        credential_store=store,
        transports={PaymentProviderType.STRIPE: transport, PaymentProviderType.PADDLE: transport},
    )


@pytest.mark.asyncio
async def test_price_change_closes_previous_history_entry(store, factory):
    service = PricingService(store, factory)
    repository = await store.save_repository(make_repository())

    await service.change_price(repository.id, OWNER_ID, 5900, "one-time")
    await service.change_price(repository.id, OWNER_ID, 1200, PricingType.SUBSCRIPTION, cadence="yearly")

    history = await store.list_price_history(repository.id)
    assert [(e.price_cents, e.is_current) for e in history] == [(5900, False), (1200, True)]
    assert history[1].subscription_cadence == SubscriptionCadence.YEARLY
    assert history[1].changed_by == OWNER_ID
    saved = await store.get_repository(repository.id)
    assert (saved.price_cents, saved.pricing_type) == (1200, PricingType.SUBSCRIPTION)


@pytest.mark.asyncio
async def test_only_owner_can_change_price(store, factory):
    service = PricingService(store, factory)
    repository = await store.save_repository(make_repository())

    with pytest.raises(NotFoundError):
        await service.change_price(repository.id, "someone_else", 100, "one-time")
    assert await store.list_price_history(repository.id) == []


@pytest.mark.asyncio
async def test_invalid_pricing_is_rejected(store, factory):
    service = PricingService(store, factory)
    repository = await store.save_repository(make_repository())

    with pytest.raises(ValidationError):
        await service.change_price(repository.id, OWNER_ID, 100, "subscription")
    with pytest.raises(ValidationError):
        await service.change_price(repository.id, OWNER_ID, 100, "free")
    with pytest.raises(ValidationError):
        await service.change_price(repository.id, OWNER_ID, 100, "subscription", "custom", 0)


@pytest.mark.asyncio
async def test_switching_to_free_clears_remote_product(store, factory):
    service = PricingService(store, factory)
    repository = await store.save_repository(
        make_repository(external_product_id="prod_1", external_price_id="price_1")
    )

    updated = await service.change_price(repository.id, OWNER_ID, 0, "free")

    assert (updated.external_product_id, updated.external_price_id) == (None, None)


@pytest.mark.asyncio
async def test_stripe_price_is_replaced_remotely(store, cipher):
    requests: list[httpx.Request] = []

    def stripe_api(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"id": "price_2"})

    factory = _factory(cipher, store, stripe_api)
    await store.save_payment_credentials(
        factory.seal(OWNER_ID, "stripe", {"secret_key": "sk_test_1", "publishable_key": "pk_test_1"})
    )
    repository = await store.save_repository(
        make_repository(external_product_id="prod_1", external_price_id="price_1")
    )

    updated = await PricingService(store, factory).change_price(repository.id, OWNER_ID, 5900, "one-time")

    assert updated.external_product_id == "prod_1"
    assert updated.external_price_id == "price_2"
    assert [r.url.path for r in requests] == ["/v1/prices", "/v1/prices/price_1"]
    assert parse_qs(requests[0].content.decode())["unit_amount"] == ["5900"]


@pytest.mark.asyncio
async def test_provider_without_price_updates_forces_new_product(store, cipher):
    repository = await store.save_repository(make_repository(
        payment_provider=PaymentProviderType.PADDLE,
        external_product_id="42",
        external_price_id="42",
    ))
    factory = _factory(cipher, store, lambda r: httpx.Response(500))
    await store.save_payment_credentials(factory.seal(OWNER_ID, "paddle", {"vendor_id": "1", "api_key": "auth"}))

    updated = await PricingService(store, factory).change_price(repository.id, OWNER_ID, 5900, "one-time")

    assert (updated.external_product_id, updated.external_price_id) == (None, None)
    saved = await store.get_repository(repository.id)
    assert saved.external_product_id is None
    assert (await store.current_price(repository.id)).price_cents == 5900


@pytest.mark.asyncio
async def test_remote_failure_does_not_block_price_change(store, cipher):
    factory = _factory(cipher, store, lambda r: httpx.Response(502))
    await store.save_payment_credentials(
        factory.seal(OWNER_ID, "stripe", {"secret_key": "sk_test_1", "publishable_key": "pk_test_1"})
    )
    repository = await store.save_repository(
        make_repository(external_product_id="prod_1", external_price_id="price_1")
    )

    updated = await PricingService(store, factory).change_price(repository.id, OWNER_ID, 5900, "one-time")

    assert updated.price_cents == 5900
    assert updated.external_product_id is None
