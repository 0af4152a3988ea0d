from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from repopass.exceptions import ValidationError
from repopass.models import (
    AccessStatus,
    PricingHistoryEntry,
    PricingType,
    PurchaseStatus,
    utc_now,
)
from repopass.storage import PurchaseStore

from .conftest import make_purchase, make_repository


@pytest.mark.asyncio
async def test_transition_applies_only_when_expected_matches(store: PurchaseStore):
    repository = make_repository()
    purchase = await store.create_purchase(make_purchase(repository))

    updated = await store.transition_purchase(
        purchase.id,
        expected={"status": PurchaseStatus.PENDING},
        changes={"status": PurchaseStatus.COMPLETED, "payment_intent_id": "pi_1"},
    )
    assert updated.status == PurchaseStatus.COMPLETED
    assert updated.payment_intent_id == "pi_1"

    again = await store.transition_purchase(
        purchase.id,
        expected={"status": PurchaseStatus.PENDING},
        changes={"status": PurchaseStatus.FAILED},
    )
    assert again is None
    assert (await store.get_purchase(purchase.id)).status == PurchaseStatus.COMPLETED


@pytest.mark.asyncio
async def test_transition_accepts_a_set_of_allowed_values(store: PurchaseStore):
    purchase = await store.create_purchase(make_purchase(make_repository()))

    updated = await store.transition_purchase(
        purchase.id,
        expected={"access_status": (AccessStatus.PENDING, AccessStatus.ACTIVE)},
        changes={"access_status": AccessStatus.REVOKED},
    )

    assert updated.access_status == AccessStatus.REVOKED


@pytest.mark.asyncio
async def test_concurrent_transitions_have_a_single_winner(store: PurchaseStore):
    purchase = await store.create_purchase(make_purchase(make_repository()))

    results = await asyncio.gather(*[
        store.transition_purchase(
            purchase.id,
            expected={"status": PurchaseStatus.PENDING},
            changes={"status": PurchaseStatus.COMPLETED},
        )
        for _ in range(5)
    ])

    assert sum(1 for r in results if r is not None) == 1


@pytest.mark.asyncio
async def test_transition_rejects_unknown_columns(store: PurchaseStore):
    purchase = await store.create_purchase(make_purchase(make_repository()))
    with pytest.raises(ValueError):
        await store.transition_purchase(purchase.id, expected={"nope": 1}, changes={})


@pytest.mark.asyncio
async def test_returned_purchases_are_copies(store: PurchaseStore):
    purchase = await store.create_purchase(make_purchase(make_repository()))

    loaded = await store.get_purchase(purchase.id)
    loaded.status = PurchaseStatus.CANCELED

    assert (await store.get_purchase(purchase.id)).status == PurchaseStatus.PENDING


@pytest.mark.asyncio
async def test_lookups_return_most_recent_match(store: PurchaseStore):
    repository = make_repository()
    now = utc_now()
    older = make_purchase(repository, subscription_id="sub_1", created_at=now - timedelta(days=2))
    newer = make_purchase(repository, subscription_id="sub_1", created_at=now)
    await store.create_purchase(newer)
    await store.create_purchase(older)

    assert (await store.find_by_subscription_id("sub_1")).id == newer.id
    assert (await store.find_pending_purchase(repository.id, "alice")).id == newer.id
    assert (await store.find_latest_purchase(repository.id, email="alice@example.com")).id == newer.id
    assert await store.find_latest_purchase(repository.id, github_username="bob") is None
    assert await store.has_purchase(repository.id, "alice") is True
    assert [p.id for p in await store.list_purchases(repository.id)] == [newer.id, older.id]


@pytest.mark.asyncio
async def test_pending_lookup_skips_settled_purchases(store: PurchaseStore):
    repository = make_repository()
    await store.create_purchase(make_purchase(repository, status=PurchaseStatus.COMPLETED))

    assert await store.find_pending_purchase(repository.id, "alice") is None


@pytest.mark.asyncio
async def test_repository_is_validated_on_save(store: PurchaseStore):
    repository = make_repository()
    repository.price_cents = -1
    with pytest.raises(ValidationError):
        await store.save_repository(repository)


@pytest.mark.asyncio
async def test_external_ids(store: PurchaseStore):
    repository = await store.save_repository(make_repository())

    await store.set_external_ids(repository.id, "prod_1", "price_1")

    loaded = await store.get_repository(repository.id)
    assert (loaded.external_product_id, loaded.external_price_id) == ("prod_1", "price_1")


@pytest.mark.asyncio
async def test_pricing_history_keeps_one_open_entry(store: PurchaseStore):
    repository = make_repository()
    start = utc_now()
    for offset, cents in enumerate((4900, 5900, 6900)):
        await store.record_price_change(PricingHistoryEntry(
            repository_id=repository.id,
            price_cents=cents,
            pricing_type=PricingType.ONE_TIME,
            changed_by="owner_1",
            effective_from=start + timedelta(minutes=offset),
        ))

    history = await store.list_price_history(repository.id)

    assert [e.price_cents for e in history] == [4900, 5900, 6900]
    assert [e.is_current for e in history] == [False, False, True]
    assert history[0].effective_until == history[1].effective_from
    assert (await store.current_price(repository.id)).price_cents == 6900
    assert await store.current_price("other") is None
