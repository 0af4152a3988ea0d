"""Repository price changes and their history."""
from __future__ import annotations

import dataclasses
import logging
from typing import Any, Optional, Union

from .exceptions import NotFoundError, RepoPassException, UnsupportedOperation
from .models import (
    PricingHistoryEntry,
    PricingType,
    Repository,
    SubscriptionCadence,
    utc_now,
)
from .providers.factory import PaymentProviderFactory

logger = logging.getLogger(__name__)


class PricingService:
    def __init__(self, store: Any, provider_factory: PaymentProviderFactory) -> None:
        self._store = store
        self._factory = provider_factory

    async def change_price(
        self,
        repository_id: str,
        actor_id: str,
        price_cents: int,
        pricing_type: Union[str, PricingType],
        cadence: Optional[Union[str, SubscriptionCadence]] = None,
        custom_cadence_days: Optional[int] = None,
    ) -> Repository:
        """Apply new pricing, close the open history entry and sync the provider.

        Only the repository owner may change pricing. When the provider
        cannot update a price in place the stored external ids are cleared
        and the next checkout recreates the remote product.
        """
        repository = await self._store.get_repository(repository_id)
        if repository is None or repository.owner_id != actor_id:
            raise NotFoundError("Repository", repository_id)

        # replace() re-runs validation
        updated = dataclasses.replace(
            repository,
            price_cents=price_cents,
            pricing_type=pricing_type,
            subscription_cadence=cadence,
            custom_cadence_days=custom_cadence_days,
            updated_at=utc_now(),
        )

        if updated.pricing_type == PricingType.FREE:
            updated.external_product_id = None
            updated.external_price_id = None
        elif updated.external_product_id:
            await self._sync_remote_price(updated)

        await self._store.save_repository(updated)
        await self._store.record_price_change(
            PricingHistoryEntry(
                repository_id=updated.id,
                price_cents=updated.price_cents,
                pricing_type=updated.pricing_type,
                changed_by=actor_id,
                subscription_cadence=updated.subscription_cadence,
                custom_cadence_days=updated.custom_cadence_days,
            )
        )
        logger.info(
            "Repository %s repriced to %d (%s) by %s",
            updated.id, updated.price_cents, updated.pricing_type.value, actor_id,
        )
        return updated

    async def _sync_remote_price(self, repository: Repository) -> None:
        stored = await self._factory.get_user_payment_credentials(repository.owner_id)
        if not self._factory.validate_credentials(stored):
            logger.warning("Owner %s has no usable payment credentials; clearing product ids", repository.owner_id)
            repository.external_product_id = None
            repository.external_price_id = None
            return

        adapter = await self._factory.create_and_initialize(stored)
        try:
            repository.external_price_id = await adapter.update_price(
                repository.external_product_id,
                repository.external_price_id or "",
                repository.price_details(),
            )
        except UnsupportedOperation as e:
            logger.info("%s; product will be recreated at next checkout", e.message)
            repository.external_product_id = None
            repository.external_price_id = None
        except RepoPassException as e:
            logger.warning("Updating remote price for %s failed: %s", repository.id, e.message)
            repository.external_product_id = None
            repository.external_price_id = None
        finally:
            await adapter.close()
