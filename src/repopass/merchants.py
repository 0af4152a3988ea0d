"""Merchant self-service: provider credentials, GitHub token, preferences and catalog.

Everything here is scoped to the calling owner. A repository or purchase
owned by someone else is reported as not found.
"""
from __future__ import annotations

import dataclasses
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional, Union

from .crypto import CredentialCipher
from .exceptions import (
    ConflictError,
    NotFoundError,
    RepoPassException,
    UnsupportedOperation,
    ValidationError,
)
from .models import (
    AccessStatus,
    Owner,
    PaymentProviderType,
    PricingHistoryEntry,
    PricingType,
    Purchase,
    PurchaseStatus,
    Repository,
    SubscriptionCadence,
    utc_now,
)
from .providers.factory import PaymentProviderFactory, resolve_provider

logger = logging.getLogger(__name__)

GITHUB_TOKEN_PREFIXES = ("ghp_", "github_pat_")

# Fields an owner may edit in place; pricing goes through PricingService
EDITABLE_REPOSITORY_FIELDS = frozenset({"name", "description", "is_active", "require_email_for_free"})

_SLUG_INVALID = re.compile(r"[^a-z0-9-]")


def slugify(name: str) -> str:
    return _SLUG_INVALID.sub("-", name.lower())


@dataclass
class RepositoryStats:
    total_purchases: int = 0
    active_purchases: int = 0
    total_revenue_cents: int = 0


@dataclass
class Customer:
    purchase: Purchase
    repository_name: str
    repository_slug: str


class MerchantService:
    def __init__(
        self,
        store: Any,
        provider_factory: PaymentProviderFactory,
        cipher: CredentialCipher,
    ) -> None:
        self._store = store
        self._factory = provider_factory
        self._cipher = cipher

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def _owner(self, owner_id: str) -> Owner:
        return await self._store.get_owner(owner_id) or Owner(id=owner_id, email="")

    async def connect_payment_provider(
        self,
        owner_id: str,
        provider: Union[str, PaymentProviderType],
        values: dict[str, Any],
    ) -> PaymentProviderType:
        """Replace the owner's provider credentials with a new set.

        Only the fields of the selected provider are kept, so switching
        providers drops the old secrets.
        """
        stored = self._factory.seal(owner_id, provider, values)
        await self._store.save_payment_credentials(stored)
        logger.info("Owner %s connected payment provider %s", owner_id, stored.provider)
        return resolve_provider(stored.provider)

    async def disconnect_payment_provider(self, owner_id: str) -> bool:
        removed = await self._store.delete_payment_credentials(owner_id)
        if removed:
            logger.info("Owner %s disconnected their payment provider", owner_id)
        return removed

    async def set_github_token(self, owner_id: str, token: str) -> Owner:
        token = (token or "").strip()
        if not token:
            raise ValidationError("GitHub personal access token is required", field="github_token")
        if not token.startswith(GITHUB_TOKEN_PREFIXES):
            raise ValidationError("Invalid GitHub personal access token format", field="github_token")

        owner = await self._owner(owner_id)
        owner.encrypted_github_token = self._cipher.encrypt(token)
        await self._store.save_owner(owner)
        logger.info("Owner %s stored a GitHub token", owner_id)
        return owner

    async def set_email_preferences(
        self,
        owner_id: str,
        email_notifications: bool,
        email: Optional[str] = None,
    ) -> Owner:
        owner = await self._owner(owner_id)
        owner.email_notifications = email_notifications
        if email is not None:
            owner.email = email
        await self._store.save_owner(owner)
        return owner

    # ------------------------------------------------------------------
    # Repositories
    # ------------------------------------------------------------------

    async def create_repository(
        self,
        owner_id: str,
        github_owner: str,
        github_repo_name: str,
        pricing_type: Union[str, PricingType],
        price_cents: int = 0,
        *,
        name: str = "",
        description: str = "",
        subscription_cadence: Optional[Union[str, SubscriptionCadence]] = None,
        custom_cadence_days: Optional[int] = None,
        require_email_for_free: bool = False,
        payment_provider: Optional[Union[str, PaymentProviderType]] = None,
    ) -> Repository:
        if payment_provider is None:
            stored = await self._factory.get_user_payment_credentials(owner_id)
            payment_provider = stored.provider if stored else PaymentProviderType.STRIPE

        repository = Repository(
            owner_id=owner_id,
            github_owner=github_owner,
            github_repo_name=github_repo_name,
            slug=slugify(github_repo_name),
            pricing_type=pricing_type,
            price_cents=price_cents,
            name=name,
            description=description,
            subscription_cadence=subscription_cadence,
            custom_cadence_days=custom_cadence_days,
            require_email_for_free=require_email_for_free,
            payment_provider=resolve_provider(payment_provider),
        )
        if await self._store.get_repository_by_slug(repository.slug) is not None:
            raise ConflictError(
                f"A repository with slug {repository.slug!r} already exists",
                details={"slug": repository.slug},
            )

        await self._store.save_repository(repository)
        await self._store.record_price_change(
            PricingHistoryEntry(
                repository_id=repository.id,
                price_cents=repository.price_cents,
                pricing_type=repository.pricing_type,
                changed_by=owner_id,
                subscription_cadence=repository.subscription_cadence,
                custom_cadence_days=repository.custom_cadence_days,
            )
        )
        logger.info("Owner %s listed repository %s (%s)", owner_id, repository.id, repository.slug)
        return repository

    async def get_repository(self, owner_id: str, repository_id: str) -> Repository:
        repository = await self._store.get_repository(repository_id)
        if repository is None or repository.owner_id != owner_id:
            raise NotFoundError("Repository", repository_id)
        return repository

    async def repository_stats(self, repository_id: str) -> RepositoryStats:
        stats = RepositoryStats()
        for purchase in await self._store.list_purchases(repository_id):
            stats.total_purchases += 1
            if purchase.access_status == AccessStatus.ACTIVE:
                stats.active_purchases += 1
            if purchase.status == PurchaseStatus.COMPLETED:
                stats.total_revenue_cents += purchase.amount_cents
        return stats

    async def list_repositories(self, owner_id: str) -> list[Repository]:
        return await self._store.list_repositories(owner_id)

    async def update_repository(
        self,
        owner_id: str,
        repository_id: str,
        changes: dict[str, Any],
    ) -> Repository:
        unknown = set(changes) - EDITABLE_REPOSITORY_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update field(s): {', '.join(sorted(unknown))}")

        repository = await self.get_repository(owner_id, repository_id)
        updated = dataclasses.replace(repository, **changes, updated_at=utc_now())
        await self._store.save_repository(updated)

        if updated.external_product_id and {"name", "description"} & set(changes):
            await self._sync_remote_product(updated)
        return updated

    async def deactivate_repository(self, owner_id: str, repository_id: str) -> Repository:
        return await self.update_repository(owner_id, repository_id, {"is_active": False})

    async def _sync_remote_product(self, repository: Repository) -> None:
        stored = await self._factory.get_user_payment_credentials(repository.owner_id)
        if not self._factory.validate_credentials(stored):
            return
        adapter = await self._factory.create_and_initialize(stored)
        try:
            await adapter.update_product(repository.external_product_id, repository.product_details())
        except UnsupportedOperation as e:
            logger.info("Remote product for %s left unchanged: %s", repository.id, e.message)
        except RepoPassException as e:
            logger.warning("Updating remote product for %s failed: %s", repository.id, e.message)
        finally:
            await adapter.close()

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    async def list_customers(
        self,
        owner_id: str,
        repository_id: Optional[str] = None,
        access_status: Optional[Union[str, AccessStatus]] = None,
    ) -> list[Customer]:
        """Purchases across the owner's repositories, newest first."""
        if repository_id is not None:
            repositories = [await self.get_repository(owner_id, repository_id)]
        else:
            repositories = await self._store.list_repositories(owner_id)
        wanted = AccessStatus(access_status) if access_status else None

        customers = []
        for repository in repositories:
            for purchase in await self._store.list_purchases(repository.id):
                if wanted is not None and purchase.access_status != wanted:
                    continue
                customers.append(Customer(purchase, repository.display_name, repository.slug))
        customers.sort(key=lambda c: c.purchase.created_at, reverse=True)
        return customers
