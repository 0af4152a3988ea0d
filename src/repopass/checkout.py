"""Checkout initiation and free-access grants."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

from .constants import Limits, PLACEHOLDER_EMAIL_DOMAIN
from .exceptions import (
    ConflictError,
    InvalidCredentials,
    NotFoundError,
    RepoPassException,
    ValidationError,
)
from .models import (
    AccessLogAction,
    AccessStatus,
    CheckoutMetadata,
    PaymentProviderType,
    PricingType,
    Purchase,
    PurchaseStatus,
    Repository,
)
from .notifications import purchase_confirmation
from .providers.base import PaymentProviderAdapter
from .providers.factory import PaymentProviderFactory
from .reconciliation import (
    PurchaseReconciliationEngine,
    ReconciliationAction,
)

logger = logging.getLogger(__name__)

_USERNAME_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9-]*[A-Za-z0-9])?$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def validate_github_username(value: Optional[str]) -> str:
    username = (value or "").strip()
    if not username or len(username) > Limits.GITHUB_USERNAME_MAX_LENGTH:
        raise ValidationError(
            f"GitHub username must be 1-{Limits.GITHUB_USERNAME_MAX_LENGTH} characters",
            field="github_username",
        )
    if not _USERNAME_RE.match(username):
        raise ValidationError("GitHub username contains invalid characters", field="github_username")
    return username


def is_valid_email(value: Optional[str]) -> bool:
    return bool(_EMAIL_RE.match((value or "").strip()))


def validate_email(value: Optional[str]) -> str:
    email = (value or "").strip()
    if not is_valid_email(email):
        raise ValidationError("A valid email address is required", field="email")
    return email


def placeholder_email(github_username: str) -> str:
    return f"{github_username}@{PLACEHOLDER_EMAIL_DOMAIN}"


@dataclass
class CheckoutSession:
    checkout_url: str
    provider: PaymentProviderType
    purchase_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "checkout_url": self.checkout_url,
            "provider": self.provider.value,
            "purchase_id": self.purchase_id,
        }


class CheckoutService:
    """Entry points that create purchases."""

    def __init__(
        self,
        store: Any,
        provider_factory: PaymentProviderFactory,
        engine: PurchaseReconciliationEngine,
    ) -> None:
        self._store = store
        self._factory = provider_factory
        self._engine = engine

    async def _active_repository(self, repository_id: str) -> Repository:
        repository = await self._store.get_repository(repository_id)
        if repository is None or not repository.is_active:
            raise NotFoundError("Repository", repository_id)
        return repository

    async def initiate_checkout(
        self,
        repository_id: str,
        email: str,
        github_username: str,
    ) -> CheckoutSession:
        """Create a pending purchase and a hosted checkout URL for it."""
        github_username = validate_github_username(github_username)
        email = validate_email(email)

        repository = await self._active_repository(repository_id)
        if repository.pricing_type == PricingType.FREE:
            raise ValidationError("Free repositories are claimed without checkout", field="repository_id")

        stored = await self._factory.get_user_payment_credentials(repository.owner_id)
        if not self._factory.validate_credentials(stored):
            raise InvalidCredentials(
                repository.payment_provider.value,
                message="The repository owner has not configured a payment provider",
            )
        if stored.provider != repository.payment_provider.value:
            raise InvalidCredentials(
                repository.payment_provider.value,
                message=f"Repository is sold through {repository.payment_provider.value} "
                        f"but the owner's credentials are for {stored.provider}",
            )

        adapter = await self._factory.create_and_initialize(stored)
        try:
            price_id = await self._ensure_remote_product(adapter, repository)
            purchase = await self._store.create_purchase(
                Purchase(
                    repository_id=repository.id,
                    github_username=github_username,
                    email=email,
                    purchase_type=repository.pricing_type,
                    amount_cents=repository.price_cents,
                    product_id=repository.external_product_id,
                )
            )
            metadata = CheckoutMetadata(
                repository_id=repository.id,
                github_username=github_username,
                email=email,
                purchase_id=purchase.id,
            )
            try:
                checkout_url = await adapter.create_checkout_url(
                    price_id,
                    metadata,
                    recurring=repository.pricing_type == PricingType.SUBSCRIPTION,
                )
            except RepoPassException:
                logger.exception("Checkout URL creation failed for purchase %s", purchase.id)
                await self._store.transition_purchase(
                    purchase.id,
                    expected={"status": PurchaseStatus.PENDING},
                    changes={"status": PurchaseStatus.FAILED},
                )
                raise
        finally:
            await adapter.close()

        await self._engine.notify_buyer(
            purchase,
            AccessLogAction.EMAIL_SENT_CONFIRMATION,
            purchase_confirmation(repository.display_name, github_username, repository.price_cents),
        )
        logger.info(
            "Checkout started for %s on repository %s via %s",
            github_username, repository.id, adapter.name,
        )
        return CheckoutSession(
            checkout_url=checkout_url,
            provider=repository.payment_provider,
            purchase_id=purchase.id,
        )

    async def _ensure_remote_product(
        self,
        adapter: PaymentProviderAdapter,
        repository: Repository,
    ) -> str:
        if repository.external_product_id and repository.external_price_id:
            return repository.external_price_id
        result = await adapter.create_product(repository.product_details(), repository.price_details())
        await self._store.set_external_ids(repository.id, result.product_id, result.price_id)
        repository.external_product_id = result.product_id
        repository.external_price_id = result.price_id
        logger.info(
            "Created %s product %s for repository %s",
            adapter.name, result.product_id, repository.id,
        )
        return result.price_id

    async def request_free_access(
        self,
        repository_id: str,
        github_username: str,
        email: Optional[str] = None,
    ) -> Purchase:
        """Claim a free repository and grant access inline."""
        github_username = validate_github_username(github_username)
        repository = await self._active_repository(repository_id)
        if repository.pricing_type != PricingType.FREE:
            raise ValidationError("Repository is not free", field="repository_id")

        if email:
            email = validate_email(email)
        elif repository.require_email_for_free:
            raise ValidationError("Email is required for this repository", field="email")
        else:
            email = placeholder_email(github_username)

        if await self._store.has_purchase(repository.id, github_username):
            raise ConflictError(
                f"{github_username} already has a purchase for this repository",
                details={"repository_id": repository.id, "github_username": github_username},
            )

        purchase = await self._store.create_purchase(
            Purchase(
                repository_id=repository.id,
                github_username=github_username,
                email=email,
                purchase_type=PricingType.ONE_TIME,
                amount_cents=0,
                status=PurchaseStatus.COMPLETED,
                access_status=AccessStatus.PENDING,
            )
        )
        result = await self._engine.grant_access(purchase.id)
        if result.action != ReconciliationAction.ACCESS_GRANTED:
            logger.error(
                "Free access grant for purchase %s ended with %s: %s",
                purchase.id, result.action.value, result.message,
            )
            raise RepoPassException(
                "Could not grant repository access. The repository owner has been notified.",
                error_code="GRANT_FAILED",
                details={"purchase_id": purchase.id},
            )
        return await self._store.get_purchase(purchase.id)
