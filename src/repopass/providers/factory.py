"""Provider factory: the only place merchant credentials are decrypted."""
from __future__ import annotations

import logging
from typing import Any, Optional, Union

import httpx

from repopass.credentials import (
    CREDENTIAL_TYPES,
    ProviderCredentials,
    StoredPaymentCredentials,
    credential_field_names,
)
from repopass.crypto import CredentialCipher
from repopass.exceptions import ConfigurationError, InvalidCredentials, UnsupportedProvider
from repopass.models import PaymentProviderType
from repopass.providers.base import PaymentProviderAdapter
from repopass.providers.gumroad import GumroadProvider
from repopass.providers.lemon_squeezy import LemonSqueezyProvider
from repopass.providers.paddle import PaddleProvider
from repopass.providers.stripe import StripeProvider

logger = logging.getLogger(__name__)

ADAPTERS: dict[PaymentProviderType, type[PaymentProviderAdapter]] = {
    PaymentProviderType.STRIPE: StripeProvider,
    PaymentProviderType.LEMON_SQUEEZY: LemonSqueezyProvider,
    PaymentProviderType.GUMROAD: GumroadProvider,
    PaymentProviderType.PADDLE: PaddleProvider,
}


def resolve_provider(provider: Union[str, PaymentProviderType]) -> PaymentProviderType:
    try:
        return PaymentProviderType(provider)
    except ValueError:
        raise UnsupportedProvider(str(provider)) from None


class PaymentProviderFactory:
    """Builds provider adapters from stored merchant credentials."""

    def __init__(
        self,
        cipher: Optional[CredentialCipher] = None,
        *,
        site_url: str = "",
        stripe_webhook_secret: Optional[str] = None,
        credential_store: Any = None,
        transports: Optional[dict[PaymentProviderType, httpx.AsyncBaseTransport]] = None,
    ) -> None:
        self._cipher = cipher
        self._site_url = site_url
        self._stripe_webhook_secret = stripe_webhook_secret
        self._credential_store = credential_store
        self._transports = transports or {}

    def create(self, provider: Union[str, PaymentProviderType]) -> PaymentProviderAdapter:
        """Construct an uninitialized adapter."""
        provider_type = resolve_provider(provider)
        kwargs: dict[str, Any] = {
            "site_url": self._site_url,
            "transport": self._transports.get(provider_type),
        }
        if provider_type == PaymentProviderType.STRIPE:
            kwargs["webhook_secret"] = self._stripe_webhook_secret or None
        return ADAPTERS[provider_type](**kwargs)

    def build_credentials(
        self,
        provider: Union[str, PaymentProviderType],
        values: dict[str, Any],
    ) -> ProviderCredentials:
        """Build the credential variant for ``provider`` from plain values."""
        provider_type = resolve_provider(provider)
        names = credential_field_names(provider_type)
        kwargs = {name: values.get(name) or None for name in names}
        credentials_cls = CREDENTIAL_TYPES[provider_type]
        missing = [name for name in credentials_cls.required_fields if not kwargs.get(name)]
        if missing:
            raise InvalidCredentials(provider_type.value, missing)
        return credentials_cls(**kwargs)

    def validate_credentials(self, stored: Optional[StoredPaymentCredentials]) -> bool:
        """Check required-field completeness without decrypting or calling out."""
        if stored is None:
            return False
        try:
            provider_type = resolve_provider(stored.provider)
        except UnsupportedProvider:
            logger.warning("Owner %s has unsupported provider %r", stored.owner_id, stored.provider)
            return False
        required = CREDENTIAL_TYPES[provider_type].required_fields
        return all(stored.encrypted_fields.get(name) for name in required)

    def decrypt(self, stored: StoredPaymentCredentials) -> ProviderCredentials:
        if self._cipher is None:
            raise ConfigurationError("Credential cipher is not configured")
        values = self._cipher.decrypt_fields(stored.encrypted_fields)
        return self.build_credentials(stored.provider, values)

    def seal(
        self,
        owner_id: str,
        provider: Union[str, PaymentProviderType],
        values: dict[str, Any],
    ) -> StoredPaymentCredentials:
        """Validate plain credential values and encrypt them for storage."""
        if self._cipher is None:
            raise ConfigurationError("Credential cipher is not configured")
        credentials = self.build_credentials(provider, values)
        plain = {
            name: getattr(credentials, name)
            for name in credential_field_names(credentials.provider)
            if getattr(credentials, name)
        }
        return StoredPaymentCredentials(
            owner_id=owner_id,
            provider=credentials.provider.value,
            encrypted_fields=self._cipher.encrypt_fields(plain),
        )

    async def create_and_initialize(
        self,
        credentials: Union[ProviderCredentials, StoredPaymentCredentials],
    ) -> PaymentProviderAdapter:
        if isinstance(credentials, StoredPaymentCredentials):
            credentials = self.decrypt(credentials)
        adapter = self.create(credentials.provider)
        await adapter.initialize(credentials)
        return adapter

    async def get_user_payment_credentials(self, owner_id: str) -> Optional[StoredPaymentCredentials]:
        if self._credential_store is None:
            raise ConfigurationError("Credential store is not configured")
        return await self._credential_store.get_payment_credentials(owner_id)

    async def has_payment_provider(self, owner_id: str) -> bool:
        return self.validate_credentials(await self.get_user_payment_credentials(owner_id))
