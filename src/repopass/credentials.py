"""Merchant payment credentials.

At rest a merchant's credentials are a ``StoredPaymentCredentials`` record:
a provider discriminator plus encrypted fields. At the point of use the
provider factory decrypts them into exactly one ``ProviderCredentials``
variant, each carrying only the fields its provider needs. A variant with
a missing required field cannot be constructed.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import ClassVar, Optional, Union

from .exceptions import InvalidCredentials
from .models import PaymentProviderType


def _require(provider: PaymentProviderType, obj: object, names: tuple[str, ...]) -> None:
    missing = [name for name in names if not getattr(obj, name)]
    if missing:
        raise InvalidCredentials(provider.value, missing)


@dataclass(frozen=True)
class StripeCredentials:
    secret_key: str = field(repr=False)
    publishable_key: str
    webhook_secret: Optional[str] = field(default=None, repr=False)

    provider: ClassVar[PaymentProviderType] = PaymentProviderType.STRIPE
    required_fields: ClassVar[tuple[str, ...]] = ("secret_key", "publishable_key")

    def __post_init__(self) -> None:
        _require(self.provider, self, self.required_fields)


@dataclass(frozen=True)
class LemonSqueezyCredentials:
    api_key: str = field(repr=False)
    store_id: str

    provider: ClassVar[PaymentProviderType] = PaymentProviderType.LEMON_SQUEEZY
    required_fields: ClassVar[tuple[str, ...]] = ("api_key", "store_id")

    def __post_init__(self) -> None:
        _require(self.provider, self, self.required_fields)


@dataclass(frozen=True)
class GumroadCredentials:
    access_token: str = field(repr=False)

    provider: ClassVar[PaymentProviderType] = PaymentProviderType.GUMROAD
    required_fields: ClassVar[tuple[str, ...]] = ("access_token",)

    def __post_init__(self) -> None:
        _require(self.provider, self, self.required_fields)


@dataclass(frozen=True)
class PaddleCredentials:
    vendor_id: str
    api_key: str = field(repr=False)

    provider: ClassVar[PaymentProviderType] = PaymentProviderType.PADDLE
    required_fields: ClassVar[tuple[str, ...]] = ("vendor_id", "api_key")

    def __post_init__(self) -> None:
        _require(self.provider, self, self.required_fields)


ProviderCredentials = Union[
    StripeCredentials,
    LemonSqueezyCredentials,
    GumroadCredentials,
    PaddleCredentials,
]

CREDENTIAL_TYPES: dict[PaymentProviderType, type] = {
    PaymentProviderType.STRIPE: StripeCredentials,
    PaymentProviderType.LEMON_SQUEEZY: LemonSqueezyCredentials,
    PaymentProviderType.GUMROAD: GumroadCredentials,
    PaymentProviderType.PADDLE: PaddleCredentials,
}


def credential_field_names(provider: PaymentProviderType) -> tuple[str, ...]:
    return tuple(f.name for f in fields(CREDENTIAL_TYPES[provider]))


@dataclass
class StoredPaymentCredentials:
    """Encrypted-at-rest credentials for one merchant."""
    owner_id: str
    provider: str
    encrypted_fields: dict[str, str] = field(default_factory=dict, repr=False)
