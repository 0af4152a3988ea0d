from __future__ import annotations

import pytest

from repopass.credentials import (
    GumroadCredentials,
    PaddleCredentials,
    StoredPaymentCredentials,
    StripeCredentials,
)
from repopass.crypto import CredentialCipher, DecryptionError
from repopass.exceptions import ConfigurationError, InvalidCredentials, UnsupportedProvider
from repopass.models import PaymentProviderType
from repopass.providers import GumroadProvider, PaddleProvider, StripeProvider


def test_variant_rejects_missing_required_field():
    with pytest.raises(InvalidCredentials) as exc_info:
        StripeCredentials(secret_key="sk_test", publishable_key="")
    assert exc_info.value.missing == ["publishable_key"]
    assert exc_info.value.http_status == 400


def test_secret_fields_are_hidden_from_repr():
    creds = PaddleCredentials(vendor_id="123", api_key="super-secret")
    assert "super-secret" not in repr(creds)


def test_cipher_roundtrip_and_tamper_detection(cipher: CredentialCipher):
    token = cipher.encrypt("sk_live_abc")
    assert token != "sk_live_abc"
    assert cipher.decrypt(token) == "sk_live_abc"

    other = CredentialCipher("another-secret-that-is-long-enough-99", scrypt_n=2**4)
    with pytest.raises(DecryptionError):
        other.decrypt(token)
    with pytest.raises(DecryptionError):
        cipher.decrypt("not-base64!!")


def test_cipher_requires_secret():
    with pytest.raises(ConfigurationError):
        CredentialCipher("")


def test_factory_create_returns_uninitialized_adapter(factory):
    adapter = factory.create("paddle")
    assert isinstance(adapter, PaddleProvider)
    assert adapter.name == "paddle"

    stripe = factory.create(PaymentProviderType.STRIPE)
    assert isinstance(stripe, StripeProvider)
    assert stripe.webhook_secret == "whsec_test"


def test_factory_rejects_unknown_provider(factory):
    with pytest.raises(UnsupportedProvider):
        factory.create("paypal")


def test_build_credentials_reports_missing_fields(factory):
    with pytest.raises(InvalidCredentials) as exc_info:
        factory.build_credentials("lemon_squeezy", {"api_key": "key"})
    assert exc_info.value.missing == ["store_id"]


def test_validate_credentials_checks_completeness_without_decrypting(factory):
    complete = StoredPaymentCredentials(
        owner_id="o1",
        provider="gumroad",
        encrypted_fields={"access_token": "opaque-ciphertext"},
    )
    incomplete = StoredPaymentCredentials(owner_id="o1", provider="paddle", encrypted_fields={"vendor_id": "x"})
    unknown = StoredPaymentCredentials(owner_id="o1", provider="paypal", encrypted_fields={"token": "x"})

    assert factory.validate_credentials(complete) is True
    assert factory.validate_credentials(incomplete) is False
    assert factory.validate_credentials(unknown) is False
    assert factory.validate_credentials(None) is False


def test_seal_encrypts_every_field(factory, cipher):
    stored = factory.seal("o1", "stripe", {"secret_key": "sk_test_1", "publishable_key": "pk_test_1"})

    assert stored.provider == "stripe"
    assert set(stored.encrypted_fields) == {"secret_key", "publishable_key"}
    assert "sk_test_1" not in stored.encrypted_fields.values()
    assert cipher.decrypt(stored.encrypted_fields["secret_key"]) == "sk_test_1"


@pytest.mark.asyncio
async def test_create_and_initialize_from_stored_credentials(factory, store):
    stored = factory.seal("o1", "gumroad", {"access_token": "gum_token"})
    await store.save_payment_credentials(stored)

    loaded = await factory.get_user_payment_credentials("o1")
    adapter = await factory.create_and_initialize(loaded)
    try:
        assert isinstance(adapter, GumroadProvider)
        assert adapter._access_token == "gum_token"
    finally:
        await adapter.close()

    assert await factory.has_payment_provider("o1") is True
    assert await factory.has_payment_provider("nobody") is False


@pytest.mark.asyncio
async def test_initialize_rejects_other_providers_credentials():
    adapter = StripeProvider()
    with pytest.raises(InvalidCredentials):
        await adapter.initialize(GumroadCredentials(access_token="gum"))
