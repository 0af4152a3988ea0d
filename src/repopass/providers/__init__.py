"""Payment provider adapters."""
from repopass.providers.base import PaymentProviderAdapter
from repopass.providers.factory import PaymentProviderFactory, resolve_provider
from repopass.providers.gumroad import GumroadProvider
from repopass.providers.lemon_squeezy import LemonSqueezyProvider
from repopass.providers.paddle import PaddleProvider
from repopass.providers.stripe import StripeProvider

__all__ = [
    "PaymentProviderAdapter",
    "PaymentProviderFactory",
    "resolve_provider",
    "StripeProvider",
    "LemonSqueezyProvider",
    "GumroadProvider",
    "PaddleProvider",
]
