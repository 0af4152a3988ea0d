"""RepoPass: paid read access to private GitHub repositories."""

from .config import RepoPassSettings, load_settings
from .exceptions import (
    RepoPassException,
    ValidationError,
    NotFoundError,
    ConflictError,
    SignatureVerificationFailure,
    ProviderAPIError,
    InvalidCredentials,
    UnsupportedProvider,
    UnsupportedOperation,
    ConfigurationError,
)
from .models import (
    PaymentProviderType,
    PricingType,
    SubscriptionCadence,
    PurchaseStatus,
    AccessStatus,
    Repository,
    Purchase,
    AccessLogEntry,
    PricingHistoryEntry,
    WebhookEvent,
    WebhookEventKind,
)
from .storage import PurchaseStore
from .reconciliation import PurchaseReconciliationEngine, ReconciliationAction, ReconciliationResult
from .checkout import CheckoutService, CheckoutSession
from .pricing import PricingService

__version__ = "0.1.0"

__all__ = [
    "RepoPassSettings",
    "load_settings",
    "RepoPassException",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "SignatureVerificationFailure",
    "ProviderAPIError",
    "InvalidCredentials",
    "UnsupportedProvider",
    "UnsupportedOperation",
    "ConfigurationError",
    "PaymentProviderType",
    "PricingType",
    "SubscriptionCadence",
    "PurchaseStatus",
    "AccessStatus",
    "Repository",
    "Purchase",
    "AccessLogEntry",
    "PricingHistoryEntry",
    "WebhookEvent",
    "WebhookEventKind",
    "PurchaseStore",
    "PurchaseReconciliationEngine",
    "ReconciliationAction",
    "ReconciliationResult",
    "CheckoutService",
    "CheckoutSession",
    "PricingService",
]
