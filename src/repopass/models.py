"""Domain and canonical payment models."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from .constants import Limits, PLACEHOLDER_EMAIL_DOMAIN
from .exceptions import ValidationError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class PaymentProviderType(str, Enum):
    """Supported payment providers."""
    STRIPE = "stripe"
    LEMON_SQUEEZY = "lemon_squeezy"
    GUMROAD = "gumroad"
    PADDLE = "paddle"


class PricingType(str, Enum):
    ONE_TIME = "one-time"
    SUBSCRIPTION = "subscription"
    FREE = "free"


class SubscriptionCadence(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"
    CUSTOM = "custom"


class PurchaseStatus(str, Enum):
    """Payment lifecycle."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


class AccessStatus(str, Enum):
    """Grant lifecycle, orthogonal to PurchaseStatus."""
    PENDING = "pending"
    ACTIVE = "active"
    REVOKED = "revoked"


class AccessLogAction(str, Enum):
    COLLABORATOR_ADDED = "collaborator_added"
    COLLABORATOR_REMOVED = "collaborator_removed"
    EMAIL_SENT_CONFIRMATION = "email_sent_confirmation"
    EMAIL_SENT_ACCESS_GRANTED = "email_sent_access_granted"
    EMAIL_SENT_REVOCATION = "email_sent_revocation"
    EMAIL_SENT_RENEWAL = "email_sent_renewal"
    PAYMENT_FAILED = "payment_failed"


class AccessLogStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    RETRY = "retry"


class PriceInterval(str, Enum):
    """Billing interval as understood by provider adapters."""
    ONE_TIME = "one_time"
    DAY = "day"
    MONTH = "month"
    YEAR = "year"


class WebhookEventKind(str, Enum):
    """Canonical webhook event kinds consumed by the reconciliation engine."""
    PAYMENT_SUCCEEDED = "payment_succeeded"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    PAYMENT_FAILED = "payment_failed"
    REFUNDED = "refunded"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    IGNORED = "ignored"


# =============================================================================
# Persistent entities
# =============================================================================

@dataclass
class Repository:
    """A private GitHub repository offered for sale."""
    owner_id: str
    github_owner: str
    github_repo_name: str
    slug: str
    pricing_type: PricingType
    price_cents: int = 0
    name: str = ""
    description: str = ""
    subscription_cadence: Optional[SubscriptionCadence] = None
    custom_cadence_days: Optional[int] = None
    is_active: bool = True
    require_email_for_free: bool = False
    payment_provider: PaymentProviderType = PaymentProviderType.STRIPE
    external_product_id: Optional[str] = None
    external_price_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        self.pricing_type = PricingType(self.pricing_type)
        self.payment_provider = PaymentProviderType(self.payment_provider)
        if self.subscription_cadence is not None:
            self.subscription_cadence = SubscriptionCadence(self.subscription_cadence)
        self.validate()

    def validate(self) -> None:
        """Enforce pricing invariants."""
        if self.price_cents < 0:
            raise ValidationError("Price must be non-negative", field="price_cents")
        if self.pricing_type == PricingType.SUBSCRIPTION:
            if self.subscription_cadence is None:
                raise ValidationError(
                    "Subscription pricing requires a cadence",
                    field="subscription_cadence",
                )
            if self.subscription_cadence == SubscriptionCadence.CUSTOM:
                days = self.custom_cadence_days
                if not days or days < 1 or days > Limits.MAX_CUSTOM_CADENCE_DAYS:
                    raise ValidationError(
                        "Custom cadence requires a positive number of days",
                        field="custom_cadence_days",
                    )
        elif self.subscription_cadence is not None:
            raise ValidationError(
                "Cadence is only allowed for subscription pricing",
                field="subscription_cadence",
            )
        if self.pricing_type == PricingType.FREE and self.price_cents != 0:
            raise ValidationError("Free repositories must have a zero price", field="price_cents")

    @property
    def display_name(self) -> str:
        return self.name or f"{self.github_owner}/{self.github_repo_name}"

    def price_details(self, currency: str = "usd") -> "PriceDetails":
        if self.pricing_type != PricingType.SUBSCRIPTION:
            return PriceDetails(amount_cents=self.price_cents, currency=currency)
        if self.subscription_cadence == SubscriptionCadence.YEARLY:
            return PriceDetails(self.price_cents, currency, PriceInterval.YEAR)
        if self.subscription_cadence == SubscriptionCadence.CUSTOM:
            return PriceDetails(
                self.price_cents, currency, PriceInterval.DAY, self.custom_cadence_days or 1
            )
        return PriceDetails(self.price_cents, currency, PriceInterval.MONTH)

    def product_details(self) -> "ProductDetails":
        return ProductDetails(
            name=self.display_name,
            description=self.description or f"Access to {self.github_owner}/{self.github_repo_name}",
            repository_id=self.id,
        )


@dataclass
class Owner:
    """Repository owner (merchant) profile."""
    id: str
    email: str
    email_notifications: bool = True
    encrypted_github_token: Optional[str] = None


@dataclass
class Purchase:
    """One buyer's attempt to obtain access to one repository."""
    repository_id: str
    github_username: str
    email: str
    purchase_type: PricingType
    amount_cents: int
    status: PurchaseStatus = PurchaseStatus.PENDING
    access_status: AccessStatus = AccessStatus.PENDING
    product_id: Optional[str] = None
    customer_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    subscription_id: Optional[str] = None
    revocation_reason: Optional[str] = None
    revoked_by: Optional[str] = None
    revoked_at: Optional[datetime] = None
    access_granted_at: Optional[datetime] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        self.purchase_type = PricingType(self.purchase_type)
        self.status = PurchaseStatus(self.status)
        self.access_status = AccessStatus(self.access_status)

    @property
    def has_contact_email(self) -> bool:
        """Placeholder emails generated for free access are never mailed."""
        return bool(self.email) and not self.email.endswith(f"@{PLACEHOLDER_EMAIL_DOMAIN}")

    def invariant_violations(self) -> list[str]:
        problems = []
        if self.access_status == AccessStatus.ACTIVE and self.status != PurchaseStatus.COMPLETED:
            problems.append("active access requires a completed payment")
        if self.access_status == AccessStatus.REVOKED:
            if self.revoked_at is None:
                problems.append("revoked access requires revoked_at")
            if not (self.revoked_by or self.revocation_reason):
                problems.append("revoked access requires revoked_by or revocation_reason")
        return problems


@dataclass
class AccessLogEntry:
    """Append-only audit record for one side-effect attempt."""
    purchase_id: str
    action: AccessLogAction
    status: AccessLogStatus
    error_message: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        self.action = AccessLogAction(self.action)
        self.status = AccessLogStatus(self.status)


@dataclass
class PricingHistoryEntry:
    repository_id: str
    price_cents: int
    pricing_type: PricingType
    changed_by: str
    subscription_cadence: Optional[SubscriptionCadence] = None
    custom_cadence_days: Optional[int] = None
    effective_from: datetime = field(default_factory=utc_now)
    effective_until: Optional[datetime] = None
    id: str = field(default_factory=new_id)

    @property
    def is_current(self) -> bool:
        return self.effective_until is None


# =============================================================================
# Canonical provider vocabulary
# =============================================================================

@dataclass(frozen=True)
class ProductDetails:
    name: str
    description: str
    repository_id: str


@dataclass(frozen=True)
class PriceDetails:
    amount_cents: int
    currency: str = "usd"
    interval: PriceInterval = PriceInterval.ONE_TIME
    interval_count: int = 1

    @property
    def is_recurring(self) -> bool:
        return self.interval != PriceInterval.ONE_TIME

    @property
    def amount_decimal(self) -> str:
        """Major-unit amount as a string, e.g. 4900 -> '49.00'."""
        return f"{self.amount_cents // 100}.{self.amount_cents % 100:02d}"


@dataclass(frozen=True)
class CreateProductResult:
    product_id: str
    price_id: str


@dataclass(frozen=True)
class CheckoutMetadata:
    """Application context round-tripped through a provider's custom data field."""
    repository_id: str
    github_username: str
    email: str = ""
    purchase_id: Optional[str] = None

    def to_dict(self) -> dict[str, str]:
        data = {
            "repository_id": self.repository_id,
            "github_username": self.github_username,
            "email": self.email,
        }
        if self.purchase_id:
            data["purchase_id"] = self.purchase_id
        return data

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> Optional["CheckoutMetadata"]:
        """Parse metadata; returns None when the purchase cannot be identified."""
        if not data:
            return None
        repository_id = data.get("repository_id") or data.get("repositoryId")
        github_username = data.get("github_username") or data.get("githubUsername")
        if not repository_id or not github_username:
            return None
        return cls(
            repository_id=str(repository_id),
            github_username=str(github_username),
            email=str(data.get("email") or ""),
            purchase_id=(data.get("purchase_id") or data.get("purchaseId")) or None,
        )


@dataclass
class PaymentResult:
    success: bool
    amount_cents: int = 0
    metadata: Optional[CheckoutMetadata] = None
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    payment_intent_id: Optional[str] = None


@dataclass
class WebhookEvent:
    """Provider-agnostic representation of one webhook delivery."""
    provider: PaymentProviderType
    kind: WebhookEventKind
    event_type: str
    event_id: Optional[str] = None
    payment: Optional[PaymentResult] = None
    metadata: Optional[CheckoutMetadata] = None
    subscription_id: Optional[str] = None
    payment_id: Optional[str] = None
    email: Optional[str] = None
    amount_cents: int = 0
    next_billing_at: Optional[datetime] = None
    raw: dict[str, Any] = field(default_factory=dict)
