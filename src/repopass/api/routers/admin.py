"""Repository owner endpoints: settings, catalog, customers, revocation and pricing."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator

from repopass.checkout import is_valid_email
from repopass.exceptions import NotFoundError
from repopass.merchants import MerchantService, RepositoryStats
from repopass.models import (
    AccessStatus,
    PaymentProviderType,
    PricingType,
    Purchase,
    Repository,
    SubscriptionCadence,
)
from repopass.pricing import PricingService
from repopass.reconciliation import PurchaseReconciliationEngine

router = APIRouter(prefix="/admin", tags=["admin"])


@dataclass
class AdminDeps:
    engine: PurchaseReconciliationEngine
    pricing_service: PricingService
    store: Any
    merchant_service: MerchantService


def get_deps() -> AdminDeps:
    raise NotImplementedError("Dependency override required")


def require_admin(x_admin_id: Optional[str] = Header(default=None)) -> str:
    """Owner identity is asserted by the authenticating gateway."""
    if not x_admin_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Admin identity required")
    return x_admin_id


class RevokeRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class AccessLogItem(BaseModel):
    id: str
    action: str
    status: str
    error_message: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: str


class PricingRequest(BaseModel):
    price_cents: int = Field(ge=0)
    pricing_type: PricingType
    subscription_cadence: Optional[SubscriptionCadence] = None
    custom_cadence_days: Optional[int] = Field(default=None, ge=1)


@router.post("/purchases/{purchase_id}/revoke")
async def revoke_purchase(
    purchase_id: str,
    request: Optional[RevokeRequest] = None,
    admin_id: str = Depends(require_admin),
    deps: AdminDeps = Depends(get_deps),
):
    reason = request.reason if request else None
    result = await deps.engine.revoke_manually(purchase_id, admin_id, reason)
    return result.to_dict()


@router.get("/purchases/{purchase_id}/access-log", response_model=list[AccessLogItem])
async def purchase_access_log(
    purchase_id: str,
    admin_id: str = Depends(require_admin),
    deps: AdminDeps = Depends(get_deps),
):
    purchase = await deps.store.get_purchase(purchase_id)
    repository = await deps.store.get_repository(purchase.repository_id) if purchase else None
    if repository is None or repository.owner_id != admin_id:
        raise NotFoundError("Purchase", purchase_id)

    entries = await deps.engine.audit.history(purchase_id)
    return [
        AccessLogItem(
            id=entry.id,
            action=entry.action.value,
            status=entry.status.value,
            error_message=entry.error_message,
            metadata=entry.metadata,
            created_at=entry.created_at.isoformat(),
        )
        for entry in entries
    ]


@router.put("/repositories/{repository_id}/pricing")
async def update_pricing(
    repository_id: str,
    request: PricingRequest,
    admin_id: str = Depends(require_admin),
    deps: AdminDeps = Depends(get_deps),
):
    repository = await deps.pricing_service.change_price(
        repository_id,
        admin_id,
        request.price_cents,
        request.pricing_type,
        cadence=request.subscription_cadence,
        custom_cadence_days=request.custom_cadence_days,
    )
    return {
        "repository_id": repository.id,
        "price_cents": repository.price_cents,
        "pricing_type": repository.pricing_type.value,
        "subscription_cadence": repository.subscription_cadence.value if repository.subscription_cadence else None,
        "custom_cadence_days": repository.custom_cadence_days,
        "external_price_id": repository.external_price_id,
    }


# =============================================================================
# Settings
# =============================================================================

class PaymentProviderRequest(BaseModel):
    provider: PaymentProviderType
    credentials: dict[str, str] = Field(default_factory=dict)


class GitHubTokenRequest(BaseModel):
    github_token: str = Field(min_length=1)


class EmailPreferencesRequest(BaseModel):
    email_notifications: bool
    email: Optional[str] = None

    @field_validator("email")
    @classmethod
    def check_email(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        if not is_valid_email(v):
            raise ValueError("must be a valid email address")
        return v


@router.put("/settings/payment-provider")
async def connect_payment_provider(
    request: PaymentProviderRequest,
    admin_id: str = Depends(require_admin),
    deps: AdminDeps = Depends(get_deps),
):
    provider = await deps.merchant_service.connect_payment_provider(
        admin_id, request.provider, request.credentials
    )
    return {"provider": provider.value, "connected": True}


@router.delete("/settings/payment-provider")
async def disconnect_payment_provider(
    admin_id: str = Depends(require_admin),
    deps: AdminDeps = Depends(get_deps),
):
    await deps.merchant_service.disconnect_payment_provider(admin_id)
    return {"connected": False}


@router.put("/settings/github-token")
async def store_github_token(
    request: GitHubTokenRequest,
    admin_id: str = Depends(require_admin),
    deps: AdminDeps = Depends(get_deps),
):
    await deps.merchant_service.set_github_token(admin_id, request.github_token)
    return {"github_token_configured": True}


@router.put("/settings/email-preferences")
async def update_email_preferences(
    request: EmailPreferencesRequest,
    admin_id: str = Depends(require_admin),
    deps: AdminDeps = Depends(get_deps),
):
    owner = await deps.merchant_service.set_email_preferences(
        admin_id, request.email_notifications, request.email
    )
    return {"email": owner.email, "email_notifications": owner.email_notifications}


# =============================================================================
# Repositories
# =============================================================================

class CreateRepositoryRequest(BaseModel):
    github_owner: str = Field(min_length=1)
    github_repo_name: str = Field(min_length=1)
    name: str = ""
    description: str = ""
    pricing_type: PricingType
    price_cents: int = Field(default=0, ge=0)
    subscription_cadence: Optional[SubscriptionCadence] = None
    custom_cadence_days: Optional[int] = Field(default=None, ge=1)
    require_email_for_free: bool = False
    payment_provider: Optional[PaymentProviderType] = None


class UpdateRepositoryRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    is_active: Optional[bool] = None
    require_email_for_free: Optional[bool] = None


def _repository_dict(repository: Repository, stats: Optional[RepositoryStats] = None) -> dict[str, Any]:
    body: dict[str, Any] = {
        "id": repository.id,
        "slug": repository.slug,
        "name": repository.display_name,
        "description": repository.description,
        "github_owner": repository.github_owner,
        "github_repo_name": repository.github_repo_name,
        "pricing_type": repository.pricing_type.value,
        "price_cents": repository.price_cents,
        "subscription_cadence": repository.subscription_cadence.value if repository.subscription_cadence else None,
        "custom_cadence_days": repository.custom_cadence_days,
        "payment_provider": repository.payment_provider.value,
        "is_active": repository.is_active,
        "require_email_for_free": repository.require_email_for_free,
        "created_at": repository.created_at.isoformat(),
    }
    if stats is not None:
        body["stats"] = {
            "total_purchases": stats.total_purchases,
            "active_purchases": stats.active_purchases,
            "total_revenue_cents": stats.total_revenue_cents,
        }
    return body


@router.get("/repositories")
async def list_repositories(
    admin_id: str = Depends(require_admin),
    deps: AdminDeps = Depends(get_deps),
):
    repositories = await deps.merchant_service.list_repositories(admin_id)
    return {"repositories": [_repository_dict(r) for r in repositories]}


@router.post("/repositories", status_code=status.HTTP_201_CREATED)
async def create_repository(
    request: CreateRepositoryRequest,
    admin_id: str = Depends(require_admin),
    deps: AdminDeps = Depends(get_deps),
):
    repository = await deps.merchant_service.create_repository(
        admin_id,
        request.github_owner,
        request.github_repo_name,
        request.pricing_type,
        request.price_cents,
        name=request.name,
        description=request.description,
        subscription_cadence=request.subscription_cadence,
        custom_cadence_days=request.custom_cadence_days,
        require_email_for_free=request.require_email_for_free,
        payment_provider=request.payment_provider,
    )
    return _repository_dict(repository)


@router.get("/repositories/{repository_id}")
async def get_repository(
    repository_id: str,
    admin_id: str = Depends(require_admin),
    deps: AdminDeps = Depends(get_deps),
):
    repository = await deps.merchant_service.get_repository(admin_id, repository_id)
    stats = await deps.merchant_service.repository_stats(repository.id)
    return _repository_dict(repository, stats)


@router.patch("/repositories/{repository_id}")
async def update_repository(
    repository_id: str,
    request: UpdateRepositoryRequest,
    admin_id: str = Depends(require_admin),
    deps: AdminDeps = Depends(get_deps),
):
    repository = await deps.merchant_service.update_repository(
        admin_id, repository_id, request.model_dump(exclude_none=True)
    )
    return _repository_dict(repository)


@router.delete("/repositories/{repository_id}")
async def deactivate_repository(
    repository_id: str,
    admin_id: str = Depends(require_admin),
    deps: AdminDeps = Depends(get_deps),
):
    repository = await deps.merchant_service.deactivate_repository(admin_id, repository_id)
    return {"id": repository.id, "is_active": repository.is_active}


# =============================================================================
# Customers
# =============================================================================

def _customer_dict(purchase: Purchase, repository_name: str, repository_slug: str) -> dict[str, Any]:
    return {
        "purchase_id": purchase.id,
        "repository_id": purchase.repository_id,
        "repository_name": repository_name,
        "repository_slug": repository_slug,
        "github_username": purchase.github_username,
        "email": purchase.email,
        "amount_cents": purchase.amount_cents,
        "status": purchase.status.value,
        "access_status": purchase.access_status.value,
        "created_at": purchase.created_at.isoformat(),
    }


@router.get("/customers")
async def list_customers(
    repository_id: Optional[str] = Query(default=None),
    access_status: Optional[AccessStatus] = Query(default=None),
    admin_id: str = Depends(require_admin),
    deps: AdminDeps = Depends(get_deps),
):
    customers = await deps.merchant_service.list_customers(admin_id, repository_id, access_status)
    return {
        "customers": [
            _customer_dict(c.purchase, c.repository_name, c.repository_slug) for c in customers
        ]
    }
