"""Buyer-facing checkout and free-access endpoints."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field, field_validator

from repopass.checkout import CheckoutService, is_valid_email
from repopass.constants import Limits

router = APIRouter(tags=["checkout"])


@dataclass
class CheckoutDeps:
    checkout_service: CheckoutService


def get_deps() -> CheckoutDeps:
    raise NotImplementedError("Dependency override required")


class CheckoutRequest(BaseModel):
    repository_id: str = Field(min_length=1)
    email: str
    github_username: str = Field(min_length=1, max_length=Limits.GITHUB_USERNAME_MAX_LENGTH)

    @field_validator("email")
    @classmethod
    def check_email(cls, v: str) -> str:
        v = v.strip()
        if not is_valid_email(v):
            raise ValueError("must be a valid email address")
        return v


class CheckoutResponse(BaseModel):
    checkout_url: str
    provider: str
    purchase_id: str


class FreeAccessRequest(BaseModel):
    repository_id: str = Field(min_length=1)
    github_username: str = Field(min_length=1, max_length=Limits.GITHUB_USERNAME_MAX_LENGTH)
    email: Optional[str] = None

    @field_validator("email")
    @classmethod
    def check_email(cls, v: Optional[str]) -> Optional[str]:
        if not v or not v.strip():
            return None
        v = v.strip()
        if not is_valid_email(v):
            raise ValueError("must be a valid email address")
        return v


class FreeAccessResponse(BaseModel):
    purchase_id: str
    status: str
    access_status: str


@router.post("/checkout", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def create_checkout(request: CheckoutRequest, deps: CheckoutDeps = Depends(get_deps)):
    session = await deps.checkout_service.initiate_checkout(
        request.repository_id,
        request.email,
        request.github_username,
    )
    return CheckoutResponse(**session.to_dict())


@router.post("/free-access", response_model=FreeAccessResponse, status_code=status.HTTP_201_CREATED)
async def request_free_access(request: FreeAccessRequest, deps: CheckoutDeps = Depends(get_deps)):
    purchase = await deps.checkout_service.request_free_access(
        request.repository_id,
        request.github_username,
        request.email,
    )
    return FreeAccessResponse(
        purchase_id=purchase.id,
        status=purchase.status.value,
        access_status=purchase.access_status.value,
    )
