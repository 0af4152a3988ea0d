"""Inbound payment provider webhooks.

Every delivery is verified, canonicalized by its adapter and handed to the
reconciliation engine. Missing or bad signatures and malformed bodies get
a 400; an unknown purchase gets a 404. Outcomes the engine has recorded,
including ones that cannot heal by redelivery, are acknowledged with 200.
Unexpected failures surface as 500 so the provider redelivers.
"""
from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass, field
from typing import Any

from fastapi import APIRouter, Depends, Request

from repopass.exceptions import (
    NotFoundError,
    SignatureVerificationFailure,
    ValidationError,
)
from repopass.models import PaymentProviderType
from repopass.providers.factory import PaymentProviderFactory
from repopass.reconciliation import PurchaseReconciliationEngine

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@dataclass
class WebhookDeps:
    engine: PurchaseReconciliationEngine
    provider_factory: PaymentProviderFactory
    # provider -> shared token expected in the ``token`` query parameter
    webhook_tokens: dict[PaymentProviderType, str] = field(default_factory=dict)


def get_deps() -> WebhookDeps:
    raise NotImplementedError("Dependency override required")


def _check_shared_token(provider: PaymentProviderType, request: Request, deps: WebhookDeps) -> None:
    expected = deps.webhook_tokens.get(provider)
    if not expected:
        return
    supplied = request.query_params.get("token", "")
    if not hmac.compare_digest(supplied.encode(), expected.encode()):
        raise SignatureVerificationFailure(f"Invalid {provider.value} webhook token")


async def _process(provider: PaymentProviderType, request: Request, deps: WebhookDeps) -> dict[str, Any]:
    body = await request.body()
    _check_shared_token(provider, request, deps)

    adapter = deps.provider_factory.create(provider)
    try:
        if not await adapter.verify_webhook(body, request.headers):
            raise SignatureVerificationFailure(f"Invalid {provider.value} webhook signature")

        event = await adapter.parse_event(body, request.headers)
    finally:
        await adapter.close()

    try:
        result = await deps.engine.handle_event(event)
    except (ValidationError, NotFoundError):
        raise
    except Exception:
        # Not recorded: a 5xx makes the provider redeliver
        logger.exception(
            "Error handling %s webhook %s (%s)", provider.value, event.event_type, event.event_id
        )
        raise

    return {"received": True, **result.to_dict()}


@router.post("/stripe")
async def stripe_webhook(request: Request, deps: WebhookDeps = Depends(get_deps)):
    return await _process(PaymentProviderType.STRIPE, request, deps)


@router.post("/lemon-squeezy")
async def lemon_squeezy_webhook(request: Request, deps: WebhookDeps = Depends(get_deps)):
    return await _process(PaymentProviderType.LEMON_SQUEEZY, request, deps)


@router.post("/gumroad")
async def gumroad_webhook(request: Request, deps: WebhookDeps = Depends(get_deps)):
    return await _process(PaymentProviderType.GUMROAD, request, deps)


@router.post("/paddle")
async def paddle_webhook(request: Request, deps: WebhookDeps = Depends(get_deps)):
    return await _process(PaymentProviderType.PADDLE, request, deps)
