"""Application factory and service wiring."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from repopass.api.routers import admin, checkout, webhooks
from repopass.audit import AuditLog
from repopass.checkout import CheckoutService
from repopass.config import RepoPassSettings, load_settings
from repopass.crypto import CredentialCipher
from repopass.database import Database, init_database
from repopass.exceptions import ConfigurationError, RepoPassException
from repopass.github import CollaboratorGrantService, OwnerTokenResolver
from repopass.logging import configure_logging
from repopass.merchants import MerchantService
from repopass.models import PaymentProviderType
from repopass.notifications import EmailSender, LoggingEmailSender, ResendEmailSender
from repopass.pricing import PricingService
from repopass.providers.factory import PaymentProviderFactory
from repopass.reconciliation import PurchaseReconciliationEngine
from repopass.scheduling import BackgroundGrantScheduler, GrantScheduler
from repopass.storage import PurchaseStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: RepoPassSettings
    store: Any
    provider_factory: PaymentProviderFactory
    email_sender: EmailSender
    scheduler: GrantScheduler
    engine: PurchaseReconciliationEngine
    checkout_service: CheckoutService
    pricing_service: PricingService
    merchant_service: MerchantService


def build_services(settings: RepoPassSettings, store: Any = None) -> Services:
    """Wire the production object graph from settings."""
    store = store or PurchaseStore(dsn=settings.database_url)
    cipher = CredentialCipher(settings.encryption_secret)
    factory = PaymentProviderFactory(
        cipher,
        site_url=settings.site_url,
        stripe_webhook_secret=settings.stripe_webhook_secret or None,
        credential_store=store,
    )
    if settings.email_api_key:
        email_sender: EmailSender = ResendEmailSender(
            settings.email_api_key,
            settings.email_from,
            api_base=settings.email_api_base,
        )
    else:
        logger.warning("No email API key configured; emails are only logged")
        email_sender = LoggingEmailSender()

    grant_service = CollaboratorGrantService(
        OwnerTokenResolver(store, cipher),
        fallback_token=settings.github_personal_access_token,
        api_base=settings.github_api_base,
        max_retries=settings.grant_max_retries,
        base_delay=settings.grant_base_delay,
    )
    scheduler = BackgroundGrantScheduler()
    engine = PurchaseReconciliationEngine(
        store,
        grant_service,
        email_sender,
        audit=AuditLog(store),
        scheduler=scheduler,
        provider_factory=factory,
        admin_email=settings.admin_email,
    )
    return Services(
        settings=settings,
        store=store,
        provider_factory=factory,
        email_sender=email_sender,
        scheduler=scheduler,
        engine=engine,
        checkout_service=CheckoutService(store, factory, engine),
        pricing_service=PricingService(store, factory),
        merchant_service=MerchantService(store, factory, cipher),
    )


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RepoPassException)
    async def repopass_exception_handler(request: Request, exc: RepoPassException) -> JSONResponse:
        if exc.http_status >= 500:
            logger.error(
                "Server error on %s: %s - %s", request.url.path, exc.error_code, exc.message,
                exc_info=exc,
            )
        else:
            logger.info("Request to %s rejected: %s - %s", request.url.path, exc.error_code, exc.message)
        body = exc.to_dict()
        if isinstance(exc, ConfigurationError):
            body = {"error": exc.error_code, "message": "Service is not configured"}
        return JSONResponse(status_code=exc.http_status, content=body)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {
                "field": ".".join(str(loc) for loc in error["loc"] if loc != "body"),
                "message": error["msg"],
            }
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={"error": "VALIDATION_ERROR", "message": "Invalid request", "details": {"errors": errors}},
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error on %s", request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"error": "INTERNAL_ERROR", "message": "Internal server error"},
        )


def create_app(
    settings: Optional[RepoPassSettings] = None,
    services: Optional[Services] = None,
) -> FastAPI:
    settings = settings or (services.settings if services else load_settings())
    configure_logging(json_format=settings.environment != "dev")
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.database_url.startswith(("postgresql://", "postgres://")):
            await init_database(settings.database_url, settings.environment)
        logger.info("RepoPass API started (%s)", settings.environment)
        yield
        await services.scheduler.drain()
        close = getattr(services.email_sender, "close", None)
        if close is not None:
            await close()
        if settings.database_url.startswith(("postgresql://", "postgres://")):
            await Database.close()
        logger.info("RepoPass API stopped")

    app = FastAPI(title="RepoPass API", version="0.1.0", lifespan=lifespan)
    register_exception_handlers(app)

    tokens = {
        PaymentProviderType.LEMON_SQUEEZY: settings.lemon_squeezy_webhook_token,
        PaymentProviderType.GUMROAD: settings.gumroad_webhook_token,
        PaymentProviderType.PADDLE: settings.paddle_webhook_token,
    }
    app.dependency_overrides[webhooks.get_deps] = lambda: webhooks.WebhookDeps(
        engine=services.engine,
        provider_factory=services.provider_factory,
        webhook_tokens={k: v for k, v in tokens.items() if v},
    )
    app.include_router(webhooks.router, prefix="/webhooks")

    app.dependency_overrides[checkout.get_deps] = lambda: checkout.CheckoutDeps(
        checkout_service=services.checkout_service,
    )
    app.include_router(checkout.router)

    app.dependency_overrides[admin.get_deps] = lambda: admin.AdminDeps(
        engine=services.engine,
        pricing_service=services.pricing_service,
        store=services.store,
        merchant_service=services.merchant_service,
    )
    app.include_router(admin.router)

    return app
