"""Shared fixtures and fakes for RepoPass tests."""
from __future__ import annotations

import json
from typing import Any, Optional

import httpx
import pytest

from repopass.audit import AuditLog
from repopass.crypto import CredentialCipher
from repopass.github import CollaboratorGrantService
from repopass.models import PricingType, Purchase, Repository, SubscriptionCadence
from repopass.notifications import EmailSender
from repopass.providers.factory import PaymentProviderFactory
from repopass.reconciliation import PurchaseReconciliationEngine
from repopass.scheduling import InlineGrantScheduler
from repopass.storage import PurchaseStore

ADMIN_EMAIL = "ops@repopass.test"
OWNER_ID = "owner_1"


class RecordingEmailSender(EmailSender):
    def __init__(self, fail: bool = False) -> None:
        self.sent: list[dict[str, str]] = []
        self.fail = fail

    async def send(self, to: str, subject: str, html_body: str) -> None:
        if self.fail:
            raise RuntimeError("smtp down")
        self.sent.append({"to": to, "subject": subject, "html": html_body})

    def to(self, address: str) -> list[dict[str, str]]:
        return [m for m in self.sent if m["to"] == address]


class FakeGitHub:
    """Scripted GitHub REST API behind an httpx.MockTransport."""

    def __init__(
        self,
        users: Optional[set[str]] = None,
        grant_failures: int = 0,
        grant_failure_status: int = 502,
        remove_status: int = 204,
    ) -> None:
        self.users = users if users is not None else {"alice", "bob"}
        self.grant_failures = grant_failures
        self.grant_failure_status = grant_failure_status
        self.remove_status = remove_status
        self.requests: list[httpx.Request] = []

    def calls(self, method: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "GET" and path.startswith("/users/"):
            username = path.rsplit("/", 1)[-1]
            if username in self.users:
                return httpx.Response(200, json={"login": username})
            return httpx.Response(404, json={"message": "Not Found"})
        if request.method == "PUT" and "/collaborators/" in path:
            if self.grant_failures > 0:
                self.grant_failures -= 1
                return httpx.Response(self.grant_failure_status, json={"message": "Server Error"})
            return httpx.Response(201, json={"id": 1})
        if request.method == "DELETE" and "/collaborators/" in path:
            if self.remove_status >= 400:
                return httpx.Response(self.remove_status, json={"message": "nope"})
            return httpx.Response(204)
        return httpx.Response(404, json={"message": "unexpected route"})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def grant_calls(self) -> list[httpx.Request]:
        return [r for r in self.calls("PUT") if "/collaborators/" in r.url.path]


def make_repository(**overrides: Any) -> Repository:
    values: dict[str, Any] = {
        "owner_id": OWNER_ID,
        "github_owner": "acme",
        "github_repo_name": "toolkit",
        "slug": "acme-toolkit",
        "pricing_type": PricingType.ONE_TIME,
        "price_cents": 4900,
        "name": "Acme Toolkit",
    }
    values.update(overrides)
    return Repository(**values)


def make_subscription_repository(**overrides: Any) -> Repository:
    values: dict[str, Any] = {
        "pricing_type": PricingType.SUBSCRIPTION,
        "subscription_cadence": SubscriptionCadence.MONTHLY,
        "price_cents": 900,
    }
    values.update(overrides)
    return make_repository(**values)


def make_purchase(repository: Repository, **overrides: Any) -> Purchase:
    values: dict[str, Any] = {
        "repository_id": repository.id,
        "github_username": "alice",
        "email": "alice@example.com",
        "purchase_type": repository.pricing_type,
        "amount_cents": repository.price_cents,
    }
    values.update(overrides)
    return Purchase(**values)


def json_body(request: httpx.Request) -> dict[str, Any]:
    return json.loads(request.content)


@pytest.fixture
def store() -> PurchaseStore:
    return PurchaseStore()


@pytest.fixture
def cipher() -> CredentialCipher:
    # Low scrypt cost keeps the suite fast
    return CredentialCipher("test-secret-that-is-long-enough-1234", scrypt_n=2**4)


@pytest.fixture
def email_sender() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def grant_service(github: FakeGitHub) -> CollaboratorGrantService:
    return CollaboratorGrantService(
        fallback_token="ghp_service",
        max_retries=3,
        base_delay=0.0,
        transport=github.transport,
    )


@pytest.fixture
def factory(cipher: CredentialCipher, store: PurchaseStore) -> PaymentProviderFactory:
    return PaymentProviderFactory(
        cipher,
        site_url="https://repopass.test",
        stripe_webhook_secret="whsec_test",
        credential_store=store,
    )


@pytest.fixture
def engine(
    store: PurchaseStore,
    grant_service: CollaboratorGrantService,
    email_sender: RecordingEmailSender,
    factory: PaymentProviderFactory,
) -> PurchaseReconciliationEngine:
    return PurchaseReconciliationEngine(
        store,
        grant_service,
        email_sender,
        audit=AuditLog(store),
        scheduler=InlineGrantScheduler(),
        provider_factory=factory,
        admin_email=ADMIN_EMAIL,
    )
