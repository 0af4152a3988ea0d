from __future__ import annotations

import httpx
import pytest

from repopass.github import CollaboratorGrantService, GitHubClient
from repopass.exceptions import ProviderAPIError

from .conftest import FakeGitHub, json_body


def _service(github: FakeGitHub, **kwargs) -> CollaboratorGrantService:
    kwargs.setdefault("fallback_token", "ghp_service")
    return CollaboratorGrantService(base_delay=0.0, transport=github.transport, **kwargs)


@pytest.mark.asyncio
async def test_grant_checks_user_then_adds_pull_collaborator(github, grant_service):
    result = await grant_service.add_collaborator_with_retry("owner_1", "acme", "toolkit", "alice")

    assert result.success is True
    assert result.attempts == 1
    assert [r.method for r in github.requests] == ["GET", "PUT"]
    put = github.grant_calls()[0]
    assert put.url.path == "/repos/acme/toolkit/collaborators/alice"
    assert json_body(put) == {"permission": "pull"}
    assert put.headers["authorization"] == "Bearer ghp_service"


@pytest.mark.asyncio
async def test_missing_user_fails_without_grant_call(github, grant_service):
    result = await grant_service.add_collaborator_with_retry("owner_1", "acme", "toolkit", "ghost")

    assert result.success is False
    assert result.user_missing is True
    assert github.grant_calls() == []


@pytest.mark.asyncio
async def test_transient_failures_are_retried_until_success():
    github = FakeGitHub(grant_failures=2)
    service = _service(github)

    result = await service.add_collaborator_with_retry("owner_1", "acme", "toolkit", "alice")

    assert result.success is True
    assert result.attempts == 3
    assert len(github.grant_calls()) == 3


@pytest.mark.asyncio
async def test_grant_gives_up_after_max_attempts():
    github = FakeGitHub(grant_failures=5)
    service = _service(github)

    result = await service.add_collaborator_with_retry("owner_1", "acme", "toolkit", "alice")

    assert result.success is False
    assert result.user_missing is False
    assert result.attempts == 3
    assert len(github.grant_calls()) == 3
    assert "502" in result.error


@pytest.mark.asyncio
async def test_permanent_rejection_is_not_retried():
    github = FakeGitHub(grant_failures=5, grant_failure_status=403)
    service = _service(github)

    result = await service.add_collaborator_with_retry("owner_1", "acme", "toolkit", "alice")

    assert result.success is False
    assert len(github.grant_calls()) == 1


@pytest.mark.asyncio
async def test_owner_token_takes_precedence_over_fallback(github):
    async def resolver(owner_id: str):
        return "ghp_owner" if owner_id == "owner_1" else None

    service = _service(github, token_resolver=resolver)
    await service.add_collaborator_with_retry("owner_1", "acme", "toolkit", "alice")
    await service.add_collaborator_with_retry("owner_2", "acme", "toolkit", "bob")

    tokens = [r.headers["authorization"] for r in github.grant_calls()]
    assert tokens == ["Bearer ghp_owner", "Bearer ghp_service"]


@pytest.mark.asyncio
async def test_no_token_at_all_is_a_failed_grant(github):
    service = _service(github, fallback_token="")

    result = await service.add_collaborator_with_retry("owner_1", "acme", "toolkit", "alice")

    assert result.success is False
    assert github.requests == []


@pytest.mark.asyncio
async def test_remove_is_a_single_attempt():
    github = FakeGitHub(remove_status=502)
    service = _service(github)

    result = await service.remove_collaborator("owner_1", "acme", "toolkit", "alice")

    assert result.success is False
    assert result.attempts == 1
    assert len(github.calls("DELETE")) == 1


@pytest.mark.asyncio
async def test_remove_success(github, grant_service):
    result = await grant_service.remove_collaborator("owner_1", "acme", "toolkit", "alice")

    assert result.success is True
    assert github.calls("DELETE")[0].url.path == "/repos/acme/toolkit/collaborators/alice"


@pytest.mark.asyncio
async def test_client_lookup_errors_raise():
    transport = httpx.MockTransport(lambda r: httpx.Response(500, json={"message": "boom"}))
    async with GitHubClient("ghp", transport=transport) as client:
        with pytest.raises(ProviderAPIError) as exc_info:
            await client.check_user_exists("alice")
    assert exc_info.value.transient is True
