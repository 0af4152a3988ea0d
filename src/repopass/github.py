"""GitHub collaborator access.

``GitHubClient`` is a thin async wrapper over the collaborator endpoints.
``CollaboratorGrantService`` is the only component that changes repository
ACLs: it verifies the buyer's identity, grants read access with the
exponential backoff policy and removes access in a single attempt.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx

from .constants import COLLABORATOR_PERMISSION, RetryDefaults, Timeouts
from .crypto import CredentialCipher
from .exceptions import ConfigurationError, ProviderAPIError
from .retry import RetryExhausted, RetryStats, grant_retry_config, retry_async

logger = logging.getLogger(__name__)

PROVIDER_NAME = "github"

TokenResolver = Callable[[str], Awaitable[Optional[str]]]


class GitHubClient:
    """Collaborator endpoints of the GitHub REST API."""

    def __init__(
        self,
        token: str,
        api_base: str = "https://api.github.com",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=api_base.rstrip("/"),
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            timeout=Timeouts.GITHUB_HTTP,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise ProviderAPIError(
                f"GitHub API unreachable: {e}", provider=PROVIDER_NAME, transient=True
            ) from e

    @staticmethod
    def _raise_for(response: httpx.Response, action: str) -> None:
        try:
            detail = response.json().get("message") or response.reason_phrase
        except ValueError:
            detail = response.reason_phrase
        raise ProviderAPIError(
            f"GitHub {action} failed ({response.status_code}): {detail}",
            provider=PROVIDER_NAME,
            status_code=response.status_code,
        )

    async def check_user_exists(self, username: str) -> bool:
        """True if the account exists; 404 means it does not, other errors raise."""
        response = await self._send("GET", f"/users/{username}")
        if response.status_code == 404:
            return False
        if response.status_code >= 400:
            self._raise_for(response, "user lookup")
        return True

    async def add_collaborator(
        self,
        owner: str,
        repo: str,
        username: str,
        permission: str = COLLABORATOR_PERMISSION,
    ) -> None:
        # 201 creates an invitation, 204 means the user already has access
        response = await self._send(
            "PUT",
            f"/repos/{owner}/{repo}/collaborators/{username}",
            json={"permission": permission},
        )
        if response.status_code >= 400:
            self._raise_for(response, "add collaborator")

    async def remove_collaborator(self, owner: str, repo: str, username: str) -> None:
        response = await self._send("DELETE", f"/repos/{owner}/{repo}/collaborators/{username}")
        if response.status_code >= 400:
            self._raise_for(response, "remove collaborator")


@dataclass
class GrantResult:
    success: bool
    error: Optional[str] = None
    attempts: int = 0
    user_missing: bool = False


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, ProviderAPIError) and exc.transient


class OwnerTokenResolver:
    """Looks up a repository owner's stored GitHub token."""

    def __init__(self, owner_store: Any, cipher: CredentialCipher) -> None:
        self._owner_store = owner_store
        self._cipher = cipher

    async def __call__(self, owner_id: str) -> Optional[str]:
        owner = await self._owner_store.get_owner(owner_id)
        if owner is None or not owner.encrypted_github_token:
            return None
        return self._cipher.decrypt(owner.encrypted_github_token)


class CollaboratorGrantService:
    """Grants and removes read-only repository access."""

    def __init__(
        self,
        token_resolver: Optional[TokenResolver] = None,
        *,
        fallback_token: str = "",
        api_base: str = "https://api.github.com",
        max_retries: int = RetryDefaults.GRANT_MAX_ATTEMPTS,
        base_delay: float = RetryDefaults.GRANT_BASE_DELAY,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._token_resolver = token_resolver
        self._fallback_token = fallback_token
        self._api_base = api_base
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._transport = transport

    async def _token_for(self, owner_id: str) -> str:
        token = None
        if self._token_resolver is not None:
            token = await self._token_resolver(owner_id)
        token = token or self._fallback_token
        if not token:
            raise ConfigurationError(f"No GitHub token available for owner {owner_id}")
        return token

    async def client_for(self, owner_id: str) -> GitHubClient:
        """Client authenticated as the owner, or the service token as fallback."""
        token = await self._token_for(owner_id)
        return GitHubClient(token, api_base=self._api_base, transport=self._transport)

    async def check_user_exists(self, owner_id: str, username: str) -> bool:
        async with await self.client_for(owner_id) as client:
            return await client.check_user_exists(username)

    async def add_collaborator_with_retry(
        self,
        owner_id: str,
        host_owner: str,
        host_repo: str,
        username: str,
        max_retries: Optional[int] = None,
    ) -> GrantResult:
        """Verify ``username`` exists, then grant pull access with retries.

        ``max_retries`` is the total number of grant attempts; attempt ``n``
        is followed by a ``base_delay * 2**n`` second wait when it fails
        transiently. A missing account fails immediately with
        ``user_missing`` set and no grant call.
        """
        attempts = max_retries if max_retries is not None else self.max_retries
        try:
            client = await self.client_for(owner_id)
        except ConfigurationError as e:
            return GrantResult(success=False, error=e.message)

        async with client:
            try:
                exists = await client.check_user_exists(username)
            except ProviderAPIError as e:
                return GrantResult(success=False, error=f"Could not verify GitHub user: {e.message}")
            if not exists:
                return GrantResult(
                    success=False,
                    error=f"GitHub user '{username}' does not exist",
                    user_missing=True,
                )

            stats = RetryStats()
            config = grant_retry_config(
                max_attempts=attempts,
                base_delay=self.base_delay,
                retry_condition=_is_transient,
            )
            try:
                await retry_async(
                    client.add_collaborator,
                    host_owner,
                    host_repo,
                    username,
                    config=config,
                    stats=stats,
                )
            except RetryExhausted as e:
                logger.error(
                    "Granting %s access to %s/%s failed after %d attempts",
                    username, host_owner, host_repo, stats.attempts,
                )
                return GrantResult(
                    success=False, error=str(e.original_exception), attempts=stats.attempts
                )
            except ProviderAPIError as e:
                logger.error(
                    "Granting %s access to %s/%s failed permanently: %s",
                    username, host_owner, host_repo, e.message,
                )
                return GrantResult(success=False, error=e.message, attempts=stats.attempts)

        logger.info(
            "Granted %s pull access to %s/%s (attempts=%d)",
            username, host_owner, host_repo, stats.attempts,
        )
        return GrantResult(success=True, attempts=stats.attempts)

    async def remove_collaborator(
        self,
        owner_id: str,
        host_owner: str,
        host_repo: str,
        username: str,
    ) -> GrantResult:
        """Single attempt; the caller logs the outcome and proceeds either way."""
        try:
            async with await self.client_for(owner_id) as client:
                await client.remove_collaborator(host_owner, host_repo, username)
        except (ConfigurationError, ProviderAPIError) as e:
            logger.warning(
                "Removing %s from %s/%s failed: %s", username, host_owner, host_repo, e.message
            )
            return GrantResult(success=False, error=e.message, attempts=1)
        logger.info("Removed %s from %s/%s", username, host_owner, host_repo)
        return GrantResult(success=True, attempts=1)
