"""Outbound email: a send boundary plus pure template functions.

Only whether a send succeeded matters to the purchase lifecycle; template
wording is presentation.
"""
from __future__ import annotations

import html
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import httpx

from .constants import Timeouts
from .exceptions import ConfigurationError, ProviderAPIError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailMessage:
    subject: str
    html: str


class EmailSender(ABC):
    """Sends one email; raises on failure."""

    @abstractmethod
    async def send(self, to: str, subject: str, html_body: str) -> None:
        pass


class ResendEmailSender(EmailSender):
    """Email delivery through the Resend REST API."""

    def __init__(
        self,
        api_key: str,
        from_address: str,
        api_base: str = "https://api.resend.com",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not api_key:
            raise ConfigurationError("Email API key is not configured")
        self.from_address = from_address
        self._client = httpx.AsyncClient(
            base_url=api_base.rstrip("/"),
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=Timeouts.EMAIL_HTTP,
            transport=transport,
        )

    async def send(self, to: str, subject: str, html_body: str) -> None:
        try:
            response = await self._client.post(
                "/emails",
                json={"from": self.from_address, "to": [to], "subject": subject, "html": html_body},
            )
        except httpx.TransportError as e:
            raise ProviderAPIError(f"Email API unreachable: {e}", provider="resend") from e
        if response.status_code >= 400:
            raise ProviderAPIError(
                f"Email API error {response.status_code}",
                provider="resend",
                status_code=response.status_code,
            )

    async def close(self) -> None:
        await self._client.aclose()


class LoggingEmailSender(EmailSender):
    """Development sender that only logs the subject line."""

    async def send(self, to: str, subject: str, html_body: str) -> None:
        logger.info("Email to %s: %s", to, subject)


# =============================================================================
# Templates
# =============================================================================

def _esc(value: object) -> str:
    return html.escape(str(value))


def _money(amount_cents: int) -> str:
    return f"${amount_cents / 100:.2f}"


def _wrap(title: str, body: str) -> str:
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f"<h1>{title}</h1>{body}<p>Thanks,<br>The RepoPass Team</p></div>"
    )


def purchase_confirmation(repository_name: str, github_username: str, amount_cents: int) -> EmailMessage:
    return EmailMessage(
        subject=f"Purchase Confirmation - {repository_name}",
        html=_wrap(
            "Purchase confirmed",
            f"<p>Thanks for buying <strong>{_esc(repository_name)}</strong>.</p>"
            f"<p><strong>GitHub username:</strong> {_esc(github_username)}<br>"
            f"<strong>Amount:</strong> {_money(amount_cents)}</p>"
            "<p>Access is being set up; a second email follows once it is granted.</p>",
        ),
    )


def access_granted(
    repository_name: str,
    github_owner: str,
    github_repo_name: str,
    github_username: str,
) -> EmailMessage:
    url = f"https://github.com/{_esc(github_owner)}/{_esc(github_repo_name)}"
    return EmailMessage(
        subject=f"Access Granted - {repository_name}",
        html=_wrap(
            "Access granted",
            f"<p>You now have read access to <strong>{_esc(repository_name)}</strong> "
            f"as <strong>{_esc(github_username)}</strong>.</p>"
            f'<p>Accept the invitation and open <a href="{url}">{url}</a>, '
            f"or clone it with <code>git clone {url}.git</code>.</p>",
        ),
    )


def access_revoked(repository_name: str, reason: Optional[str] = None) -> EmailMessage:
    reason_html = f"<p><strong>Reason:</strong> {_esc(reason)}</p>" if reason else ""
    return EmailMessage(
        subject=f"Access Revoked - {repository_name}",
        html=_wrap(
            "Access revoked",
            f"<p>Your access to <strong>{_esc(repository_name)}</strong> has been revoked.</p>"
            f"{reason_html}<p>Reply to this email if you think this is a mistake.</p>",
        ),
    )


def subscription_renewed(
    repository_name: str,
    amount_cents: int,
    next_billing_at: Optional[datetime],
) -> EmailMessage:
    next_date = next_billing_at.date().isoformat() if next_billing_at else "N/A"
    return EmailMessage(
        subject=f"Subscription Renewed - {repository_name}",
        html=_wrap(
            "Subscription renewed",
            f"<p>Your subscription to <strong>{_esc(repository_name)}</strong> was renewed.</p>"
            f"<p><strong>Amount charged:</strong> {_money(amount_cents)}<br>"
            f"<strong>Next billing date:</strong> {_esc(next_date)}</p>",
        ),
    )


def _alert(title: str, rows: dict[str, object], footer: str) -> str:
    items = "".join(f"<li><strong>{_esc(k)}:</strong> {_esc(v)}</li>" for k, v in rows.items())
    return f"<h2>{_esc(title)}</h2><ul>{items}</ul><p>{_esc(footer)}</p>"


def invalid_username_alert(repository_name: str, github_username: str, email: str, purchase_id: str) -> EmailMessage:
    return EmailMessage(
        subject=f"Invalid GitHub Username - {repository_name}",
        html=_alert(
            "A paid purchase names a GitHub account that does not exist",
            {"Repository": repository_name, "Username": github_username,
             "Buyer email": email, "Purchase": purchase_id},
            "Contact the buyer for the correct username and grant access manually.",
        ),
    )


def grant_failed_alert(
    repository_name: str,
    github_username: str,
    email: str,
    purchase_id: str,
    error: Optional[str],
) -> EmailMessage:
    return EmailMessage(
        subject=f"Failed to Grant Access - {repository_name}",
        html=_alert(
            "Granting repository access failed after all retries",
            {"Repository": repository_name, "Username": github_username,
             "Buyer email": email, "Purchase": purchase_id, "Error": error or "unknown"},
            "Grant access manually or contact the buyer.",
        ),
    )


def payment_failed_alert(
    repository_name: str,
    email: str,
    purchase_id: str,
    amount_cents: int,
    provider: str,
) -> EmailMessage:
    return EmailMessage(
        subject=f"Payment Failed - {repository_name}",
        html=_alert(
            "A subscription payment failed",
            {"Repository": repository_name, "Buyer email": email, "Purchase": purchase_id,
             "Amount": _money(amount_cents), "Provider": provider},
            "Access has been revoked for this purchase.",
        ),
    )
