"""Purchase reconciliation engine.

Drives a purchase through the two independent lifecycles it carries:

    status:        pending -> completed | failed | canceled   (money)
    access_status: pending -> active -> revoked                (grant)

Canonical webhook events, free-access grants and manual revocations all
funnel into this module. Every state change is a conditional update on
the purchase row, so redelivered or racing events converge instead of
double-granting, and ``revoked`` is never left again.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from .audit import AuditLog
from .constants import DEFAULT_MANUAL_REVOKE_REASON
from .exceptions import NotFoundError, RepoPassException, ValidationError
from .github import CollaboratorGrantService
from .models import (
    AccessLogAction,
    AccessLogStatus,
    AccessStatus,
    Purchase,
    PurchaseStatus,
    Repository,
    WebhookEvent,
    WebhookEventKind,
    utc_now,
)
from .notifications import (
    EmailMessage,
    EmailSender,
    access_granted,
    access_revoked,
    grant_failed_alert,
    invalid_username_alert,
    payment_failed_alert,
    subscription_renewed,
)
from .scheduling import GrantScheduler, InlineGrantScheduler

logger = logging.getLogger(__name__)

REVOCATION_REASONS = {
    WebhookEventKind.SUBSCRIPTION_CANCELED: "subscription_canceled",
    WebhookEventKind.REFUNDED: "refunded",
    WebhookEventKind.PAYMENT_FAILED: "payment_failed",
}

_REVOCABLE = (AccessStatus.PENDING, AccessStatus.ACTIVE)


class ReconciliationAction(str, Enum):
    PAYMENT_RECORDED = "payment_recorded"
    ACCESS_GRANTED = "access_granted"
    USER_NOT_FOUND = "user_not_found"
    GRANT_FAILED = "grant_failed"
    ACCESS_REVOKED = "access_revoked"
    ALREADY_REVOKED = "already_revoked"
    RENEWAL_NOTIFIED = "renewal_notified"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


@dataclass
class ReconciliationResult:
    action: ReconciliationAction
    purchase_id: Optional[str] = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"action": self.action.value}
        if self.purchase_id:
            data["purchase_id"] = self.purchase_id
        if self.message:
            data["message"] = self.message
        return data


class PurchaseReconciliationEngine:
    """State machine over (status, access_status) for every purchase."""

    def __init__(
        self,
        store: Any,
        grant_service: CollaboratorGrantService,
        email_sender: EmailSender,
        *,
        audit: Optional[AuditLog] = None,
        scheduler: Optional[GrantScheduler] = None,
        provider_factory: Any = None,
        admin_email: str = "",
    ) -> None:
        self._store = store
        self._grants = grant_service
        self._email = email_sender
        self._audit = audit or AuditLog(store)
        self._scheduler = scheduler or InlineGrantScheduler()
        self._scheduler.bind(self.grant_access)
        self._factory = provider_factory
        self._admin_email = admin_email

    @property
    def audit(self) -> AuditLog:
        return self._audit

    # ------------------------------------------------------------------
    # Event dispatch
    # ------------------------------------------------------------------

    async def handle_event(self, event: WebhookEvent) -> ReconciliationResult:
        logger.info(
            "Reconciling %s event %s (%s)",
            event.provider.value, event.event_type, event.kind.value,
        )
        if event.kind == WebhookEventKind.PAYMENT_SUCCEEDED:
            return await self.record_payment(event)
        if event.kind == WebhookEventKind.SUBSCRIPTION_RENEWED:
            return await self.record_renewal(event)
        if event.kind in REVOCATION_REASONS:
            return await self.revoke_for_event(event)
        return ReconciliationResult(ReconciliationAction.IGNORED, message=event.event_type)

    # ------------------------------------------------------------------
    # Payment success -> grant
    # ------------------------------------------------------------------

    async def _locate_paid_purchase(self, event: WebhookEvent) -> Purchase:
        metadata = event.metadata or (event.payment.metadata if event.payment else None)
        if metadata is None:
            raise ValidationError("Payment event carries no repository/username metadata")

        if metadata.purchase_id:
            purchase = await self._store.get_purchase(metadata.purchase_id)
            if purchase is not None and purchase.repository_id == metadata.repository_id:
                return purchase

        purchase = await self._store.find_pending_purchase(
            metadata.repository_id, metadata.github_username
        )
        if purchase is not None:
            return purchase

        # A redelivery finds nothing pending; match it to the processed purchase
        if event.payment_id:
            purchase = await self._store.find_by_payment_id(event.payment_id)
            if purchase is not None:
                return purchase

        raise NotFoundError(
            "Purchase",
            metadata.purchase_id or f"{metadata.repository_id}/{metadata.github_username}",
        )

    async def record_payment(self, event: WebhookEvent) -> ReconciliationResult:
        """pending -> completed, then hand the grant to the scheduler."""
        purchase = await self._locate_paid_purchase(event)
        if purchase.status != PurchaseStatus.PENDING:
            logger.info(
                "Purchase %s already %s/%s; ignoring duplicate payment event",
                purchase.id, purchase.status.value, purchase.access_status.value,
            )
            return ReconciliationResult(ReconciliationAction.DUPLICATE, purchase.id)

        changes: dict[str, Any] = {"status": PurchaseStatus.COMPLETED}
        payment = event.payment
        if payment is not None:
            if payment.customer_id:
                changes["customer_id"] = payment.customer_id
            if payment.subscription_id:
                changes["subscription_id"] = payment.subscription_id
            if payment.payment_intent_id:
                changes["payment_intent_id"] = payment.payment_intent_id
            if payment.amount_cents:
                changes["amount_cents"] = payment.amount_cents
        elif event.payment_id:
            changes["payment_intent_id"] = event.payment_id

        updated = await self._store.transition_purchase(
            purchase.id,
            expected={"status": PurchaseStatus.PENDING},
            changes=changes,
        )
        if updated is None:
            return ReconciliationResult(ReconciliationAction.DUPLICATE, purchase.id)

        logger.info("Purchase %s marked completed", purchase.id)
        await self._scheduler.schedule(updated.id)
        return ReconciliationResult(ReconciliationAction.PAYMENT_RECORDED, updated.id)

    async def grant_access(self, purchase_id: str) -> ReconciliationResult:
        """Grant repository access for a completed purchase still pending access."""
        purchase = await self._store.get_purchase(purchase_id)
        if purchase is None:
            raise NotFoundError("Purchase", purchase_id)
        if purchase.status != PurchaseStatus.COMPLETED or purchase.access_status != AccessStatus.PENDING:
            return ReconciliationResult(ReconciliationAction.DUPLICATE, purchase.id)

        repository = await self._require_repository(purchase)
        result = await self._grants.add_collaborator_with_retry(
            repository.owner_id,
            repository.github_owner,
            repository.github_repo_name,
            purchase.github_username,
        )

        if result.user_missing:
            await self._audit.record(
                purchase.id,
                AccessLogAction.COLLABORATOR_ADDED,
                AccessLogStatus.FAILED,
                error_message=result.error,
                metadata={"github_username": purchase.github_username, "reason": "user_not_found"},
            )
            await self._alert_admin(
                invalid_username_alert(
                    repository.display_name, purchase.github_username, purchase.email, purchase.id
                )
            )
            return ReconciliationResult(
                ReconciliationAction.USER_NOT_FOUND, purchase.id, "Invalid GitHub username"
            )

        if not result.success:
            await self._audit.record(
                purchase.id,
                AccessLogAction.COLLABORATOR_ADDED,
                AccessLogStatus.FAILED,
                error_message=result.error,
                metadata={"attempts": result.attempts},
            )
            # status=failed flags operator attention although the payment went through
            await self._store.transition_purchase(
                purchase.id,
                expected={"status": PurchaseStatus.COMPLETED, "access_status": AccessStatus.PENDING},
                changes={"status": PurchaseStatus.FAILED},
            )
            await self._alert_admin(
                grant_failed_alert(
                    repository.display_name,
                    purchase.github_username,
                    purchase.email,
                    purchase.id,
                    result.error,
                )
            )
            return ReconciliationResult(ReconciliationAction.GRANT_FAILED, purchase.id, result.error or "")

        updated = await self._store.transition_purchase(
            purchase.id,
            expected={"status": PurchaseStatus.COMPLETED, "access_status": AccessStatus.PENDING},
            changes={"access_status": AccessStatus.ACTIVE, "access_granted_at": utc_now()},
        )
        if updated is None:
            return await self._resolve_lost_grant(purchase, repository)

        await self._audit.record(
            purchase.id,
            AccessLogAction.COLLABORATOR_ADDED,
            AccessLogStatus.SUCCESS,
            metadata={"attempts": result.attempts, "permission": "pull"},
        )
        if purchase.amount_cents == 0 and not await self._owner_emails_enabled(repository):
            logger.info(
                "Owner %s has email notifications off; no access email for %s",
                repository.owner_id, purchase.id,
            )
            return ReconciliationResult(ReconciliationAction.ACCESS_GRANTED, purchase.id)
        await self.notify_buyer(
            updated,
            AccessLogAction.EMAIL_SENT_ACCESS_GRANTED,
            access_granted(
                repository.display_name,
                repository.github_owner,
                repository.github_repo_name,
                purchase.github_username,
            ),
        )
        return ReconciliationResult(ReconciliationAction.ACCESS_GRANTED, purchase.id)

    async def _resolve_lost_grant(self, purchase: Purchase, repository: Repository) -> ReconciliationResult:
        """The grant went through but the row moved on while we were granting."""
        current = await self._store.get_purchase(purchase.id)
        if current is None or current.access_status != AccessStatus.REVOKED:
            return ReconciliationResult(ReconciliationAction.DUPLICATE, purchase.id)

        logger.warning("Purchase %s was revoked during its grant; removing access again", purchase.id)
        await self._remove_collaborator(current, repository)
        return ReconciliationResult(ReconciliationAction.ALREADY_REVOKED, purchase.id)

    async def _owner_emails_enabled(self, repository: Repository) -> bool:
        owner = await self._store.get_owner(repository.owner_id)
        return owner is None or owner.email_notifications

    # ------------------------------------------------------------------
    # Renewal
    # ------------------------------------------------------------------

    async def record_renewal(self, event: WebhookEvent) -> ReconciliationResult:
        purchase = None
        if event.subscription_id:
            purchase = await self._store.find_by_subscription_id(event.subscription_id)
        if purchase is None and event.metadata is not None:
            purchase = await self._store.find_latest_purchase(
                event.metadata.repository_id,
                event.metadata.email or None,
                event.metadata.github_username,
            )
        if purchase is None:
            logger.warning(
                "Renewal for unknown subscription %s (%s)", event.subscription_id, event.provider.value
            )
            return ReconciliationResult(ReconciliationAction.IGNORED, message="unknown subscription")

        if purchase.status != PurchaseStatus.COMPLETED or purchase.access_status != AccessStatus.ACTIVE:
            logger.info(
                "Renewal for purchase %s in %s/%s ignored",
                purchase.id, purchase.status.value, purchase.access_status.value,
            )
            return ReconciliationResult(ReconciliationAction.IGNORED, purchase.id)

        if event.event_id and await self._already_logged(
            purchase.id, AccessLogAction.EMAIL_SENT_RENEWAL, event.event_id
        ):
            return ReconciliationResult(ReconciliationAction.DUPLICATE, purchase.id)

        repository = await self._require_repository(purchase)
        await self.notify_buyer(
            purchase,
            AccessLogAction.EMAIL_SENT_RENEWAL,
            subscription_renewed(repository.display_name, event.amount_cents, event.next_billing_at),
            metadata={
                "event_id": event.event_id,
                "amount_cents": event.amount_cents,
                "next_billing_at": event.next_billing_at.isoformat() if event.next_billing_at else None,
            },
            always_log=True,
        )
        return ReconciliationResult(ReconciliationAction.RENEWAL_NOTIFIED, purchase.id)

    async def _already_logged(self, purchase_id: str, action: AccessLogAction, event_id: str) -> bool:
        for entry in await self._audit.history(purchase_id):
            if entry.action == action and entry.metadata.get("event_id") == event_id:
                return True
        return False

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    async def _locate_for_revocation(self, event: WebhookEvent) -> Purchase:
        metadata = event.metadata
        if metadata is not None and metadata.purchase_id:
            purchase = await self._store.get_purchase(metadata.purchase_id)
            if purchase is not None:
                return purchase
        if event.subscription_id:
            purchase = await self._store.find_by_subscription_id(event.subscription_id)
            if purchase is not None:
                return purchase
        if event.payment_id:
            purchase = await self._store.find_by_payment_id(event.payment_id)
            if purchase is not None:
                return purchase
        if metadata is not None:
            purchase = await self._store.find_latest_purchase(
                metadata.repository_id,
                metadata.email or event.email,
                metadata.github_username,
            )
            if purchase is not None:
                return purchase
        raise NotFoundError("Purchase", event.subscription_id or event.payment_id or "unknown")

    async def revoke_for_event(self, event: WebhookEvent) -> ReconciliationResult:
        """Cancellation, refund or failed payment: canceled/revoked."""
        purchase = await self._locate_for_revocation(event)
        if purchase.access_status == AccessStatus.REVOKED:
            return ReconciliationResult(ReconciliationAction.ALREADY_REVOKED, purchase.id)

        if event.kind == WebhookEventKind.PAYMENT_FAILED:
            await self._audit.record(
                purchase.id,
                AccessLogAction.PAYMENT_FAILED,
                AccessLogStatus.FAILED,
                error_message="Payment failed",
                metadata={
                    "provider": event.provider.value,
                    "event_type": event.event_type,
                    "amount_cents": event.amount_cents,
                },
            )
            repository = await self._store.get_repository(purchase.repository_id)
            await self._alert_admin(
                payment_failed_alert(
                    repository.display_name if repository else purchase.repository_id,
                    purchase.email,
                    purchase.id,
                    event.amount_cents,
                    event.provider.value,
                )
            )

        return await self._revoke(
            purchase,
            reason=REVOCATION_REASONS[event.kind],
            cancel_payment=True,
        )

    async def revoke_manually(
        self,
        purchase_id: str,
        admin_id: str,
        reason: Optional[str] = None,
    ) -> ReconciliationResult:
        """Admin-initiated revoke. Only the repository owner may revoke."""
        purchase = await self._store.get_purchase(purchase_id)
        if purchase is None:
            raise NotFoundError("Purchase", purchase_id)
        repository = await self._store.get_repository(purchase.repository_id)
        if repository is None or repository.owner_id != admin_id:
            raise NotFoundError("Purchase", purchase_id)
        if purchase.access_status == AccessStatus.REVOKED:
            return ReconciliationResult(ReconciliationAction.ALREADY_REVOKED, purchase.id)

        result = await self._revoke(
            purchase,
            reason=reason or DEFAULT_MANUAL_REVOKE_REASON,
            revoked_by=admin_id,
            cancel_payment=False,
        )
        if result.action == ReconciliationAction.ACCESS_REVOKED and purchase.subscription_id:
            await self._cancel_remote_subscription(repository, purchase.subscription_id)
        return result

    async def _revoke(
        self,
        purchase: Purchase,
        *,
        reason: str,
        revoked_by: Optional[str] = None,
        cancel_payment: bool,
    ) -> ReconciliationResult:
        changes: dict[str, Any] = {
            "access_status": AccessStatus.REVOKED,
            "revoked_at": utc_now(),
            "revocation_reason": reason,
        }
        if revoked_by:
            changes["revoked_by"] = revoked_by
        if cancel_payment:
            changes["status"] = PurchaseStatus.CANCELED

        # Data-layer revocation always lands, whatever happens upstream
        updated = await self._store.transition_purchase(
            purchase.id,
            expected={"access_status": _REVOCABLE},
            changes=changes,
        )
        if updated is None:
            return ReconciliationResult(ReconciliationAction.ALREADY_REVOKED, purchase.id)

        repository = await self._require_repository(purchase)
        if purchase.access_status == AccessStatus.ACTIVE:
            await self._remove_collaborator(updated, repository)

        await self.notify_buyer(
            updated,
            AccessLogAction.EMAIL_SENT_REVOCATION,
            access_revoked(repository.display_name, reason),
            metadata={"reason": reason},
        )
        logger.info("Purchase %s revoked (%s)", purchase.id, reason)
        return ReconciliationResult(ReconciliationAction.ACCESS_REVOKED, purchase.id)

    async def _remove_collaborator(self, purchase: Purchase, repository: Repository) -> None:
        result = await self._grants.remove_collaborator(
            repository.owner_id,
            repository.github_owner,
            repository.github_repo_name,
            purchase.github_username,
        )
        await self._audit.record(
            purchase.id,
            AccessLogAction.COLLABORATOR_REMOVED,
            AccessLogStatus.SUCCESS if result.success else AccessLogStatus.FAILED,
            error_message=result.error,
            metadata={"github_username": purchase.github_username},
        )

    async def _cancel_remote_subscription(self, repository: Repository, subscription_id: str) -> None:
        if self._factory is None:
            logger.warning("No provider factory; subscription %s left active", subscription_id)
            return
        adapter = None
        try:
            stored = await self._factory.get_user_payment_credentials(repository.owner_id)
            if stored is None:
                logger.warning(
                    "Owner %s has no payment credentials; subscription %s left active",
                    repository.owner_id, subscription_id,
                )
                return
            adapter = await self._factory.create_and_initialize(stored)
            await adapter.cancel_subscription(subscription_id)
        except RepoPassException as e:
            logger.warning("Cancelling subscription %s failed: %s", subscription_id, e.message)
        finally:
            if adapter is not None:
                await adapter.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _require_repository(self, purchase: Purchase) -> Repository:
        repository = await self._store.get_repository(purchase.repository_id)
        if repository is None:
            raise NotFoundError("Repository", purchase.repository_id)
        return repository

    async def notify_buyer(
        self,
        purchase: Purchase,
        action: AccessLogAction,
        message: EmailMessage,
        metadata: Optional[dict[str, Any]] = None,
        always_log: bool = False,
    ) -> bool:
        """Send a buyer email and record the attempt; failures never propagate."""
        if not purchase.has_contact_email:
            if always_log:
                await self._audit.record(
                    purchase.id, action, AccessLogStatus.FAILED,
                    error_message="No buyer email on file", metadata=metadata,
                )
            return False
        try:
            await self._email.send(purchase.email, message.subject, message.html)
        except Exception as e:
            logger.warning("Sending %s to purchase %s failed: %s", action.value, purchase.id, e)
            await self._audit.record(
                purchase.id, action, AccessLogStatus.FAILED, error_message=str(e), metadata=metadata
            )
            return False
        await self._audit.record(purchase.id, action, AccessLogStatus.SUCCESS, metadata=metadata)
        return True

    async def _alert_admin(self, message: EmailMessage) -> None:
        if not self._admin_email:
            logger.error("Admin alert not sent (no admin email configured): %s", message.subject)
            return
        try:
            await self._email.send(self._admin_email, message.subject, message.html)
        except Exception:
            logger.exception("Failed to send admin alert: %s", message.subject)
