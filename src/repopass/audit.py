"""Append-only audit trail of every side-effect attempt on a purchase."""
from __future__ import annotations

import logging
from typing import Any, Optional

from .logging import mask_sensitive_data
from .models import AccessLogAction, AccessLogEntry, AccessLogStatus

logger = logging.getLogger(__name__)


class AuditLog:
    """Fire-and-forget writer over the purchase store's access log."""

    def __init__(self, store: Any) -> None:
        self._store = store

    async def record(
        self,
        purchase_id: str,
        action: AccessLogAction,
        status: AccessLogStatus,
        error_message: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[AccessLogEntry]:
        """Append one entry. Storage failures are logged, never raised."""
        try:
            entry = AccessLogEntry(
                purchase_id=purchase_id,
                action=action,
                status=status,
                error_message=error_message,
                metadata=mask_sensitive_data(metadata or {}),
            )
            return await self._store.append_access_log(entry)
        except Exception:
            logger.exception(
                "Failed to record access log %s/%s for purchase %s",
                getattr(action, "value", action),
                getattr(status, "value", status),
                purchase_id,
            )
            return None

    async def history(self, purchase_id: str) -> list[AccessLogEntry]:
        return await self._store.list_access_logs(purchase_id)
