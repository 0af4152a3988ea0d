from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from repopass.audit import AuditLog
from repopass.models import AccessLogAction, AccessLogStatus


@pytest.mark.asyncio
async def test_record_appends_entry(store):
    audit = AuditLog(store)

    entry = await audit.record(
        "pur_1",
        AccessLogAction.COLLABORATOR_ADDED,
        AccessLogStatus.SUCCESS,
        metadata={"attempts": 2},
    )

    history = await audit.history("pur_1")
    assert [e.id for e in history] == [entry.id]
    assert history[0].metadata == {"attempts": 2}


@pytest.mark.asyncio
async def test_record_masks_secrets_in_metadata(store):
    audit = AuditLog(store)

    await audit.record(
        "pur_1",
        AccessLogAction.COLLABORATOR_ADDED,
        AccessLogStatus.FAILED,
        metadata={"token": "ghp_abcdefghijklmnop"},
    )

    (entry,) = await audit.history("pur_1")
    assert entry.metadata["token"] != "ghp_abcdefghijklmnop"


@pytest.mark.asyncio
async def test_storage_failure_is_swallowed():
    failing_store = AsyncMock()
    failing_store.append_access_log.side_effect = RuntimeError("db down")
    audit = AuditLog(failing_store)

    result = await audit.record("pur_1", AccessLogAction.PAYMENT_FAILED, AccessLogStatus.FAILED)

    assert result is None
    failing_store.append_access_log.assert_awaited_once()
