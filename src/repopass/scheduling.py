"""Dispatch of collaborator grants outside the webhook request.

The webhook handler persists the payment transition, hands the grant to a
scheduler and acknowledges the delivery; the grant and its backoff run in
a background task.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

GrantJob = Callable[[str], Awaitable[object]]


class GrantScheduler(ABC):
    """Runs ``job(purchase_id)`` now or later."""

    def __init__(self) -> None:
        self._job: Optional[GrantJob] = None

    def bind(self, job: GrantJob) -> None:
        self._job = job

    def _require_job(self) -> GrantJob:
        if self._job is None:
            raise RuntimeError("Grant scheduler is not bound to a job")
        return self._job

    @abstractmethod
    async def schedule(self, purchase_id: str) -> None:
        pass

    async def drain(self) -> None:
        """Wait for outstanding grants."""
        return None


class InlineGrantScheduler(GrantScheduler):
    """Runs the grant in the caller's task."""

    async def schedule(self, purchase_id: str) -> None:
        await self._require_job()(purchase_id)


class BackgroundGrantScheduler(GrantScheduler):
    """Runs each grant as a tracked asyncio task."""

    def __init__(self) -> None:
        super().__init__()
        self._tasks: set[asyncio.Task] = set()

    async def schedule(self, purchase_id: str) -> None:
        job = self._require_job()
        task = asyncio.create_task(self._run(job, purchase_id), name=f"grant:{purchase_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @staticmethod
    async def _run(job: GrantJob, purchase_id: str) -> None:
        try:
            await job(purchase_id)
        except Exception:
            logger.exception("Background grant for purchase %s crashed", purchase_id)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
