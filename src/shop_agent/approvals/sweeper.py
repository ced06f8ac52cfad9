"""Periodic expiry of approval requests nobody answered."""

from __future__ import annotations

from datetime import datetime
from typing import Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from shop_agent.approvals.gateway import ApprovalGateway
from shop_agent.approvals.queue import ActionQueue
from shop_agent.log import get_logger
from shop_agent.services.base import Service
from shop_agent.storage.models import PendingAction

logger = get_logger(__name__)

ExpiryListener = Callable[[PendingAction], Awaitable[object]]

_JOB_ID = "expire_pending_actions"


class ExpirySweeper(Service):
    """Expires stale pending actions on an APScheduler interval job.

    Each expired action gets its card replaced and is handed to the expiry
    listener so the owning conversation is told.
    """

    def __init__(
        self,
        queue: ActionQueue,
        gateway: ApprovalGateway,
        interval_seconds: int,
        on_expired: Optional[ExpiryListener] = None,
    ):
        self._queue = queue
        self._gateway = gateway
        self._interval = interval_seconds
        self._on_expired = on_expired
        self._scheduler = AsyncIOScheduler(timezone="UTC")

    @property
    def service_name(self) -> str:
        return "expiry_sweeper"

    async def start(self) -> None:
        self._scheduler.add_job(
            self.run_once,
            IntervalTrigger(seconds=self._interval),
            id=_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info("expiry_sweeper_started", interval_seconds=self._interval)

    async def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        logger.info("expiry_sweeper_stopped")

    async def health_check(self) -> bool:
        return self._scheduler.running

    async def run_once(self, now: Optional[datetime] = None) -> int:
        """One sweep; returns how many actions it expired."""
        expired = await self._queue.expire_stale(now)
        if not expired:
            return 0
        await self._gateway.notify_expired(expired)
        if self._on_expired is not None:
            for action in expired:
                try:
                    await self._on_expired(action)
                except Exception:
                    logger.exception("expiry_listener_failed", action_id=action.id)
        logger.info("expiry_sweep_complete", expired=len(expired))
        return len(expired)
