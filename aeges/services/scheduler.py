"""
Expiry Scheduler: periodic sweeps for time-bound state.

Jobs:
1. Expire containments past their maximum duration
2. Expire recovery requests past their deadline

Expiry is also checked lazily on access; the sweeps make sure idle
entities still reach their terminal state.
"""

import asyncio
from typing import TYPE_CHECKING, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from aeges.config import settings

if TYPE_CHECKING:
    from aeges.containment.state_machine import ContainmentStateMachine
    from aeges.recovery.workflow import RecoveryWorkflow

logger = structlog.get_logger(__name__)


class ExpiryScheduler:
    """Background scheduler for containment and recovery expiry."""

    def __init__(
        self,
        containment: "ContainmentStateMachine",
        recovery: "RecoveryWorkflow",
        interval_seconds: Optional[float] = None,
    ):
        self.containment = containment
        self.recovery = recovery
        self.interval_seconds = interval_seconds or settings.expiry_sweep_interval_seconds
        self.scheduler = AsyncIOScheduler()

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self):
        """Register and start the sweep jobs. Requires a running event loop."""
        if self.scheduler.running:
            return
        self.scheduler.add_job(
            self.sweep_containments,
            IntervalTrigger(seconds=self.interval_seconds),
            id="expire_containments",
            max_instances=1,
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.sweep_recoveries,
            IntervalTrigger(seconds=self.interval_seconds),
            id="expire_recoveries",
            max_instances=1,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info("expiry_scheduler_started", interval_seconds=self.interval_seconds)

    async def stop(self):
        """Shut down and yield once so the loop applies the shutdown."""
        if not self.scheduler.running:
            return
        self.scheduler.shutdown(wait=False)
        # AsyncIOScheduler queues shutdown onto the loop
        await asyncio.sleep(0)
        logger.info("expiry_scheduler_stopped")

    async def sweep_containments(self) -> int:
        try:
            expired = await self.containment.sweep_expired()
        except Exception as e:
            logger.error("containment_sweep_failed", error=str(e))
            return 0
        if expired:
            logger.info("containment_sweep_completed", expired=len(expired))
        return len(expired)

    async def sweep_recoveries(self) -> int:
        try:
            expired = await self.recovery.expire_overdue()
        except Exception as e:
            logger.error("recovery_sweep_failed", error=str(e))
            return 0
        if expired:
            logger.info("recovery_sweep_completed", expired=len(expired))
        return len(expired)
