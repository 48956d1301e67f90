"""Periodic driver for the goal manager built on APScheduler."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .config import ManagerConfig
from .manager import GoalManager, GoalManagerTickResult
from .orchestrator import DispatchResult

logger = logging.getLogger(__name__)

TICK_JOB_ID = "goal_manager_tick"
DISPATCH_JOB_ID = "goal_manager_dispatch"


class GoalAutonomyScheduler:
    """Runs goal manager tick and dispatch on fixed intervals.

    Each job runs at most one instance at a time and coalesces missed runs.
    A failing invocation is logged and the job keeps its schedule.
    """

    def __init__(
        self,
        manager: GoalManager,
        config: Optional[ManagerConfig] = None,
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self._manager = manager
        self._config = config or manager.config.manager
        self._scheduler = (
            AsyncIOScheduler(event_loop=loop) if loop is not None else AsyncIOScheduler()
        )
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def scheduler(self) -> AsyncIOScheduler:
        return self._scheduler

    def _register_jobs(self) -> None:
        self._scheduler.add_job(
            self.run_tick,
            trigger=IntervalTrigger(seconds=self._config.tick_interval_seconds),
            id=TICK_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            self.run_dispatch,
            trigger=IntervalTrigger(seconds=self._config.dispatch_interval_seconds),
            id=DISPATCH_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    async def run_tick(self) -> Optional[GoalManagerTickResult]:
        try:
            result = await self._manager.tick()
        except Exception:
            logger.exception("Goal manager tick failed")
            return None
        logger.info(
            "Scheduled goal tick finished",
            extra={
                "enabled": result.enabled,
                "queued": result.queued_count,
                "suppressed": result.suppressed_count,
                "queue_depth": result.queue_depth,
            },
        )
        return result

    async def run_dispatch(self) -> Optional[DispatchResult]:
        try:
            result = await self._manager.dispatch_top_goal(initiated_by="scheduler")
        except Exception:
            logger.exception("Goal dispatch failed")
            return None
        logger.info(
            "Scheduled goal dispatch finished",
            extra={
                "dispatched": result.dispatched,
                "goal_id": result.goal_id,
                "status": result.status.value if result.status else None,
                "reason": result.reason,
            },
        )
        return result

    def start(self) -> None:
        if self._running:
            return
        self._register_jobs()
        self._scheduler.start()
        self._running = True
        logger.info(
            "Goal autonomy scheduler started",
            extra={
                "tick_interval_seconds": self._config.tick_interval_seconds,
                "dispatch_interval_seconds": self._config.dispatch_interval_seconds,
            },
        )

    async def shutdown(self) -> None:
        if not self._running:
            return
        self._scheduler.shutdown(wait=False)
        self._running = False
        logger.info("Goal autonomy scheduler stopped")
