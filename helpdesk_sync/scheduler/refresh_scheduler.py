"""Refresh Scheduler - periodic manual refresh while live updates are degraded

One scheduler per agent workspace. It is started when the workspace's live
status becomes DEGRADED and stopped as soon as live updates recover, so a
healthy workspace never polls.
"""
from typing import Awaitable, Callable, Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config.settings import settings
from ..domain.errors import DomainError
from ..utils.logger import get_logger
from ..utils.idgen import generate_correlation_id
from ..utils.time import utc_now

logger = get_logger(__name__)


class RefreshScheduler:
    """
    APScheduler wrapper running one refresh job at a fixed interval.

    Job failures are logged and the job keeps its schedule; the next run
    is the retry.
    """

    def __init__(
        self,
        refresh: Callable[[], Awaitable[None]],
        interval_seconds: Optional[int] = None,
        name: str = "workspace"
    ):
        self._refresh = refresh
        self.interval_seconds = interval_seconds or settings.fallback_refresh_interval_seconds
        self.name = name
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._is_running = False
        self.run_count = 0

    def start(self) -> None:
        """Start the scheduler (must be called from a running event loop)"""
        if self._is_running:
            return

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self._run_refresh,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=f"fallback_refresh_{self.name}",
            name="Fallback refresh while live updates are degraded",
            replace_existing=True,
            coalesce=True,
            max_instances=1
        )
        self.scheduler.start()
        self._is_running = True
        logger.info(
            "Fallback refresh started",
            extra={"workspace_id": self.name, "interval_seconds": self.interval_seconds}
        )

    def stop(self) -> None:
        """Stop the scheduler"""
        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
        if self._is_running:
            self._is_running = False
            logger.info("Fallback refresh stopped", extra={"workspace_id": self.name})

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running"""
        return self._is_running

    async def _run_refresh(self) -> None:
        correlation_id = generate_correlation_id()
        start_time = utc_now()
        try:
            await self._refresh()
            self.run_count += 1
        except DomainError as e:
            logger.warning(
                f"Fallback refresh failed: {e.message}",
                extra={"workspace_id": self.name, "error_code": e.error_code, "correlation_id": correlation_id}
            )
            return
        except Exception as e:
            logger.error(
                f"Error in fallback refresh job: {e}",
                extra={"workspace_id": self.name, "error_type": type(e).__name__, "correlation_id": correlation_id}
            )
            return

        duration_ms = (utc_now() - start_time).total_seconds() * 1000
        logger.debug(
            "Fallback refresh complete",
            extra={"workspace_id": self.name, "duration_ms": round(duration_ms, 2)}
        )
