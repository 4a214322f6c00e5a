"""
Scheduler module for the reconciliation loop.

This module provides scheduling functionality using APScheduler to run a
reconciliation tick at a fixed interval. It handles overlap prevention,
error isolation, and graceful shutdown.
"""

import logging
import threading
from typing import Callable, Optional
from datetime import datetime, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.events import EVENT_JOB_EXECUTED, EVENT_JOB_ERROR, EVENT_JOB_MAX_INSTANCES
import pytz

from wagerbot.config import Config
from wagerbot.models import TickSummary

# Configure module logger
logger = logging.getLogger(__name__)


class Scheduler:
    """
    Scheduler for the reconciliation loop.

    Runs the tick function every interval with overlap prevention: a tick
    that starts while the previous one is still in flight is skipped and logged.
    """

    def __init__(self):
        """Initialize the scheduler."""
        self.scheduler: Optional[BackgroundScheduler] = None
        self.tick_function: Optional[Callable[[], Optional[TickSummary]]] = None
        self.interval_seconds: Optional[int] = None
        self.is_running = False
        self.last_summary: Optional[TickSummary] = None
        self._execution_lock = threading.Lock()
        self._job_id = "reconciliation_tick"

    def start(
        self,
        tick_function: Callable[[], Optional[TickSummary]],
        interval_seconds: Optional[int] = None
    ) -> bool:
        """
        Start the scheduler with the given tick function.

        Args:
            tick_function: Callable that runs one reconciliation tick
            interval_seconds: Seconds between ticks. If None, uses Config.POLL_INTERVAL_SECONDS

        Returns:
            True if scheduler started successfully, False otherwise
        """
        if self.is_running:
            logger.warning("Scheduler is already running")
            return False

        if not callable(tick_function):
            logger.error("tick_function must be callable")
            return False

        if interval_seconds is None:
            interval_seconds = Config.POLL_INTERVAL_SECONDS

        if interval_seconds < 1:
            logger.error(f"Invalid interval_seconds: {interval_seconds}. Must be >= 1")
            return False

        self.tick_function = tick_function
        self.interval_seconds = interval_seconds

        timezone_ = pytz.timezone(Config.SCHEDULER_TIMEZONE)
        self.scheduler = BackgroundScheduler(timezone=timezone_)

        self.scheduler.add_listener(
            self._on_job_event,
            EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MAX_INSTANCES
        )

        self.scheduler.add_job(
            func=self.run_tick,
            trigger=IntervalTrigger(seconds=interval_seconds),
            id=self._job_id,
            name="Reconciliation Tick",
            replace_existing=True,
            max_instances=1,  # Prevent overlapping ticks
            coalesce=True,
        )

        self.scheduler.start()
        self.is_running = True

        logger.info(f"Scheduler started with {interval_seconds} second interval")
        return True

    def stop(self, wait: bool = True) -> bool:
        """
        Stop the scheduler gracefully.

        Args:
            wait: Whether to wait for a running tick to complete

        Returns:
            True if scheduler stopped successfully, False otherwise
        """
        if not self.is_running or not self.scheduler:
            logger.warning("Scheduler is not running")
            return False

        logger.info("Stopping scheduler...")
        self.scheduler.shutdown(wait=wait)

        self.is_running = False
        self.scheduler = None

        logger.info("Scheduler stopped successfully")
        return True

    def run_tick(self) -> Optional[TickSummary]:
        """
        Run one tick with overlap prevention and error isolation.

        Returns:
            TickSummary from the tick, or None if skipped or failed
        """
        if not self._execution_lock.acquire(blocking=False):
            logger.warning("Tick skipped: previous tick still in progress")
            return None

        start_time = datetime.now(timezone.utc)

        try:
            if not self.tick_function:
                logger.error("Tick function not set")
                return None

            summary = self.tick_function()
            self.last_summary = summary

            duration = (datetime.now(timezone.utc) - start_time).total_seconds()
            if self.interval_seconds and duration > self.interval_seconds:
                logger.warning(
                    f"Tick took {duration:.2f}s, longer than the {self.interval_seconds}s interval; "
                    f"the next tick was skipped"
                )
            else:
                logger.debug(f"Tick duration: {duration:.2f} seconds")

            return summary

        except Exception as e:
            duration = (datetime.now(timezone.utc) - start_time).total_seconds()
            logger.error(f"Tick abandoned after {duration:.2f} seconds: {e}", exc_info=True)
            return None

        finally:
            self._execution_lock.release()

    def _on_job_event(self, event) -> None:
        """
        Event listener for job execution events.

        Args:
            event: APScheduler event object
        """
        if event.code == EVENT_JOB_MAX_INSTANCES:
            logger.warning(f"Job {event.job_id} skipped: previous run still in progress")
        elif getattr(event, "exception", None):
            logger.error(f"Job {event.job_id} raised an exception: {event.exception}")
        else:
            logger.debug(f"Job {event.job_id} executed successfully")

    def get_next_run_time(self) -> Optional[datetime]:
        """
        Get the next scheduled run time.

        Returns:
            Next run time as datetime, or None if scheduler is not running
        """
        if not self.is_running or not self.scheduler:
            return None

        job = self.scheduler.get_job(self._job_id)
        return job.next_run_time if job else None

    def is_tick_running(self) -> bool:
        """Check if a tick is currently in flight."""
        return self._execution_lock.locked()

    def get_status(self) -> dict:
        """
        Get current scheduler status.

        Returns:
            Dictionary with scheduler status information
        """
        status = {
            "is_running": self.is_running,
            "has_tick_function": self.tick_function is not None,
            "tick_running": self.is_tick_running(),
            "next_run_time": None,
            "interval_seconds": self.interval_seconds if self.is_running else None,
        }

        next_run = self.get_next_run_time()
        if next_run:
            status["next_run_time"] = next_run.isoformat()

        return status
