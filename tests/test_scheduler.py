"""Tests for the tick scheduler."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from wagerbot.models import TickSummary
from wagerbot.scheduler import Scheduler


@pytest.fixture
def scheduler():
    instance = Scheduler()
    yield instance
    if instance.is_running:
        instance.stop(wait=False)


def test_run_tick_returns_summary(scheduler):
    summary = TickSummary(started_at=datetime.now(timezone.utc))
    scheduler.tick_function = MagicMock(return_value=summary)

    assert scheduler.run_tick() is summary
    assert scheduler.last_summary is summary
    assert not scheduler.is_tick_running()


def test_overlapping_tick_is_skipped(scheduler):
    tick = MagicMock()
    scheduler.tick_function = tick

    scheduler._execution_lock.acquire()
    try:
        assert scheduler.is_tick_running()
        assert scheduler.run_tick() is None
    finally:
        scheduler._execution_lock.release()

    tick.assert_not_called()


def test_failing_tick_is_abandoned_and_lock_released(scheduler):
    scheduler.tick_function = MagicMock(side_effect=RuntimeError("ledger gone"))

    assert scheduler.run_tick() is None
    assert not scheduler.is_tick_running()


@pytest.mark.parametrize("interval", [0, -5])
def test_invalid_interval_rejected(scheduler, interval):
    assert scheduler.start(MagicMock(), interval_seconds=interval) is False
    assert not scheduler.is_running


def test_non_callable_rejected(scheduler):
    assert scheduler.start("not a function", interval_seconds=10) is False


def test_start_and_stop(scheduler):
    assert scheduler.start(MagicMock(), interval_seconds=3600) is True
    assert scheduler.start(MagicMock(), interval_seconds=3600) is False

    status = scheduler.get_status()
    assert status["is_running"] is True
    assert status["interval_seconds"] == 3600
    assert status["next_run_time"] is not None

    assert scheduler.stop(wait=False) is True
    assert scheduler.get_next_run_time() is None
    assert scheduler.stop() is False
