"""Tests for the background scheduler."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from api.enums import JobState
from worker import scheduler as scheduler_module
from worker.poller import PollResult
from worker.scheduler import LoopStatus, Scheduler, get_scheduler_status


@pytest.fixture
def poller():
    poller = MagicMock()
    poller.poll_once = AsyncMock(return_value=PollResult(checked=3, updated=1, errors=[(9, "boom")]))
    poller.close = AsyncMock()
    return poller


@pytest.fixture
def retry_engine():
    engine = MagicMock()
    engine.retry_all_failed = AsyncMock(return_value=2)
    engine.close = AsyncMock()
    return engine


@pytest.fixture
def scheduler(store, poller, retry_engine):
    return Scheduler(
        poller=poller,
        retry_engine=retry_engine,
        store=store,
        poll_enabled=True,
        poll_interval=3600,
        retry_sweep_enabled=False,
        retry_sweep_interval=3600,
        stuck_check_enabled=False,
        stuck_check_interval=3600,
        stuck_threshold_minutes=60,
    )


class TestUnitsOfWork:
    """Tests for the work each loop performs."""

    async def test_poll_cycle(self, scheduler, poller):
        result = await scheduler.run_poll_cycle()

        poller.poll_once.assert_awaited_once_with(trigger="scheduled")
        assert result == {"checked": 3, "updated": 1, "errors": [{"job_id": 9, "error": "boom"}]}

    async def test_retry_sweep(self, scheduler, retry_engine):
        assert await scheduler.run_retry_sweep() == {"recovered": 2}
        retry_engine.retry_all_failed.assert_awaited_once()

    async def test_stuck_scan_notifies(self, scheduler, make_job):
        job = await make_job("Stuck", external_id="s", state=JobState.IN_PROGRESS, updated_minutes_ago=90)
        await make_job("Fresh", external_id="f", state=JobState.IN_PROGRESS, updated_minutes_ago=5)

        with patch("worker.scheduler.notify_stuck", AsyncMock(return_value=True)) as notify:
            result = await scheduler.run_stuck_scan()

        assert result == {"stuck": 1, "job_ids": [job.id]}
        notify.assert_awaited_once()
        assert [j.id for j in notify.call_args.args[0]] == [job.id]
        assert notify.call_args.args[1] == 60

    async def test_stuck_scan_quiet_when_nothing_stuck(self, scheduler):
        with patch("worker.scheduler.notify_stuck", AsyncMock()) as notify:
            assert await scheduler.run_stuck_scan() == {"stuck": 0, "job_ids": []}
        notify.assert_not_called()


class TestLoops:
    """Tests for loop control."""

    async def test_shutdown_stops_loop_after_first_run(self, scheduler, poller):
        async def stop_after_first_run():
            while scheduler.loops["poll"].runs == 0:
                await asyncio.sleep(0.01)
            scheduler.request_shutdown()

        await asyncio.wait_for(asyncio.gather(scheduler.run(), stop_after_first_run()), timeout=5)

        assert scheduler.loops["poll"].runs == 1
        assert scheduler.loops["retry_sweep"].runs == 0
        assert poller.poll_once.await_count == 1

    async def test_failing_run_is_recorded_and_loop_continues(self, scheduler, poller):
        poller.poll_once.side_effect = RuntimeError("transcoder melted")

        async def stop_soon():
            while scheduler.loops["poll"].failures == 0:
                await asyncio.sleep(0.01)
            scheduler.request_shutdown()

        await asyncio.wait_for(asyncio.gather(scheduler.run(), stop_soon()), timeout=5)

        status = scheduler.loops["poll"]
        assert status.failures == 1
        assert status.runs == 1
        assert status.last_error == "transcoder melted"

    async def test_all_loops_disabled(self, scheduler):
        scheduler.loops["poll"].enabled = False
        await asyncio.wait_for(scheduler.run(), timeout=1)
        assert scheduler.loops["poll"].runs == 0

    async def test_close(self, scheduler, poller, retry_engine):
        with patch("worker.scheduler.job_locks") as locks:
            locks.close = AsyncMock()
            await scheduler.close()
        poller.close.assert_awaited_once()
        retry_engine.close.assert_awaited_once()


class TestStatus:
    """Tests for status reporting."""

    def test_loop_status_dict(self):
        status = LoopStatus(enabled=True, interval=300, runs=2)
        data = status.to_dict()
        assert data["enabled"] is True
        assert data["runs"] == 2
        assert data["last_started"] is None

    async def test_get_status(self, scheduler):
        status = scheduler.get_status()
        assert status["shutting_down"] is False
        assert set(status["loops"]) == {"poll", "retry_sweep", "stuck_scan"}

    def test_no_scheduler_running(self):
        with patch.object(scheduler_module, "_scheduler", None):
            assert get_scheduler_status() == {"running": False}
