"""Refresh engine queues: sequential execution, retries, rate limit, schedules"""
import asyncio
from datetime import datetime, timezone

import pytest

from services.scheduler import DailySchedule, IntervalSchedule, JobQueue, JobState, RefreshEngine, WeeklySchedule


class RecordingHandler:
    def __init__(self, duration: float = 0.02, failures: int = 0):
        self.duration = duration
        self.failures = failures
        self.calls = 0
        self.events = []
        self.running = 0
        self.max_running = 0

    async def __call__(self, ctx):
        self.calls += 1
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        self.events.append(("start", ctx.job_id))
        try:
            await asyncio.sleep(self.duration)
            if self.calls <= self.failures:
                raise RuntimeError("vendor returned garbage")
            return {"success": True}
        finally:
            self.events.append(("end", ctx.job_id))
            self.running -= 1


async def wait_for_counts(queue, **expected):
    for _ in range(300):
        counts = queue.counts()
        if all(counts[k] == v for k, v in expected.items()):
            return counts
        await asyncio.sleep(0.01)
    raise AssertionError(f"{queue.name} never reached {expected}: {queue.counts()}")


@pytest.mark.asyncio
async def test_manual_triggers_run_strictly_sequentially():
    handler = RecordingHandler(duration=0.05)
    engine = RefreshEngine(enable_schedules=False)
    queue = engine.register(JobQueue("market-indices", handler))
    await engine.start()
    try:
        first = engine.trigger("market-indices")
        second = engine.trigger("market-indices")
        await wait_for_counts(queue, completed=2, waiting=0, active=0)
    finally:
        await engine.stop()

    assert handler.max_running == 1
    assert handler.events == [("start", first.id), ("end", first.id), ("start", second.id), ("end", second.id)]
    assert engine.stats() == {"market-indices": {"waiting": 0, "active": 0, "completed": 2, "failed": 0, "delayed": 0}}


@pytest.mark.asyncio
async def test_trigger_unknown_job():
    engine = RefreshEngine(enable_schedules=False)
    with pytest.raises(KeyError):
        engine.trigger("nope")


@pytest.mark.asyncio
async def test_register_twice_is_rejected():
    engine = RefreshEngine(enable_schedules=False)
    engine.register(JobQueue("daily-nav", RecordingHandler()))
    with pytest.raises(ValueError):
        engine.register(JobQueue("daily-nav", RecordingHandler()))


@pytest.mark.asyncio
async def test_failed_job_is_delayed_then_retried():
    handler = RecordingHandler(duration=0, failures=1)
    queue = JobQueue("daily-nav", handler, max_attempts=3, backoff_seconds=0.01)
    queue.add()

    job = await queue.run_next()
    assert job.state == JobState.DELAYED
    assert "vendor returned garbage" in job.error
    assert queue.counts()["delayed"] == 1
    assert await queue.run_next() is None

    await asyncio.sleep(0.02)
    job = await queue.run_next()
    assert job.state == JobState.COMPLETED
    assert job.attempts == 2
    assert job.error is None
    assert queue.counts()["completed"] == 1


@pytest.mark.asyncio
async def test_job_fails_terminally_after_max_attempts():
    queue = JobQueue("daily-nav", RecordingHandler(duration=0, failures=5), max_attempts=2, backoff_seconds=0)
    queue.add()

    await queue.run_next()
    job = await queue.run_next()

    assert job.state == JobState.FAILED
    assert job.attempts == 2
    assert queue.counts() == {"waiting": 0, "active": 0, "completed": 0, "failed": 1, "delayed": 0}


@pytest.mark.asyncio
async def test_min_interval_limits_every_origin():
    handler = RecordingHandler(duration=0)
    queue = JobQueue("daily-nav", handler, min_interval=60)
    queue.add(origin="schedule")
    queue.add(origin="manual")

    assert await queue.run_next() is not None
    assert await queue.run_next() is None
    assert handler.calls == 1
    assert queue.counts()["waiting"] == 1


@pytest.mark.asyncio
async def test_manual_run_goes_before_scheduled_one():
    queue = JobQueue("market-indices", RecordingHandler(duration=0))
    queue.add(origin="schedule")
    queue.add(origin="manual")

    job = await queue.run_next()

    assert job.origin == "manual"
    assert queue.has_waiting("schedule")


@pytest.mark.asyncio
async def test_history_is_bounded():
    queue = JobQueue("market-indices", RecordingHandler(duration=0), keep_completed=2)
    for _ in range(3):
        queue.add()
        await queue.run_next()

    assert queue.counts()["completed"] == 2


@pytest.mark.asyncio
async def test_recent_lists_finished_jobs():
    engine = RefreshEngine(enable_schedules=False)
    queue = engine.register(JobQueue("market-indices", RecordingHandler(duration=0)))
    queue.add()
    await queue.run_next()

    recent = engine.recent("market-indices")
    assert len(recent["completed"]) == 1
    assert recent["completed"][0]["state"] == "completed"
    assert recent["completed"][0]["result"] == {"success": True}
    assert recent["failed"] == []


@pytest.mark.asyncio
async def test_interval_schedule_enqueues_runs():
    handler = RecordingHandler(duration=0)
    engine = RefreshEngine(enable_schedules=True)
    queue = engine.register(JobQueue("market-indices", handler, schedule=IntervalSchedule(0.02)))
    await engine.start()
    try:
        for _ in range(200):
            if handler.calls >= 2:
                break
            await asyncio.sleep(0.01)
    finally:
        await engine.stop()

    assert handler.calls >= 2
    assert all(j.origin == "schedule" for j in queue.completed)
    assert engine.is_running is False


def test_daily_schedule_next_fire_time():
    schedule = DailySchedule("22:30", tz="Asia/Kolkata")
    # 12:00 UTC == 17:30 IST; next run 22:30 IST == 17:00 UTC same day
    assert schedule.next_after(datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)) == datetime(2026, 1, 5, 17, 0, tzinfo=timezone.utc)
    assert schedule.next_after(datetime(2026, 1, 5, 17, 0, tzinfo=timezone.utc)) == datetime(2026, 1, 6, 17, 0, tzinfo=timezone.utc)
    assert schedule.describe() == "daily at 22:30 Asia/Kolkata"


def test_interval_schedule_validation():
    with pytest.raises(ValueError):
        IntervalSchedule(0)
    assert IntervalSchedule(300).describe() == "every 300s"


def test_weekly_schedule_next_fire_time():
    schedule = WeeklySchedule("sun", "02:00", tz="Asia/Kolkata")
    # Monday 17:30 IST -> Sunday 11 Jan 02:00 IST == Saturday 20:30 UTC
    assert schedule.next_after(datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)) == datetime(2026, 1, 10, 20, 30, tzinfo=timezone.utc)
    # Sunday 01:00 IST fires the same morning
    assert schedule.next_after(datetime(2026, 1, 10, 19, 30, tzinfo=timezone.utc)) == datetime(2026, 1, 10, 20, 30, tzinfo=timezone.utc)
    assert schedule.next_after(datetime(2026, 1, 10, 20, 30, tzinfo=timezone.utc)) == datetime(2026, 1, 17, 20, 30, tzinfo=timezone.utc)
    assert schedule.describe() == "weekly on sun at 02:00 Asia/Kolkata"
    assert WeeklySchedule(6, "02:00").weekday == 6
    with pytest.raises(ValueError):
        WeeklySchedule("someday", "02:00")
