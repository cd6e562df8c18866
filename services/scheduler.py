"""
Scheduled refresh engine.

One queue per named job, each drained by its own asyncio worker, so
executions within a queue are strictly sequential. Failed executions are
retried with exponential backoff up to max_attempts. A running job is never
cancelled mid-flight: stop() waits for it to finish.

Only runs the schedules if ENABLE_SCHEDULER=true; manual triggers work
whenever the engine is started.
"""
import asyncio
import heapq
import itertools
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime, time as dtime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from models import utcnow
from services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

MANUAL_PRIORITY = 1
SCHEDULED_PRIORITY = 5


class JobContext:
    """Context for a background job with request_id-like tracking"""

    def __init__(self, job_id: Optional[str] = None, attempt: int = 1):
        self.job_id = job_id or f"job-{uuid.uuid4().hex[:8]}"
        self.attempt = attempt

    def log(self, level: str, msg: str):
        """Log with job_id"""
        logger.log(getattr(logging, level.upper(), logging.INFO), f"[{self.job_id}] {msg}")


JobHandler = Callable[[JobContext], Awaitable[Any]]


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class JobInstance:
    id: str
    name: str
    origin: str  # schedule | manual
    priority: int
    state: JobState = JobState.WAITING
    attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    result: Any = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "origin": self.origin,
            "state": self.state.value,
            "attempts": self.attempts,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "result": self.result,
            "error": self.error,
        }


@dataclass(frozen=True)
class JobHandle:
    id: str
    name: str


class IntervalSchedule:
    def __init__(self, seconds: float):
        if seconds <= 0:
            raise ValueError("interval must be positive")
        self.seconds = seconds

    def next_after(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.seconds)

    def describe(self) -> str:
        return f"every {self.seconds:g}s"


class DailySchedule:
    """Fires once a day at HH:MM wall-clock time in tz"""

    def __init__(self, at: str, tz: str = "Asia/Kolkata"):
        hour, minute = (int(p) for p in at.split(":", 1))
        self.at = dtime(hour, minute)
        self.tz = ZoneInfo(tz)

    def next_after(self, now: datetime) -> datetime:
        local = now.astimezone(self.tz)
        day: date = local.date()
        candidate = datetime.combine(day, self.at, tzinfo=self.tz)
        if candidate <= local:
            candidate = datetime.combine(day + timedelta(days=1), self.at, tzinfo=self.tz)
        return candidate.astimezone(timezone.utc)

    def describe(self) -> str:
        return f"daily at {self.at.strftime('%H:%M')} {self.tz.key}"


WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


class WeeklySchedule(DailySchedule):
    """Fires once a week on weekday (0=Monday or 'sun') at HH:MM in tz"""

    def __init__(self, weekday, at: str, tz: str = "Asia/Kolkata"):
        super().__init__(at, tz=tz)
        if isinstance(weekday, str):
            weekday = WEEKDAYS.index(weekday.strip().lower()[:3])
        if not 0 <= weekday <= 6:
            raise ValueError("weekday must be 0 (Monday) .. 6 (Sunday)")
        self.weekday = weekday

    def next_after(self, now: datetime) -> datetime:
        local = now.astimezone(self.tz)
        day: date = local.date() + timedelta(days=(self.weekday - local.weekday()) % 7)
        candidate = datetime.combine(day, self.at, tzinfo=self.tz)
        if candidate <= local:
            candidate = datetime.combine(day + timedelta(days=7), self.at, tzinfo=self.tz)
        return candidate.astimezone(timezone.utc)

    def describe(self) -> str:
        return f"weekly on {WEEKDAYS[self.weekday]} at {self.at.strftime('%H:%M')} {self.tz.key}"


class JobQueue:
    """
    waiting/delayed -> active -> completed
    active -> failed -> delayed (backoff) ... until max_attempts, then failed
    """

    def __init__(
        self,
        name: str,
        handler: JobHandler,
        schedule=None,
        max_attempts: int = 3,
        backoff_seconds: float = 30.0,
        keep_completed: int = 100,
        keep_failed: int = 50,
        min_interval: Optional[float] = None,
    ):
        self.name = name
        self.handler = handler
        self.schedule = schedule
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_seconds = backoff_seconds
        self.min_interval = min_interval
        self.limiter = RateLimiter(rate=1, per_seconds=min_interval) if min_interval else None

        self._seq = itertools.count()
        self._waiting: List[Tuple[int, int, JobInstance]] = []
        self._delayed: List[Tuple[float, int, JobInstance]] = []
        self.active: Optional[JobInstance] = None
        self.completed: Deque[JobInstance] = deque(maxlen=keep_completed)
        self.failed: Deque[JobInstance] = deque(maxlen=keep_failed)
        self._wakeup = asyncio.Event()

    def add(self, origin: str = "manual", priority: Optional[int] = None) -> JobInstance:
        if priority is None:
            priority = MANUAL_PRIORITY if origin == "manual" else SCHEDULED_PRIORITY
        job = JobInstance(id=f"{self.name}-{uuid.uuid4().hex[:8]}", name=self.name, origin=origin, priority=priority)
        heapq.heappush(self._waiting, (priority, next(self._seq), job))
        self._wakeup.set()
        return job

    def has_waiting(self, origin: str) -> bool:
        return any(job.origin == origin for _, _, job in self._waiting)

    def counts(self) -> Dict[str, int]:
        return {
            "waiting": len(self._waiting),
            "active": 1 if self.active is not None else 0,
            "completed": len(self.completed),
            "failed": len(self.failed),
            "delayed": len(self._delayed),
        }

    def _promote_delayed(self, now: float) -> None:
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job = heapq.heappop(self._delayed)
            job.state = JobState.WAITING
            heapq.heappush(self._waiting, (job.priority, next(self._seq), job))

    def _next_wait(self, now: float, poll: float) -> float:
        """How long the worker may sleep before something can become runnable"""
        waits = [poll]
        if self._delayed:
            waits.append(max(0.0, self._delayed[0][0] - now))
        if self._waiting and self.limiter is not None:
            waits.append(self.limiter.retry_after(self.name))
        return min(waits)

    async def run_next(self) -> Optional[JobInstance]:
        """Execute the next runnable job, if any. Returns it once finished."""
        self._promote_delayed(time.monotonic())
        if not self._waiting:
            return None
        if self.limiter is not None and not self.limiter.is_allowed(self.name):
            return None
        _, _, job = heapq.heappop(self._waiting)
        await self._execute(job)
        return job

    async def _execute(self, job: JobInstance) -> None:
        job.state = JobState.ACTIVE
        job.attempts += 1
        job.started_at = utcnow()
        self.active = job
        ctx = JobContext(job.id, attempt=job.attempts)
        ctx.log("info", f"Starting {self.name} (origin={job.origin}, attempt {job.attempts}/{self.max_attempts})")
        start = time.monotonic()
        try:
            job.result = await self.handler(ctx)
        except Exception as e:
            job.error = f"{type(e).__name__}: {e}"
            job.finished_at = utcnow()
            if job.attempts < self.max_attempts:
                delay = self.backoff_seconds * (2 ** (job.attempts - 1))
                job.state = JobState.DELAYED
                heapq.heappush(self._delayed, (time.monotonic() + delay, next(self._seq), job))
                ctx.log("warning", f"{self.name} failed ({job.error}); retry in {delay:g}s")
            else:
                job.state = JobState.FAILED
                self.failed.append(job)
                ctx.log("error", f"{self.name} failed permanently after {job.attempts} attempts: {job.error}")
        else:
            job.error = None
            job.state = JobState.COMPLETED
            job.finished_at = utcnow()
            self.completed.append(job)
            elapsed_ms = int((time.monotonic() - start) * 1000)
            ctx.log("info", f"{self.name} completed in {elapsed_ms}ms")
        finally:
            self.active = None

    async def run_worker(self, stop: asyncio.Event, poll: float = 1.0) -> None:
        while not stop.is_set():
            job = await self.run_next()
            if job is not None:
                continue
            self._wakeup.clear()
            timeout = self._next_wait(time.monotonic(), poll)
            waiter = asyncio.ensure_future(self._wakeup.wait())
            stopper = asyncio.ensure_future(stop.wait())
            try:
                await asyncio.wait({waiter, stopper}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
            finally:
                waiter.cancel()
                stopper.cancel()


class RefreshEngine:
    def __init__(self, enable_schedules: bool = True, stop_grace_seconds: float = 60.0):
        self.enable_schedules = enable_schedules
        self.stop_grace_seconds = stop_grace_seconds
        self.queues: Dict[str, JobQueue] = {}
        self.is_running = False
        self._stop = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    def register(self, queue: JobQueue) -> JobQueue:
        if queue.name in self.queues:
            raise ValueError(f"Job already registered: {queue.name}")
        self.queues[queue.name] = queue
        return queue

    def trigger(self, name: str) -> JobHandle:
        """Enqueue a manual run. Raises KeyError for unknown job names."""
        queue = self.queues[name]
        job = queue.add(origin="manual")
        logger.info(f"Manual trigger queued: {name} ({job.id})")
        return JobHandle(id=job.id, name=name)

    def stats(self) -> Dict[str, Dict[str, int]]:
        return {name: q.counts() for name, q in self.queues.items()}

    def recent(self, name: str) -> Dict[str, Any]:
        queue = self.queues[name]
        return {
            "completed": [j.to_dict() for j in queue.completed],
            "failed": [j.to_dict() for j in queue.failed],
        }

    async def start(self) -> None:
        if self.is_running:
            return
        self._stop = asyncio.Event()
        for queue in self.queues.values():
            self._tasks.append(asyncio.create_task(queue.run_worker(self._stop)))
            if self.enable_schedules and queue.schedule is not None:
                self._tasks.append(asyncio.create_task(self._schedule_loop(queue)))
                logger.info(f"Scheduled {queue.name}: {queue.schedule.describe()}")
        self.is_running = True
        logger.info(f"Refresh engine started ({len(self.queues)} queues, schedules={'on' if self.enable_schedules else 'off'})")

    async def _schedule_loop(self, queue: JobQueue) -> None:
        while not self._stop.is_set():
            now = datetime.now(timezone.utc)
            fire_at = queue.schedule.next_after(now)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=(fire_at - now).total_seconds())
                return
            except asyncio.TimeoutError:
                pass
            if queue.has_waiting("schedule"):
                logger.info(f"{queue.name}: scheduled run already waiting, skipping tick")
                continue
            queue.add(origin="schedule")

    async def stop(self) -> None:
        self._stop.set()
        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=self.stop_grace_seconds)
            for task in pending:
                logger.warning(f"Refresh engine task did not stop within {self.stop_grace_seconds}s, cancelling")
                task.cancel()
        self._tasks = []
        self.is_running = False
        logger.info("Refresh engine stopped")
