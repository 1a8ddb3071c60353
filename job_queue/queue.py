"""
JobQueue — a named queue handle with typed workers.

Each registered job type gets its own lane of ``concurrency`` worker
coroutines. A worker promotes due delayed jobs, claims the best waiting job
of its type, runs the handler while renewing the job lock, then records the
outcome (completed, retried with backoff, or failed for good).

Events (listeners run synchronously, a raising listener is only logged):
  completed(job, result)   failed(job, error)   stalled(job)
  progress(job, value)     active(job)          waiting(job_id)
  error(exc)
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Union

import structlog
from apscheduler.triggers.cron import CronTrigger

from job_queue.errors import (
    InvalidJobOptions,
    JobProcessingError,
    ProcessorAlreadyRegistered,
    QueueError,
    QueueUnavailable,
)
from job_queue.models import Job, JobOptions, JobState, RepeatOptions, keep_count, now_ms
from job_queue.store import STALLED_REASON, JobStore

logger = structlog.get_logger()

EVENTS = ("completed", "failed", "stalled", "progress", "active", "waiting", "error")

JobHandler = Callable[[Job], Awaitable[Any]]

_MIN_IDLE = 0.005  # seconds


def next_occurrence(repeat: RepeatOptions, after_ms: int) -> Optional[int]:
    """First run time (ms) strictly after ``after_ms``, or None when exhausted."""
    if repeat.limit and repeat.count >= repeat.limit:
        return None
    if repeat.every:
        return (after_ms // repeat.every + 1) * repeat.every
    try:
        trigger = CronTrigger.from_crontab(repeat.cron, timezone=repeat.tz or "UTC")
    except ValueError as e:
        raise InvalidJobOptions(f"Invalid cron expression {repeat.cron!r}: {e}") from e
    start = datetime.fromtimestamp(after_ms / 1000, tz=timezone.utc) + timedelta(milliseconds=1)
    fire = trigger.get_next_fire_time(None, start)
    return int(fire.timestamp() * 1000) if fire else None


class JobQueue:
    """Handle for one named queue on a JobStore."""

    def __init__(
        self,
        name: str,
        store: JobStore,
        default_options: Union[JobOptions, dict[str, Any], None] = None,
        lock_duration: int = 30000,
        stalled_interval: int = 30000,
        max_stalled_count: int = 1,
        poll_interval: int = 1000,
    ):
        self.name = name
        self._store = store
        self._default_options = JobOptions.parse(default_options)
        self._lock_duration = lock_duration
        self._stalled_interval = stalled_interval
        self._max_stalled_count = max_stalled_count
        self._poll_interval = poll_interval

        self._listeners: dict[str, list[Callable]] = {event: [] for event in EVENTS}
        self._handlers: dict[str, JobHandler] = {}
        self._workers: list[asyncio.Task] = []
        self._maintenance_task: Optional[asyncio.Task] = None
        self._wakeup = asyncio.Condition()
        self._generation = 0
        self._closing = False
        self._closed = asyncio.Event()

    # ── events ─────────────────────────────────────────────

    def on(self, event: str, callback: Callable) -> Callable[[], None]:
        """Register a listener; returns a callable that removes it."""
        if event not in self._listeners:
            raise ValueError(f"Unknown queue event: {event}")
        self._listeners[event].append(callback)

        def unsubscribe():
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)
        return unsubscribe

    def _emit(self, event: str, *args) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception:
                logger.exception("queue_listener_error", queue=self.name, queue_event=event)

    async def _notify(self) -> None:
        self._generation += 1
        async with self._wakeup:
            self._wakeup.notify_all()

    # ── producing ──────────────────────────────────────────

    async def add(self, name: str, data: Any = None,
                  opts: Union[JobOptions, dict[str, Any], None] = None) -> Job:
        """Enqueue a job; options are merged over the queue defaults."""
        options = JobOptions.merge(self._default_options, opts)
        if data is None:
            data = {}
        if options.repeat:
            job = await self._add_occurrence(name, data, options, now_ms())
            if job is None:
                raise InvalidJobOptions("Repeat schedule has no future occurrence")
            return job

        now = now_ms()
        job_id = options.job_id or await self._store.next_job_id(self.name)
        job = Job(id=job_id, name=name, data=data, opts=options, timestamp=now)
        run_at = now + options.delay if options.delay else None
        if not await self._store.add_job(self.name, job, run_at):
            logger.info("job_duplicate_ignored", queue=self.name, job_id=job_id, job_type=name)
            existing = await self._store.get_job(self.name, job_id)
            return self._bind(existing) if existing else job

        self._emit("waiting", job.id)
        await self._notify()
        return self._bind(job)

    async def _add_occurrence(self, name: str, data: Any, options: JobOptions, after: int) -> Optional[Job]:
        run_at = next_occurrence(options.repeat, after)
        if run_at is None:
            return None
        now = now_ms()
        repeat = options.repeat.model_copy(update={"count": options.repeat.count + 1})
        occurrence_opts = options.model_copy(
            update={"repeat": repeat, "job_id": None, "delay": max(run_at - now, 0)}
        )
        job_id = f"repeat:{name}:{repeat.key}:{run_at}"
        job = Job(id=job_id, name=name, data=data, opts=occurrence_opts, timestamp=now)
        if await self._store.add_job(self.name, job, run_at):
            logger.debug("repeat_job_scheduled", queue=self.name, job_id=job_id, run_at=run_at)
            self._emit("waiting", job.id)
            await self._notify()
            return self._bind(job)
        existing = await self._store.get_job(self.name, job_id)
        return self._bind(existing) if existing else job

    def _bind(self, job: Job) -> Job:
        job.queue = self
        return job

    # ── consuming ──────────────────────────────────────────

    def process(self, name: str, handler: JobHandler, concurrency: int = 1) -> None:
        """Start ``concurrency`` workers for jobs named ``name``."""
        if name in self._handlers:
            raise ProcessorAlreadyRegistered(self.name, name)
        if self._closing:
            raise QueueError(f"Queue {self.name} is closing")
        self._handlers[name] = handler
        for index in range(max(concurrency, 1)):
            task = asyncio.create_task(self._work_loop(name, handler), name=f"{self.name}:{name}:{index}")
            self._workers.append(task)
        if self._maintenance_task is None:
            self._maintenance_task = asyncio.create_task(self._maintenance_loop(), name=f"{self.name}:maintenance")
        logger.info("queue_processor_started", queue=self.name, job_type=name, concurrency=concurrency)

    async def _work_loop(self, name: str, handler: JobHandler) -> None:
        while not self._closing:
            generation = self._generation
            try:
                job = await self._next_job(name)
            except QueueUnavailable:
                await self._idle(generation, self._poll_interval / 1000)
                continue
            except Exception as e:
                logger.error("queue_claim_error", queue=self.name, job_type=name, error=str(e))
                self._emit("error", e)
                await self._idle(generation, self._poll_interval / 1000)
                continue

            if job is None:
                await self._idle(generation, await self._idle_timeout())
                continue
            await self._run_job(job, handler)

    async def _next_job(self, name: str) -> Optional[Job]:
        now = now_ms()
        promoted = await self._store.promote_delayed(self.name, now)
        for job_id in promoted:
            self._emit("waiting", job_id)
        if promoted:
            await self._notify()
        job = await self._store.claim_next(self.name, name, now + self._lock_duration, now)
        return self._bind(job) if job else None

    async def _idle_timeout(self) -> float:
        timeout = self._poll_interval / 1000
        try:
            next_at = await self._store.next_delayed_at(self.name)
        except QueueError:
            return timeout
        if next_at is not None:
            timeout = min(timeout, (next_at - now_ms()) / 1000)
        return max(timeout, _MIN_IDLE)

    async def _idle(self, generation: int, timeout: float) -> None:
        async with self._wakeup:
            if self._closing or generation != self._generation:
                return
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout)
            except asyncio.TimeoutError:
                pass

    async def _run_job(self, job: Job, handler: JobHandler) -> None:
        self._emit("active", job)
        if job.opts.repeat:
            await self._schedule_next_occurrence(job)

        renewer = asyncio.create_task(self._renew_lock(job))
        # a cancelled handler leaves the job active; stalled recovery re-queues it
        try:
            try:
                result = await handler(job)
            finally:
                renewer.cancel()
        except Exception as exc:
            await self._handle_failure(job, exc)
        else:
            await self._handle_success(job, result)

    async def _schedule_next_occurrence(self, job: Job) -> None:
        scheduled_at = job.timestamp + job.opts.delay
        try:
            await self._add_occurrence(job.name, job.data, job.opts, scheduled_at)
        except QueueError as e:
            logger.error("repeat_schedule_failed", queue=self.name, job_id=job.id, error=str(e))
            self._emit("error", e)

    async def _renew_lock(self, job: Job) -> None:
        interval = self._lock_duration / 2000
        while True:
            await asyncio.sleep(interval)
            try:
                await self._store.extend_lock(self.name, job.id, now_ms() + self._lock_duration)
            except QueueError as e:
                logger.warning("job_lock_renew_failed", queue=self.name, job_id=job.id, error=str(e))

    async def _handle_success(self, job: Job, result: Any) -> None:
        job.return_value = result
        job.finished_on = now_ms()
        job.state = JobState.COMPLETED
        try:
            recorded = await self._store.complete_job(self.name, job, keep_count(job.opts.remove_on_complete))
        except QueueError as e:
            logger.error("job_complete_persist_failed", queue=self.name, job_id=job.id, error=str(e))
            self._emit("error", e)
            return
        if not recorded:
            logger.warning("job_lock_lost", queue=self.name, job_id=job.id, job_type=job.name)
            return
        self._emit("completed", job, result)

    async def _handle_failure(self, job: Job, exc: Exception) -> None:
        now = now_ms()
        job.attempts_made += 1
        job.failed_reason = str(exc) or type(exc).__name__
        try:
            if job.attempts_made < job.opts.attempts:
                delay = job.opts.backoff.delay_for(job.attempts_made) if job.opts.backoff else 0
                job.state = JobState.DELAYED if delay > 0 else JobState.WAITING
                recorded = await self._store.retry_job(self.name, job, now + delay, now)
            else:
                job.state = JobState.FAILED
                job.finished_on = now
                recorded = await self._store.fail_job(self.name, job, keep_count(job.opts.remove_on_fail))
        except QueueError as e:
            logger.error("job_failure_persist_failed", queue=self.name, job_id=job.id, error=str(e))
            self._emit("error", e)
            return
        if not recorded:
            logger.warning("job_lock_lost", queue=self.name, job_id=job.id, job_type=job.name)
            return
        self._emit("failed", job, exc)
        if job.state != JobState.FAILED:
            await self._notify()

    # ── maintenance ────────────────────────────────────────

    async def _maintenance_loop(self) -> None:
        while not self._closing:
            try:
                if not self._store.is_ready:
                    await self._store.ping()
                else:
                    await self.check_stalled()
            except QueueError as e:
                logger.warning("queue_maintenance_error", queue=self.name, error=str(e))
                self._emit("error", e)
            await asyncio.sleep(self._stalled_interval / 1000)

    async def check_stalled(self) -> list[str]:
        """Re-queue active jobs whose lock expired; returns the re-queued ids."""
        requeued, failed = await self._store.requeue_stalled(self.name, now_ms(), self._max_stalled_count)
        for job_id in requeued:
            job = await self._store.get_job(self.name, job_id)
            if job is not None:
                self._emit("stalled", self._bind(job))
        for job_id in failed:
            job = await self._store.get_job(self.name, job_id)
            if job is not None:
                self._bind(job)
                self._emit("stalled", job)
                self._emit("failed", job, JobProcessingError(STALLED_REASON, job_id=job.id, job_type=job.name))
        if requeued:
            await self._notify()
        return requeued

    async def update_progress(self, job: Job, progress: Any) -> None:
        await self._store.update_progress(self.name, job.id, progress)
        self._emit("progress", job, progress)

    # ── control ────────────────────────────────────────────

    async def pause(self) -> None:
        """Stop claiming new jobs; active jobs run to completion."""
        await self._store.pause(self.name)
        logger.info("queue_paused", queue=self.name)

    async def resume(self) -> None:
        await self._store.resume(self.name)
        await self._notify()
        logger.info("queue_resumed", queue=self.name)

    async def is_paused(self) -> bool:
        return await self._store.is_paused(self.name)

    async def clean(self, grace_ms: int, state: str = "completed", limit: int = 0) -> list[str]:
        removed = await self._store.clean(self.name, grace_ms, state, now_ms(), limit)
        if removed:
            logger.info("queue_cleaned", queue=self.name, state=state, count=len(removed))
        return removed

    async def get_job(self, job_id: str) -> Optional[Job]:
        job = await self._store.get_job(self.name, job_id)
        return self._bind(job) if job else None

    async def remove_job(self, job_id: str) -> bool:
        return await self._store.remove_job(self.name, job_id)

    async def get_job_counts(self) -> dict[str, int]:
        return await self._store.get_counts(self.name)

    @property
    def is_closing(self) -> bool:
        return self._closing

    async def close(self) -> None:
        """Stop claiming, let in-flight handlers finish, stop all loops. Idempotent."""
        if self._closing:
            await self._closed.wait()
            return
        self._closing = True
        await self._notify()

        if self._maintenance_task is not None:
            self._maintenance_task.cancel()
            try:
                await self._maintenance_task
            except asyncio.CancelledError:
                pass

        if self._workers:
            results = await asyncio.gather(*self._workers, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error("queue_worker_crashed", queue=self.name, error=str(result))
        self._workers.clear()
        self._closed.set()
        logger.info("queue_closed", queue=self.name)
