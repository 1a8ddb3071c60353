"""
Queue backend adapter — owns the job store and the named queue handles.
"""
from __future__ import annotations

import asyncio
from typing import Any, Optional

import structlog

from config.settings import Settings
from job_queue.errors import QueueUnavailable
from job_queue.models import BackoffPolicy, Job, JobOptions
from job_queue.queue import JobQueue
from job_queue.store import JobStore, create_job_store

logger = structlog.get_logger()


class QueueBackend:
    """
    Connects the store and hands out one JobQueue per name.

    Queue handles are memoized on the instance; every new handle gets the
    standard logging observers.
    """

    def __init__(self, settings: Settings, store: JobStore = None):
        self._settings = settings
        self._store = store or create_job_store(settings)
        self._queues: dict[str, JobQueue] = {}
        self._shutdown = False
        self._store.add_state_listener(self._on_store_state)

    @property
    def store(self) -> JobStore:
        return self._store

    @property
    def queue_names(self) -> list[str]:
        return list(self._queues)

    def default_job_options(self) -> JobOptions:
        worker = self._settings.worker
        queue = self._settings.queue
        return JobOptions(
            priority=0,
            delay=0,
            attempts=max(worker.max_retries, 1),
            backoff=BackoffPolicy(type="exponential", delay=worker.retry_delay),
            remove_on_complete=queue.remove_on_complete,
            remove_on_fail=queue.remove_on_fail,
        )

    async def initialize(self) -> bool:
        """Connect the store and open the default queue. Never raises."""
        if self._shutdown:
            logger.warning("queue_backend_init_after_shutdown")
            return False
        try:
            await self._store.connect()
            if self._shutdown:
                # shutdown() ran while the store was connecting
                await self._store.close()
                logger.warning("queue_backend_init_interrupted")
                return False
            self.get_queue(self._settings.queue.name)
        except Exception as e:
            logger.error("queue_backend_init_failed", backend=self._settings.queue.backend, error=str(e))
            return False
        logger.info("queue_backend_initialized",
                    backend=self._settings.queue.backend,
                    queue=self._settings.queue.name)
        return True

    def get_queue(self, name: str) -> JobQueue:
        if self._shutdown:
            raise QueueUnavailable("Queue backend is shut down")
        queue = self._queues.get(name)
        if queue is None:
            cfg = self._settings.queue
            queue = JobQueue(
                name,
                self._store,
                default_options=self.default_job_options(),
                lock_duration=cfg.lock_duration,
                stalled_interval=cfg.stalled_interval,
                max_stalled_count=cfg.max_stalled_count,
                poll_interval=cfg.poll_interval,
            )
            self._observe(queue)
            self._queues[name] = queue
            logger.info("queue_created", queue=name)
        return queue

    def _observe(self, queue: JobQueue) -> None:
        name = queue.name

        def on_completed(job: Job, result: Any):
            duration = (job.finished_on - job.processed_on) if job.processed_on else None
            logger.info("job_completed", queue=name, job_id=job.id, job_type=job.name, duration_ms=duration)

        def on_failed(job: Job, error: Exception):
            logger.error("job_failed",
                         queue=name,
                         job_id=job.id,
                         job_type=job.name,
                         attempts_made=job.attempts_made,
                         max_attempts=job.max_attempts,
                         error=str(error))

        def on_stalled(job: Job):
            logger.warning("job_stalled", queue=name, job_id=job.id, job_type=job.name)

        def on_progress(job: Job, progress: Any):
            logger.debug("job_progress", queue=name, job_id=job.id, progress=progress)

        def on_active(job: Job):
            logger.debug("job_started", queue=name, job_id=job.id, job_type=job.name)

        def on_waiting(job_id: str):
            logger.debug("job_waiting", queue=name, job_id=job_id)

        def on_error(error: Exception):
            logger.error("queue_error", queue=name, error=str(error))

        queue.on("completed", on_completed)
        queue.on("failed", on_failed)
        queue.on("stalled", on_stalled)
        queue.on("progress", on_progress)
        queue.on("active", on_active)
        queue.on("waiting", on_waiting)
        queue.on("error", on_error)

    def _on_store_state(self, state: str, error: Optional[Exception]) -> None:
        if state == "error":
            logger.error("queue_store_error", error=str(error) if error else None)
        elif state == "end":
            logger.warning("queue_store_disconnected")
        else:
            logger.info("queue_store_state", state=state)

    def is_healthy(self) -> bool:
        return not self._shutdown and self._store.is_ready

    async def shutdown(self) -> None:
        """Close every queue handle, then the store. Idempotent."""
        if self._shutdown:
            return
        self._shutdown = True

        queues = list(self._queues.values())
        results = await asyncio.gather(*(q.close() for q in queues), return_exceptions=True)
        for queue, result in zip(queues, results):
            if isinstance(result, Exception):
                logger.error("queue_close_failed", queue=queue.name, error=str(result))
        self._queues.clear()

        try:
            await self._store.close()
        except Exception as e:
            logger.error("queue_store_close_failed", error=str(e))
        logger.info("queue_backend_shutdown", queues=len(queues))
