"""
Job Store — durable state behind a JobQueue.

Queue Topology (per queue name):
  wait:{type}   — claimable jobs of one type, ordered by wait_score
  delayed       — jobs not yet eligible, ordered by run-at time
  active        — claimed jobs, ordered by lock expiry
  completed     — finished jobs, ordered by finished_on
  failed        — terminally failed jobs, ordered by finished_on
  paused        — flag; while set nothing is claimed

Every operation moving a job between these sets is atomic from the point
of view of concurrent workers.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import structlog

from config.settings import Settings
from job_queue.errors import QueueUnavailable
from job_queue.models import Job, JobState, wait_score

logger = structlog.get_logger()

STALLED_REASON = "job stalled more than allowable limit"

# connection states broadcast to listeners
CONNECT = "connect"
READY = "ready"
ERROR = "error"
END = "end"

StateListener = Callable[[str, Optional[Exception]], Any]


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class JobStore(ABC):
    """Abstract job store interface."""

    def __init__(self):
        self._state = END
        self._state_listeners: list[StateListener] = []

    # ── connection state ───────────────────────────────────

    @property
    def state(self) -> str:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state == READY

    def add_state_listener(self, callback: StateListener) -> Callable[[], None]:
        """Subscribe to connect/ready/error/end; returns an unsubscribe callable."""
        self._state_listeners.append(callback)

        def unsubscribe():
            if callback in self._state_listeners:
                self._state_listeners.remove(callback)
        return unsubscribe

    def _set_state(self, state: str, error: Optional[Exception] = None) -> None:
        if state == self._state and error is None:
            return
        self._state = state
        for callback in list(self._state_listeners):
            try:
                callback(state, error)
            except Exception:
                logger.exception("store_state_listener_error", state=state)

    def _ensure_ready(self) -> None:
        if self._state != READY:
            raise QueueUnavailable()

    # ── lifecycle ──────────────────────────────────────────

    @abstractmethod
    async def connect(self):
        """Establish the connection; emits connect then ready (or error)."""
        ...

    @abstractmethod
    async def close(self):
        """Release the connection; emits end."""
        ...

    @abstractmethod
    async def ping(self) -> bool:
        """Probe the backend; a successful probe restores the ready state."""
        ...

    # ── jobs ───────────────────────────────────────────────

    @abstractmethod
    async def next_job_id(self, queue: str) -> str:
        ...

    @abstractmethod
    async def add_job(self, queue: str, job: Job, run_at: Optional[int] = None) -> bool:
        """
        Store a new job. ``run_at`` (ms) puts it in the delayed set, otherwise
        it is immediately claimable. Returns False when the id already exists.
        Sets ``job.wait_score``.
        """
        ...

    @abstractmethod
    async def get_job(self, queue: str, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def update_progress(self, queue: str, job_id: str, progress: Any) -> None:
        ...

    @abstractmethod
    async def remove_job(self, queue: str, job_id: str) -> bool:
        ...

    # ── claiming ───────────────────────────────────────────

    @abstractmethod
    async def claim_next(self, queue: str, job_type: str, lock_until: int, now: int) -> Optional[Job]:
        """Move the best waiting job of ``job_type`` to active. None when paused or empty."""
        ...

    @abstractmethod
    async def extend_lock(self, queue: str, job_id: str, lock_until: int) -> bool:
        ...

    @abstractmethod
    async def promote_delayed(self, queue: str, now: int, limit: int = 1000) -> list[str]:
        """Move delayed jobs whose run-at time has passed back to waiting."""
        ...

    @abstractmethod
    async def next_delayed_at(self, queue: str) -> Optional[int]:
        ...

    # ── finishing ──────────────────────────────────────────

    @abstractmethod
    async def complete_job(self, queue: str, job: Job, keep: Optional[int]) -> bool:
        """
        Move an active job to completed. ``keep`` bounds how many completed
        jobs are retained (None keeps all). False when the job was no longer
        active (lock lost).
        """
        ...

    @abstractmethod
    async def retry_job(self, queue: str, job: Job, run_at: int, now: int) -> bool:
        """Move an active job back to delayed (run_at > now) or waiting."""
        ...

    @abstractmethod
    async def fail_job(self, queue: str, job: Job, keep: Optional[int]) -> bool:
        ...

    @abstractmethod
    async def requeue_stalled(self, queue: str, now: int, max_stalled_count: int) -> tuple[list[str], list[str]]:
        """
        Recover active jobs whose lock expired. Returns (requeued, failed) ids;
        a job recovered more than ``max_stalled_count`` times fails.
        """
        ...

    # ── queue level ────────────────────────────────────────

    @abstractmethod
    async def pause(self, queue: str) -> None:
        ...

    @abstractmethod
    async def resume(self, queue: str) -> None:
        ...

    @abstractmethod
    async def is_paused(self, queue: str) -> bool:
        ...

    @abstractmethod
    async def get_counts(self, queue: str) -> dict[str, int]:
        """Counts for waiting, active, completed, failed, delayed."""
        ...

    @abstractmethod
    async def clean(self, queue: str, grace_ms: int, state: str, now: int, limit: int = 0) -> list[str]:
        """Remove completed/failed jobs that finished before ``now - grace_ms``."""
        ...


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation
# ──────────────────────────────────────────────────────────────

@dataclass
class _QueueData:
    jobs: dict[str, dict[str, str]] = field(default_factory=dict)
    waiting: dict[str, dict[str, float]] = field(default_factory=dict)   # type → {id: score}
    delayed: dict[str, int] = field(default_factory=dict)               # id → run_at
    active: dict[str, int] = field(default_factory=dict)                # id → lock_until
    completed: dict[str, int] = field(default_factory=dict)             # id → finished_on
    failed: dict[str, int] = field(default_factory=dict)
    paused: bool = False
    id_counter: int = 0
    seq: int = 0


class InMemoryJobStore(JobStore):
    """
    Development/test store on plain dicts.
    Single-process only: no persistence. Methods never suspend, so each
    one is atomic with respect to other coroutines.
    """

    def __init__(self):
        super().__init__()
        self._queues: dict[str, _QueueData] = {}

    def _q(self, name: str) -> _QueueData:
        if name not in self._queues:
            self._queues[name] = _QueueData()
        return self._queues[name]

    def _load(self, data: _QueueData, job_id: str) -> Optional[Job]:
        raw = data.jobs.get(job_id)
        return Job.from_dict(raw) if raw is not None else None

    async def connect(self):
        self._set_state(CONNECT)
        self._set_state(READY)
        logger.info("inmemory_store_connected")

    async def close(self):
        self._set_state(END)

    async def ping(self) -> bool:
        if self._state == END:
            return False
        self._set_state(READY)
        return True

    async def next_job_id(self, queue: str) -> str:
        self._ensure_ready()
        data = self._q(queue)
        data.id_counter += 1
        return str(data.id_counter)

    async def add_job(self, queue: str, job: Job, run_at: Optional[int] = None) -> bool:
        self._ensure_ready()
        data = self._q(queue)
        if job.id in data.jobs:
            return False
        data.seq += 1
        job.wait_score = wait_score(job.opts.priority, data.seq)
        if run_at is not None:
            job.state = JobState.DELAYED
            data.delayed[job.id] = run_at
        else:
            job.state = JobState.WAITING
            data.waiting.setdefault(job.name, {})[job.id] = job.wait_score
        data.jobs[job.id] = job.to_dict()
        return True

    async def get_job(self, queue: str, job_id: str) -> Optional[Job]:
        self._ensure_ready()
        return self._load(self._q(queue), job_id)

    async def update_progress(self, queue: str, job_id: str, progress: Any) -> None:
        self._ensure_ready()
        raw = self._q(queue).jobs.get(job_id)
        if raw is not None:
            job = Job.from_dict(raw)
            job.progress = progress
            raw.update(job.to_dict())

    async def remove_job(self, queue: str, job_id: str) -> bool:
        self._ensure_ready()
        data = self._q(queue)
        raw = data.jobs.pop(job_id, None)
        if raw is None:
            return False
        data.waiting.get(raw.get("name", ""), {}).pop(job_id, None)
        for index in (data.delayed, data.active, data.completed, data.failed):
            index.pop(job_id, None)
        return True

    async def claim_next(self, queue: str, job_type: str, lock_until: int, now: int) -> Optional[Job]:
        self._ensure_ready()
        data = self._q(queue)
        lane = data.waiting.get(job_type)
        if data.paused or not lane:
            return None
        job_id = min(lane, key=lane.get)
        del lane[job_id]
        job = self._load(data, job_id)
        if job is None:
            return None
        job.state = JobState.ACTIVE
        job.processed_on = now
        data.active[job_id] = lock_until
        data.jobs[job_id] = job.to_dict()
        return job

    async def extend_lock(self, queue: str, job_id: str, lock_until: int) -> bool:
        self._ensure_ready()
        data = self._q(queue)
        if job_id not in data.active:
            return False
        data.active[job_id] = lock_until
        return True

    def _to_waiting(self, data: _QueueData, job: Job) -> None:
        job.state = JobState.WAITING
        data.waiting.setdefault(job.name, {})[job.id] = job.wait_score
        data.jobs[job.id] = job.to_dict()

    async def promote_delayed(self, queue: str, now: int, limit: int = 1000) -> list[str]:
        self._ensure_ready()
        data = self._q(queue)
        due = sorted((run_at, job_id) for job_id, run_at in data.delayed.items() if run_at <= now)
        promoted = []
        for _, job_id in due[:limit]:
            del data.delayed[job_id]
            job = self._load(data, job_id)
            if job is not None:
                self._to_waiting(data, job)
                promoted.append(job_id)
        return promoted

    async def next_delayed_at(self, queue: str) -> Optional[int]:
        self._ensure_ready()
        delayed = self._q(queue).delayed
        return min(delayed.values()) if delayed else None

    def _finish(self, data: _QueueData, job: Job, target: dict[str, int], keep: Optional[int]) -> bool:
        if data.active.pop(job.id, None) is None:
            return False
        if keep == 0:
            data.jobs.pop(job.id, None)
            return True
        data.jobs[job.id] = job.to_dict()
        target[job.id] = job.finished_on
        if keep is not None and len(target) > keep:
            oldest = sorted(target, key=target.get)[: len(target) - keep]
            for old_id in oldest:
                del target[old_id]
                data.jobs.pop(old_id, None)
        return True

    async def complete_job(self, queue: str, job: Job, keep: Optional[int]) -> bool:
        self._ensure_ready()
        data = self._q(queue)
        return self._finish(data, job, data.completed, keep)

    async def fail_job(self, queue: str, job: Job, keep: Optional[int]) -> bool:
        self._ensure_ready()
        data = self._q(queue)
        return self._finish(data, job, data.failed, keep)

    async def retry_job(self, queue: str, job: Job, run_at: int, now: int) -> bool:
        self._ensure_ready()
        data = self._q(queue)
        if data.active.pop(job.id, None) is None:
            return False
        if run_at > now:
            job.state = JobState.DELAYED
            data.delayed[job.id] = run_at
            data.jobs[job.id] = job.to_dict()
        else:
            self._to_waiting(data, job)
        return True

    async def requeue_stalled(self, queue: str, now: int, max_stalled_count: int) -> tuple[list[str], list[str]]:
        self._ensure_ready()
        data = self._q(queue)
        expired = [job_id for job_id, lock in data.active.items() if lock < now]
        requeued, failed = [], []
        for job_id in expired:
            del data.active[job_id]
            job = self._load(data, job_id)
            if job is None:
                continue
            job.stalled_count += 1
            if job.stalled_count > max_stalled_count:
                job.state = JobState.FAILED
                job.finished_on = now
                job.failed_reason = STALLED_REASON
                data.failed[job_id] = now
                data.jobs[job_id] = job.to_dict()
                failed.append(job_id)
            else:
                self._to_waiting(data, job)
                requeued.append(job_id)
        return requeued, failed

    async def pause(self, queue: str) -> None:
        self._ensure_ready()
        self._q(queue).paused = True

    async def resume(self, queue: str) -> None:
        self._ensure_ready()
        self._q(queue).paused = False

    async def is_paused(self, queue: str) -> bool:
        self._ensure_ready()
        return self._q(queue).paused

    async def get_counts(self, queue: str) -> dict[str, int]:
        self._ensure_ready()
        data = self._q(queue)
        return {
            "waiting": sum(len(lane) for lane in data.waiting.values()),
            "active": len(data.active),
            "completed": len(data.completed),
            "failed": len(data.failed),
            "delayed": len(data.delayed),
        }

    async def clean(self, queue: str, grace_ms: int, state: str, now: int, limit: int = 0) -> list[str]:
        self._ensure_ready()
        data = self._q(queue)
        index = {JobState.COMPLETED.value: data.completed, JobState.FAILED.value: data.failed}.get(state)
        if index is None:
            return []
        cutoff = now - grace_ms
        removed = sorted((job_id for job_id, finished in index.items() if finished < cutoff), key=index.get)
        if limit:
            removed = removed[:limit]
        for job_id in removed:
            del index[job_id]
            data.jobs.pop(job_id, None)
        return removed


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_job_store(settings: Settings) -> JobStore:
    """Factory: create the store selected by ``queue.backend``."""
    backend = settings.queue.backend

    if backend == "redis":
        from job_queue.redis_store import RedisJobStore
        return RedisJobStore(
            redis_url=settings.redis.connection_url,
            key_prefix=settings.redis.key_prefix,
            socket_timeout=settings.redis.socket_timeout,
        )
    if backend == "memory":
        return InMemoryJobStore()
    raise ValueError(f"Unknown queue backend: {backend}")
