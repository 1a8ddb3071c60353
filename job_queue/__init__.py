"""
Job Queue — durable background jobs for the WhatsApp bridge worker.

- Producers ADD typed jobs through the JobDispatcher
- Processors CONSUME them per job type with bounded concurrency
- Supports Redis (production) and an in-memory store (dev/tests)
"""
from job_queue.errors import (
    QueueError,
    QueueUnavailable,
    InvalidJobOptions,
    ProcessorAlreadyRegistered,
    JobProcessingError,
)
from job_queue.models import (
    Job, JobOptions, JobState, JobType, BackoffPolicy, RepeatOptions,
    DEFAULT_PRIORITIES, now_ms,
)
from job_queue.store import JobStore, InMemoryJobStore, create_job_store
from job_queue.queue import JobQueue
from job_queue.backend import QueueBackend
from job_queue.dispatcher import JobDispatcher

__all__ = [
    "QueueError", "QueueUnavailable", "InvalidJobOptions",
    "ProcessorAlreadyRegistered", "JobProcessingError",
    "Job", "JobOptions", "JobState", "JobType", "BackoffPolicy", "RepeatOptions",
    "DEFAULT_PRIORITIES", "now_ms",
    "JobStore", "InMemoryJobStore", "create_job_store",
    "JobQueue", "QueueBackend", "JobDispatcher",
]
