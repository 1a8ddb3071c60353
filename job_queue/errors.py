"""Queue error hierarchy."""
from __future__ import annotations


class QueueError(Exception):
    """Base exception for all queue operations."""


class QueueUnavailable(QueueError):
    """The backing store is not connected; the operation failed fast."""

    def __init__(self, message: str = "Queue backend is not connected"):
        super().__init__(message)


class InvalidJobOptions(QueueError, ValueError):
    pass


class ProcessorAlreadyRegistered(QueueError):
    """A processor is already bound to this (queue, job type) pair."""

    def __init__(self, queue_name: str, job_type: str):
        self.queue_name = queue_name
        self.job_type = job_type
        super().__init__(f"Processor already registered for {queue_name}:{job_type}")


class JobProcessingError(QueueError):
    """Raised when a processor fails; the queue retries the job with backoff."""

    def __init__(self, message: str, job_id: str = "", job_type: str = ""):
        self.job_id = job_id
        self.job_type = job_type
        super().__init__(message)
