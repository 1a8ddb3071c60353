"""
Job model — the unit of work stored by the queue backend.

Record Schema (one hash per job, key ``{prefix}:{queue}:job:{job_id}``):
  {
      "id":             backend-assigned id, unique within the queue,
      "name":           job type tag, selects the processor,
      "data":           JSON payload,
      "opts":           JSON JobOptions (priority, delay, attempts, backoff, repeat, ...),
      "timestamp":      ms epoch when the job was created,
      "processed_on":   ms epoch of the latest claim,
      "finished_on":    ms epoch when the job completed or failed for good,
      "attempts_made":  failed attempts so far,
      "stalled_count":  times the job was recovered from a dead worker,
      "failed_reason":  message of the latest failure,
      "progress":       JSON progress value reported by the processor,
      "return_value":   JSON result of a completed job,
      "state":          waiting | delayed | active | completed | failed,
      "wait_score":     ordering key inside the type's waiting set,
  }
"""
from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from job_queue.errors import InvalidJobOptions

# Highest accepted priority value; higher values are processed first.
PRIORITY_LIMIT = 2 ** 21
_SEQ_SPAN = 2 ** 31


def now_ms() -> int:
    return int(time.time() * 1000)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    UNKNOWN = "unknown"


class JobType(str, Enum):
    WHATSAPP_MESSAGE = "whatsapp-message"
    WHATSAPP_MEDIA = "whatsapp-media"
    WEBHOOK = "webhook"
    DATA_SYNC = "data-sync"
    SEND_AUTO_REPLY = "send-auto-reply"
    PROCESS_DATA = "process-data"
    SEND_EMAIL = "send-email"
    PROCESS_FILE = "process-file"
    CLEANUP_TASK = "cleanup-task"


DEFAULT_PRIORITIES: dict[JobType, int] = {
    JobType.WEBHOOK: 7,
    JobType.WHATSAPP_MESSAGE: 5,
    JobType.SEND_AUTO_REPLY: 5,
    JobType.SEND_EMAIL: 5,
    JobType.WHATSAPP_MEDIA: 3,
    JobType.PROCESS_DATA: 3,
    JobType.PROCESS_FILE: 3,
    JobType.DATA_SYNC: 2,
    JobType.CLEANUP_TASK: 1,
}


# ──────────────────────────────────────────────────────────────
#  Options
# ──────────────────────────────────────────────────────────────

class BackoffPolicy(BaseModel):
    """Delay between retry attempts."""
    type: Literal["fixed", "exponential"] = "exponential"
    delay: int = Field(default=0, ge=0)          # ms

    def delay_for(self, attempts_made: int) -> int:
        """Delay before the retry that follows ``attempts_made`` failures."""
        if self.type == "fixed" or attempts_made <= 1:
            return self.delay
        return self.delay * (2 ** (attempts_made - 1))


class RepeatOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    cron: Optional[str] = None
    every: Optional[int] = Field(default=None, gt=0)   # ms
    limit: Optional[int] = Field(default=None, gt=0)
    tz: Optional[str] = None
    count: int = 0                                      # occurrences scheduled so far

    @model_validator(mode="after")
    def _one_schedule(self) -> RepeatOptions:
        if bool(self.cron) == bool(self.every):
            raise ValueError("repeat needs exactly one of 'cron' or 'every'")
        return self

    @property
    def key(self) -> str:
        return f"cron:{self.cron}" if self.cron else f"every:{self.every}"


class JobOptions(BaseModel):
    """
    Per-job policy. Accepts snake_case or the camelCase keys used by
    external producers (``jobId``, ``removeOnComplete``, ``removeOnFail``).
    """
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    priority: int = Field(default=0, ge=0, le=PRIORITY_LIMIT)
    delay: int = Field(default=0, ge=0)                 # ms
    attempts: int = Field(default=1, ge=1)
    backoff: Optional[BackoffPolicy] = None
    repeat: Optional[RepeatOptions] = None
    job_id: Optional[str] = Field(default=None, alias="jobId")
    remove_on_complete: Union[bool, int] = Field(default=False, alias="removeOnComplete")
    remove_on_fail: Union[bool, int] = Field(default=False, alias="removeOnFail")

    @field_validator("backoff", mode="before")
    @classmethod
    def _backoff_shorthand(cls, value: Any) -> Any:
        # a bare number means a fixed delay
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return {"type": "fixed", "delay": int(value)}
        return value

    @classmethod
    def parse(cls, value: Union[JobOptions, dict[str, Any], None]) -> JobOptions:
        if isinstance(value, JobOptions):
            return value
        try:
            return cls.model_validate(value or {})
        except ValidationError as e:
            raise InvalidJobOptions(str(e)) from e

    @classmethod
    def merge(cls, base: JobOptions, overrides: Union[JobOptions, dict[str, Any], None]) -> JobOptions:
        """Return ``base`` with every field the caller explicitly set replaced."""
        override = cls.parse(overrides)
        update = {name: getattr(override, name) for name in override.model_fields_set}
        return base.model_copy(update=update)

    def to_json(self) -> str:
        return self.model_dump_json(exclude_none=True)


def keep_count(policy: Union[bool, int]) -> Optional[int]:
    """
    Translate a remove-on-finish policy into how many finished jobs to keep.
    True removes immediately (keep 0), False keeps everything (None).
    """
    if policy is True:
        return 0
    if policy is False:
        return None
    return max(int(policy), 0)


def wait_score(priority: int, seq: int) -> float:
    """Sort key for a waiting set: higher priority first, then enqueue order."""
    return float((PRIORITY_LIMIT - priority) * _SEQ_SPAN + (seq % _SEQ_SPAN))


# ──────────────────────────────────────────────────────────────
#  Job
# ──────────────────────────────────────────────────────────────

def _loads(raw: Optional[str], default: Any = None) -> Any:
    if raw is None or raw == "":
        return default
    return json.loads(raw)


def _int_or_none(raw: Any) -> Optional[int]:
    if raw is None or raw == "":
        return None
    return int(float(raw))


@dataclass
class Job:
    """A unit of work on a queue."""
    id: str
    name: str
    data: Any = field(default_factory=dict)
    opts: JobOptions = field(default_factory=JobOptions)
    timestamp: int = 0
    processed_on: Optional[int] = None
    finished_on: Optional[int] = None
    attempts_made: int = 0
    stalled_count: int = 0
    failed_reason: Optional[str] = None
    progress: Any = 0
    return_value: Any = None
    state: JobState = JobState.WAITING
    wait_score: float = 0.0
    queue: Any = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = now_ms()

    @property
    def max_attempts(self) -> int:
        return self.opts.attempts

    async def update_progress(self, progress: Any) -> None:
        """Report progress; persisted and broadcast as a ``progress`` event."""
        self.progress = progress
        if self.queue is not None:
            await self.queue.update_progress(self, progress)

    def to_dict(self) -> dict[str, str]:
        d = {
            "id": self.id,
            "name": self.name,
            "data": json.dumps(self.data),
            "opts": self.opts.to_json(),
            "timestamp": str(self.timestamp),
            "attempts_made": str(self.attempts_made),
            "stalled_count": str(self.stalled_count),
            "progress": json.dumps(self.progress),
            "state": self.state.value,
            "wait_score": repr(self.wait_score),
        }
        if self.processed_on is not None:
            d["processed_on"] = str(self.processed_on)
        if self.finished_on is not None:
            d["finished_on"] = str(self.finished_on)
        if self.failed_reason is not None:
            d["failed_reason"] = self.failed_reason
        if self.return_value is not None:
            d["return_value"] = json.dumps(self.return_value, default=str)
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        try:
            state = JobState(data.get("state", JobState.WAITING.value))
        except ValueError:
            state = JobState.UNKNOWN
        return cls(
            id=str(data["id"]),
            name=data.get("name", ""),
            data=_loads(data.get("data"), {}),
            opts=JobOptions.model_validate_json(data["opts"]) if data.get("opts") else JobOptions(),
            timestamp=int(data.get("timestamp") or 0),
            processed_on=_int_or_none(data.get("processed_on")),
            finished_on=_int_or_none(data.get("finished_on")),
            attempts_made=int(data.get("attempts_made") or 0),
            stalled_count=int(data.get("stalled_count") or 0),
            failed_reason=data.get("failed_reason") or None,
            progress=_loads(data.get("progress"), 0),
            return_value=_loads(data.get("return_value")),
            state=state,
            wait_score=float(data.get("wait_score") or 0.0),
        )

    def to_status(self) -> dict[str, Any]:
        """Public view returned by status lookups."""
        return {
            "id": self.id,
            "name": self.name,
            "data": self.data,
            "state": self.state.value,
            "progress": self.progress,
            "failedReason": self.failed_reason,
            "processedOn": self.processed_on,
            "finishedOn": self.finished_on,
            "createdAt": self.timestamp,
            "attempts": self.attempts_made,
            "maxAttempts": self.opts.attempts,
            "priority": self.opts.priority,
            "returnValue": self.return_value,
        }
