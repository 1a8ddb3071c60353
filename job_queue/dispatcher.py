"""
Job dispatch service — the typed producer/consumer facade over QueueBackend.

Every producer and query method returns ``{"success": True, ...}`` or
``{"success": False, "error": str}`` and never raises.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

from config.settings import Settings
from job_queue.backend import QueueBackend
from job_queue.errors import JobProcessingError
from job_queue.models import DEFAULT_PRIORITIES, Job, JobOptions, JobState, JobType

logger = structlog.get_logger()

Processor = Callable[[Job], Awaitable[Any]]
Options = Union[JobOptions, dict[str, Any], None]

DEFAULT_CLEAN_AGE = 24 * 60 * 60 * 1000  # ms

# batch type names used by webservice producers
BATCH_TYPE_ALIASES = {"send-webhook": JobType.WEBHOOK}


def _overrides(options: Options) -> dict[str, Any]:
    if options is None:
        return {}
    if isinstance(options, JobOptions):
        return {name: getattr(options, name) for name in options.model_fields_set}
    return dict(options)


class JobDispatcher:
    """Adds typed jobs, binds processors and answers queue queries."""

    def __init__(self, backend: QueueBackend, settings: Settings):
        self._backend = backend
        self._settings = settings
        self.default_queue = settings.queue.name

    # ── core ───────────────────────────────────────────────

    async def add_job(self, queue_name: str, job_type: str, data: Any = None,
                      options: Options = None) -> dict[str, Any]:
        if not self._backend.is_healthy():
            logger.error("job_add_rejected", queue=queue_name, job_type=job_type, reason="backend_unhealthy")
            return {"success": False, "error": "Queue backend is not available"}

        try:
            queue = self._backend.get_queue(queue_name)
            job = await asyncio.wait_for(
                queue.add(job_type, data, options),
                timeout=self._settings.queue.operation_timeout,
            )
        except asyncio.TimeoutError:
            logger.error("job_add_timeout", queue=queue_name, job_type=job_type)
            return {"success": False, "error": "Timed out adding job"}
        except Exception as e:
            logger.error("job_add_failed", queue=queue_name, job_type=job_type, error=str(e))
            return {"success": False, "error": str(e)}

        logger.info("job_added", queue=queue_name, job_id=job.id, job_type=job_type, priority=job.opts.priority)
        return {
            "success": True,
            "jobId": job.id,
            "queueName": queue_name,
            "jobType": job_type,
            "data": job.data,
        }

    def process_queue(self, queue_name: str, job_type: str, processor: Processor,
                      concurrency: Optional[int] = None) -> None:
        """
        Bind ``processor`` to ``job_type`` on ``queue_name``.

        Raises ProcessorAlreadyRegistered when the type already has one.
        """
        concurrency = concurrency or self._settings.worker.concurrency
        queue = self._backend.get_queue(queue_name)
        queue.process(job_type, self._wrap(queue_name, job_type, processor), concurrency)

    def _wrap(self, queue_name: str, job_type: str, processor: Processor) -> Processor:
        async def run(job: Job) -> Any:
            started = time.monotonic()
            logger.info("job_processing_started",
                        queue=queue_name,
                        job_id=job.id,
                        job_type=job_type,
                        attempt=job.attempts_made + 1)
            try:
                result = await processor(job)
            except JobProcessingError as e:
                logger.error("job_processing_failed", queue=queue_name, job_id=job.id,
                             job_type=job_type, error=str(e))
                raise
            except Exception as e:
                logger.error("job_processing_failed", queue=queue_name, job_id=job.id,
                             job_type=job_type, error=str(e))
                raise JobProcessingError(str(e), job_id=job.id, job_type=job_type) from e
            logger.info("job_processing_completed",
                        queue=queue_name,
                        job_id=job.id,
                        job_type=job_type,
                        duration_ms=int((time.monotonic() - started) * 1000))
            return result
        return run

    # ── typed producers ────────────────────────────────────

    async def _add_typed(self, job_type: JobType, data: Any, options: Options,
                         queue_name: Optional[str] = None) -> dict[str, Any]:
        opts = {"priority": DEFAULT_PRIORITIES[job_type], **_overrides(options)}
        return await self.add_job(queue_name or self.default_queue, job_type.value, data, opts)

    async def add_whatsapp_message_job(self, message_data: dict, options: Options = None) -> dict[str, Any]:
        return await self._add_typed(JobType.WHATSAPP_MESSAGE, message_data, options)

    async def add_whatsapp_media_job(self, media_data: dict, options: Options = None) -> dict[str, Any]:
        return await self._add_typed(JobType.WHATSAPP_MEDIA, media_data, options)

    async def add_webhook_job(self, webhook_data: dict, options: Options = None) -> dict[str, Any]:
        return await self._add_typed(JobType.WEBHOOK, webhook_data, options)

    async def add_data_sync_job(self, sync_data: dict, options: Options = None) -> dict[str, Any]:
        return await self._add_typed(JobType.DATA_SYNC, sync_data, options)

    async def add_auto_reply_job(self, reply_data: dict, options: Options = None) -> dict[str, Any]:
        return await self._add_typed(JobType.SEND_AUTO_REPLY, reply_data, options)

    async def queue_data_processing(self, data: dict, options: Options = None) -> dict[str, Any]:
        return await self._add_typed(JobType.PROCESS_DATA, data, options)

    async def queue_email_send(self, email_data: dict, options: Options = None) -> dict[str, Any]:
        return await self._add_typed(JobType.SEND_EMAIL, email_data, options)

    async def queue_file_processing(self, file_data: dict, options: Options = None) -> dict[str, Any]:
        return await self._add_typed(JobType.PROCESS_FILE, file_data, options)

    async def queue_cleanup_task(self, cleanup_data: dict, options: Options = None) -> dict[str, Any]:
        return await self._add_typed(JobType.CLEANUP_TASK, cleanup_data, options)

    async def queue_batch_jobs(self, jobs: list[dict[str, Any]], queue_name: Optional[str] = None) -> dict[str, Any]:
        """Enqueue ``[{type, data|payload, options}]`` one by one; failures are per item."""
        results = []
        for item in jobs:
            raw_type = item.get("type") if isinstance(item, dict) else None
            try:
                job_type = BATCH_TYPE_ALIASES.get(raw_type) or JobType(raw_type)
            except ValueError:
                result = {"success": False, "error": f"Unknown job type: {raw_type}"}
            else:
                data = item.get("data", item.get("payload", {}))
                result = await self._add_typed(job_type, data, item.get("options"), queue_name)
            results.append({"type": raw_type, "result": result})

        successful = sum(1 for r in results if r["result"]["success"])
        logger.info("batch_jobs_queued", total=len(jobs), successful=successful)
        return {
            "success": True,
            "results": results,
            "totalJobs": len(jobs),
            "successfulJobs": successful,
        }

    async def schedule_recurring_job(self, job_type: str, data: Any, cron: str,
                                     options: Options = None,
                                     queue_name: Optional[str] = None) -> dict[str, Any]:
        opts = {**_overrides(options), "repeat": {"cron": cron}}
        return await self.add_job(queue_name or self.default_queue, job_type, data, opts)

    async def schedule_delayed_job(self, job_type: str, data: Any, delay_ms: int,
                                   options: Options = None,
                                   queue_name: Optional[str] = None) -> dict[str, Any]:
        opts = {**_overrides(options), "delay": delay_ms}
        return await self.add_job(queue_name or self.default_queue, job_type, data, opts)

    # ── queries and control ────────────────────────────────

    async def get_job_status(self, queue_name: str, job_id: str) -> dict[str, Any]:
        try:
            job = await self._backend.get_queue(queue_name).get_job(job_id)
        except Exception as e:
            logger.error("job_status_failed", queue=queue_name, job_id=job_id, error=str(e))
            return {"success": False, "error": str(e)}
        if job is None:
            return {"success": False, "error": "Job not found"}
        return {"success": True, "job": job.to_status()}

    async def remove_job(self, queue_name: str, job_id: str) -> dict[str, Any]:
        """Delete a job that is not currently being processed."""
        try:
            queue = self._backend.get_queue(queue_name)
            job = await queue.get_job(job_id)
            if job is None:
                return {"success": False, "error": "Job not found"}
            if job.state == JobState.ACTIVE:
                return {"success": False, "error": "Job is being processed"}
            removed = await queue.remove_job(job_id)
        except Exception as e:
            logger.error("job_remove_failed", queue=queue_name, job_id=job_id, error=str(e))
            return {"success": False, "error": str(e)}
        if not removed:
            return {"success": False, "error": "Job not found"}
        logger.info("job_removed", queue=queue_name, job_id=job_id, state=job.state.value)
        return {"success": True, "jobId": job_id}

    async def get_queue_stats(self, queue_name: str) -> dict[str, Any]:
        try:
            queue = self._backend.get_queue(queue_name)
            counts = await queue.get_job_counts()
            paused = await queue.is_paused()
        except Exception as e:
            logger.error("queue_stats_failed", queue=queue_name, error=str(e))
            return {"success": False, "error": str(e)}
        stats = {**counts, "paused": paused, "total": sum(counts.values())}
        return {"success": True, "queueName": queue_name, "stats": stats}

    async def pause_queue(self, queue_name: str) -> dict[str, Any]:
        try:
            await self._backend.get_queue(queue_name).pause()
        except Exception as e:
            logger.error("queue_pause_failed", queue=queue_name, error=str(e))
            return {"success": False, "error": str(e)}
        return {"success": True, "message": f"Queue {queue_name} paused"}

    async def resume_queue(self, queue_name: str) -> dict[str, Any]:
        try:
            await self._backend.get_queue(queue_name).resume()
        except Exception as e:
            logger.error("queue_resume_failed", queue=queue_name, error=str(e))
            return {"success": False, "error": str(e)}
        return {"success": True, "message": f"Queue {queue_name} resumed"}

    async def clean_queue(self, queue_name: str, older_than: int = DEFAULT_CLEAN_AGE) -> dict[str, Any]:
        """Remove completed and failed jobs that finished more than ``older_than`` ms ago."""
        try:
            queue = self._backend.get_queue(queue_name)
            completed = await queue.clean(older_than, "completed")
            failed = await queue.clean(older_than, "failed")
        except Exception as e:
            logger.error("queue_clean_failed", queue=queue_name, error=str(e))
            return {"success": False, "error": str(e)}
        return {
            "success": True,
            "message": f"Queue {queue_name} cleaned",
            "cleaned": {"completed": len(completed), "failed": len(failed)},
        }
