"""
Job type processors — one coroutine per job type, bound onto the worker queue.

A processor returns a JSON-serializable dict. A collaborator result with
``success: False`` is raised as JobProcessingError so the queue retries the
job with backoff.
"""
from __future__ import annotations

from typing import Any, Optional

import structlog

from backend.webservice_client import WebserviceClient
from channels.whatsapp_bot import WhatsAppBot
from handlers.message_handler import MessageHandler
from job_queue.dispatcher import DEFAULT_CLEAN_AGE, JobDispatcher
from job_queue.errors import JobProcessingError
from job_queue.models import Job, JobType

logger = structlog.get_logger()


def _require_success(job: Job, result: dict[str, Any], action: str) -> dict[str, Any]:
    if not result.get("success"):
        raise JobProcessingError(f"{action} failed: {result.get('error', 'unknown error')}",
                                 job_id=job.id, job_type=job.name)
    return result


def register_processors(
    dispatcher: JobDispatcher,
    queue_name: str,
    *,
    bot: WhatsAppBot,
    webservice: WebserviceClient,
    message_handler: MessageHandler,
    concurrency: Optional[int] = None,
) -> list[str]:
    """Bind every known job type on ``queue_name``; returns the bound types."""

    async def whatsapp_message(job: Job) -> dict[str, Any]:
        return await message_handler.process_message(job.data)

    async def whatsapp_media(job: Job) -> dict[str, Any]:
        result = _require_success(job, await bot.process_media_message(job.data), "Media processing")
        return {"success": True, "messageId": job.data.get("messageId"), "result": result.get("data")}

    async def webhook(job: Job) -> dict[str, Any]:
        result = _require_success(job, await webservice.post("/api/webhook", job.data), "Webhook relay")
        return {"success": True, "status": result["status"], "data": result["data"]}

    async def data_sync(job: Job) -> dict[str, Any]:
        table = job.data.get("table")
        if not table:
            raise JobProcessingError("data-sync job has no table", job_id=job.id, job_type=job.name)
        result = _require_success(
            job, await webservice.sync_to_supabase(table, job.data.get("data")), "Data sync"
        )
        return {"success": True, "table": table, "data": result["data"]}

    async def send_auto_reply(job: Job) -> dict[str, Any]:
        sent = _require_success(
            job, await bot.send_message(job.data["to"], job.data["message"]), "Auto-reply send"
        )
        await webservice.log_whatsapp_event("auto_reply_sent", {
            "to": job.data["to"],
            "originalMessageId": job.data.get("originalMessageId"),
            "replyMessageId": sent["messageId"],
        })
        return sent

    async def process_data(job: Job) -> dict[str, Any]:
        logger.info("data_job_processed", job_id=job.id)
        return {"success": True, "processed": True, "data": job.data}

    async def send_email(job: Job) -> dict[str, Any]:
        logger.info("email_job_processed", job_id=job.id, to=job.data.get("to"))
        return {"success": True, "sent": True, "emailData": job.data}

    async def process_file(job: Job) -> dict[str, Any]:
        logger.info("file_job_processed", job_id=job.id)
        return {"success": True, "processed": True, "fileData": job.data}

    async def cleanup_task(job: Job) -> dict[str, Any]:
        older_than = int(job.data.get("olderThan", DEFAULT_CLEAN_AGE))
        target = job.data.get("queue", queue_name)
        result = _require_success(job, await dispatcher.clean_queue(target, older_than), "Queue cleanup")
        return {"success": True, "cleaned": result["cleaned"], "queue": target}

    processors = {
        JobType.WHATSAPP_MESSAGE: whatsapp_message,
        JobType.WHATSAPP_MEDIA: whatsapp_media,
        JobType.WEBHOOK: webhook,
        JobType.DATA_SYNC: data_sync,
        JobType.SEND_AUTO_REPLY: send_auto_reply,
        JobType.PROCESS_DATA: process_data,
        JobType.SEND_EMAIL: send_email,
        JobType.PROCESS_FILE: process_file,
        JobType.CLEANUP_TASK: cleanup_task,
    }
    for job_type, processor in processors.items():
        dispatcher.process_queue(queue_name, job_type.value, processor, concurrency)

    logger.info("job_processors_registered", queue=queue_name, types=len(processors))
    return [job_type.value for job_type in processors]
