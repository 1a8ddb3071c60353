"""
Control API — FastAPI surface of the worker.

Provides:
- Health, status and stats for the worker and its services
- WhatsApp send endpoints and the Cloud API webhook (verification + inbound)
- Queue control (stats, pause, resume, clean) and job endpoints
- Webhook commands from the webservice (send_message, send_media, queue_job)

The app is built per worker by ``create_app(worker)``; ``ApiServer`` runs it
with uvicorn inside the worker's event loop.
"""
from __future__ import annotations

import asyncio
import contextlib
import json
import socket
from datetime import datetime, timezone
from typing import Any, Optional, Union

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from job_queue.errors import JobProcessingError
from job_queue.models import JobType

logger = structlog.get_logger()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class SendMessageRequest(BaseModel):
    to: str = ""
    message: str = ""


class SendMediaRequest(BaseModel):
    to: str = ""
    media: Union[str, dict[str, Any], None] = None
    caption: str = ""
    type: str = "image"


class AddJobRequest(BaseModel):
    type: str = ""
    data: Any = None
    options: Optional[dict[str, Any]] = None


class BatchJobsRequest(BaseModel):
    jobs: list[dict[str, Any]]


class CleanQueueRequest(BaseModel):
    olderThan: Optional[int] = None


class WebserviceCommand(BaseModel):
    type: str = ""
    data: dict[str, Any] = {}


def _missing(*fields: str) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": f"Missing required fields: {', '.join(fields)}"},
    )


def create_app(worker) -> FastAPI:
    """Build the control app bound to ``worker``."""
    settings = worker.settings
    queue_name = settings.queue.name

    app = FastAPI(
        title="WhatsApp Worker API",
        description="Control surface of the WhatsApp bridge worker",
        version=settings.version,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.security.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.error("api_unhandled_error", path=request.url.path, error=str(exc))
        production = settings.server.environment == "production"
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Internal server error" if production else str(exc)},
        )

    # ══════════════════════════════════════════════════════════
    #  HEALTH & STATUS
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        status = worker.get_status()
        services = {
            "whatsapp": status["services"]["whatsapp"],
            "queue": status["services"]["queue"],
        }
        healthy = status["isRunning"] and all(services.values())
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "OK" if healthy else "DEGRADED",
                "state": status["state"],
                "timestamp": _now(),
                "uptime": status["uptime"],
                "services": services,
                "memory": status["memory"],
                "version": settings.version,
            },
        )

    @app.get("/api/status")
    async def api_status():
        return {
            "status": "active" if worker.is_running else worker.state.value,
            "whatsapp": worker.bot.get_client_info(),
            "queue": worker.backend.is_healthy(),
            "timestamp": _now(),
        }

    @app.get("/api/stats")
    async def api_stats():
        return {
            "success": True,
            "stats": {
                "uptime": worker.uptime(),
                "memory": worker.memory_usage(),
                "whatsapp": worker.bot.get_client_info(),
                "handlers": worker.message_handler.get_handler_stats(),
                "timestamp": _now(),
            },
        }

    # ══════════════════════════════════════════════════════════
    #  WHATSAPP
    # ══════════════════════════════════════════════════════════

    @app.get("/api/whatsapp/info")
    async def whatsapp_info():
        return worker.bot.get_client_info() or {"status": "not_ready"}

    @app.post("/api/whatsapp/send")
    async def whatsapp_send(req: SendMessageRequest):
        if not req.to or not req.message:
            return _missing("to", "message")
        return await worker.bot.send_message(req.to, req.message)

    @app.post("/api/whatsapp/send-media")
    async def whatsapp_send_media(req: SendMediaRequest):
        if not req.to or not req.media:
            return _missing("to", "media")
        media_url, media_type = req.media, req.type
        if isinstance(req.media, dict):
            media_url = req.media.get("url", "")
            media_type = req.media.get("type", media_type)
        return await worker.bot.send_media_message(req.to, media_url, req.caption, media_type)

    @app.get("/webhooks/whatsapp")
    async def whatsapp_verify(request: Request):
        challenge = worker.bot.verify_webhook(dict(request.query_params))
        if challenge is None:
            raise HTTPException(403, "Verification failed")
        return PlainTextResponse(challenge)

    @app.post("/webhooks/whatsapp")
    async def whatsapp_webhook(request: Request):
        body = await request.body()
        signature = request.headers.get("X-Hub-Signature-256", "")
        if not worker.bot.verify_signature(body, signature):
            logger.warning("whatsapp_webhook_signature_invalid")
            raise HTTPException(403, "Invalid signature")
        try:
            payload = json.loads(body or b"{}")
        except ValueError:
            raise HTTPException(400, "Invalid JSON body")
        result = await worker.bot.handle_inbound(payload)
        return {"status": "ok", **result}

    # ══════════════════════════════════════════════════════════
    #  QUEUE
    # ══════════════════════════════════════════════════════════

    @app.get("/api/queue/stats")
    async def queue_stats():
        return await worker.dispatcher.get_queue_stats(queue_name)

    @app.post("/api/queue/pause")
    async def queue_pause():
        return await worker.dispatcher.pause_queue(queue_name)

    @app.post("/api/queue/resume")
    async def queue_resume():
        return await worker.dispatcher.resume_queue(queue_name)

    @app.post("/api/queue/clean")
    async def queue_clean(req: Optional[CleanQueueRequest] = None):
        older_than = req.olderThan if req and req.olderThan is not None else settings.monitoring.clean_older_than
        return await worker.dispatcher.clean_queue(queue_name, older_than)

    # ══════════════════════════════════════════════════════════
    #  JOBS
    # ══════════════════════════════════════════════════════════

    @app.post("/api/jobs")
    async def add_job(req: AddJobRequest):
        if not req.type or req.data is None:
            return _missing("type", "data")
        return await worker.dispatcher.add_job(queue_name, req.type, req.data, req.options)

    @app.post("/api/jobs/batch")
    async def add_batch_jobs(req: BatchJobsRequest):
        return await worker.dispatcher.queue_batch_jobs(req.jobs, queue_name)

    @app.get("/api/jobs/{job_id}/status")
    async def job_status(job_id: str):
        return await worker.dispatcher.get_job_status(queue_name, job_id)

    @app.delete("/api/jobs/{job_id}")
    async def remove_job(job_id: str):
        return await worker.dispatcher.remove_job(queue_name, job_id)

    @app.post("/api/process-message")
    async def process_message(request: Request):
        try:
            return await worker.message_handler.process_message(await request.json())
        except JobProcessingError as e:
            logger.error("api_process_message_failed", error=str(e))
            return JSONResponse(status_code=500, content={"success": False, "error": str(e)})

    async def _enqueue(job_type: JobType, request: Request) -> dict[str, Any]:
        return await worker.dispatcher.add_job(queue_name, job_type.value, await request.json())

    @app.post("/api/process-data")
    async def process_data(request: Request):
        return await _enqueue(JobType.PROCESS_DATA, request)

    @app.post("/api/send-email")
    async def send_email(request: Request):
        return await _enqueue(JobType.SEND_EMAIL, request)

    @app.post("/api/process-file")
    async def process_file(request: Request):
        return await _enqueue(JobType.PROCESS_FILE, request)

    @app.post("/api/send-webhook")
    async def send_webhook(request: Request):
        return await worker.dispatcher.add_webhook_job(await request.json())

    @app.post("/api/cleanup")
    async def cleanup(request: Request):
        return await _enqueue(JobType.CLEANUP_TASK, request)

    # ══════════════════════════════════════════════════════════
    #  WEBSERVICE COMMANDS
    # ══════════════════════════════════════════════════════════

    @app.post("/webhook/whatsapp")
    async def webservice_webhook(req: WebserviceCommand):
        logger.info("webservice_webhook_received", type=req.type)
        data = req.data
        if req.type == "send_message":
            if not data.get("to") or not data.get("message"):
                return _missing("to", "message")
            await worker.bot.send_message(data["to"], data["message"])
        elif req.type == "send_media":
            if not data.get("to") or not data.get("media"):
                return _missing("to", "media")
            await worker.bot.send_media_message(data["to"], data["media"], data.get("caption", ""),
                                                data.get("mediaType", "image"))
        elif req.type == "queue_job":
            if not data.get("jobType"):
                return _missing("jobType")
            await worker.dispatcher.add_job(queue_name, data["jobType"], data.get("jobData"), data.get("options"))
        else:
            logger.warning("webservice_webhook_unknown_type", type=req.type)
        return {"success": True, "received": True}

    return app


# ──────────────────────────────────────────────────────────────
#  Server
# ──────────────────────────────────────────────────────────────

class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signals to the worker."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class ApiServer:
    """Runs the control app in a background task of the current loop."""

    def __init__(self, app: FastAPI, host: str = "0.0.0.0", port: int = 4000):
        self.app = app
        self.host = host
        self.port = port
        self.server: Optional[_EmbeddedServer] = None
        self._socket: Optional[socket.socket] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _bind(self) -> socket.socket:
        family = socket.AF_INET6 if ":" in self.host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
        except OSError:
            sock.close()
            raise
        return sock

    async def start(self) -> bool:
        """Bind and start serving. Returns False when the port cannot be bound."""
        if self.is_running:
            return True
        try:
            self._socket = self._bind()
        except OSError as e:
            logger.error("api_server_bind_failed", host=self.host, port=self.port, error=str(e))
            return False

        config = uvicorn.Config(self.app, lifespan="off", log_config=None, access_log=False)
        self.server = _EmbeddedServer(config)
        self._task = asyncio.create_task(self.server.serve(sockets=[self._socket]), name="api-server")

        while not self.server.started:
            if self._task.done():
                logger.error("api_server_start_failed", port=self.port)
                self._close_socket()
                return False
            await asyncio.sleep(0.01)

        self.port = self._socket.getsockname()[1]
        logger.info("api_server_started", host=self.host, port=self.port,
                    health=f"http://localhost:{self.port}/health")
        return True

    async def stop(self) -> None:
        if self._task is None:
            return
        self.server.should_exit = True
        try:
            await self._task
        finally:
            self._task = None
            self._close_socket()
        logger.info("api_server_stopped")

    def _close_socket(self) -> None:
        if self._socket is not None:
            self._socket.close()
            self._socket = None
