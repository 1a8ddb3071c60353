"""
Worker Lifecycle Controller — brings the WhatsApp bridge worker up and down.

Startup order (a fatal step aborts the rest and runs shutdown):

  1. webservice probe        non-fatal, logged as degraded
  2. queue backend           fatal
  3. control API server      fatal (bind failure)
  4. WhatsApp client         fatal
  5. job processors
  6. running → register with the webservice → periodic tasks

Periodic tasks (heartbeat, queue maintenance, memory watch) are owned by
the worker: started in initialize(), cancelled in shutdown().
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import psutil
import structlog

from api.server import ApiServer, create_app
from backend.webservice_client import WebserviceClient
from channels.whatsapp_bot import WhatsAppBot
from config.settings import Settings
from handlers.message_handler import MessageHandler
from handlers.processors import register_processors
from job_queue.backend import QueueBackend
from job_queue.dispatcher import JobDispatcher

logger = structlog.get_logger()

CAPABILITIES = [
    "whatsapp-messaging",
    "media-processing",
    "queue-processing",
    "webhook-handling",
    "auto-replies",
    "bot-commands",
]

MB = 1024 * 1024


class WorkerState(str, Enum):
    CREATED = "created"
    INITIALIZING = "initializing"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"
    EMERGENCY_SHUTDOWN = "emergency_shutdown"


class FatalStartupError(Exception):
    """A required subsystem failed during initialize()."""

    def __init__(self, step: str, message: str):
        super().__init__(message)
        self.step = step


class StartupInterrupted(Exception):
    """shutdown() began while initialize() was still bringing services up."""

    def __init__(self, step: str):
        super().__init__(f"Startup interrupted at {step}")
        self.step = step


def _terminate(code: int) -> None:
    logging.shutdown()
    os._exit(code)


# ──────────────────────────────────────────────────────────────
#  Periodic tasks
# ──────────────────────────────────────────────────────────────

class PeriodicTask:
    """
    Runs ``action`` every ``interval`` seconds in its own asyncio task.

    A failing run is logged and the next one is still scheduled.
    """

    def __init__(self, name: str, interval: float, action: Callable[[], Awaitable[Any]]):
        self.name = name
        self.interval = interval
        self.action = action
        self.runs = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"periodic:{self.name}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        logger.debug("periodic_task_started", task=self.name, interval=self.interval)
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.action()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("periodic_task_failed", task=self.name, error=str(e))
            self.runs += 1


# ──────────────────────────────────────────────────────────────
#  Worker
# ──────────────────────────────────────────────────────────────

class Worker:
    """
    Owns every service of the worker process and its lifecycle.

    Usage:
        worker = Worker(settings)
        exit_code = await worker.run()     # blocks until stopped
    """

    def __init__(
        self,
        settings: Settings,
        *,
        webservice: WebserviceClient = None,
        backend: QueueBackend = None,
        bot: WhatsAppBot = None,
        api_server: ApiServer = None,
        exit: Callable[[int], Any] = _terminate,
    ):
        self.settings = settings
        self.state = WorkerState.CREATED
        self.start_time = datetime.now(timezone.utc)
        self._started = time.monotonic()
        self._exit = exit

        self.webservice = webservice or WebserviceClient(settings.webservice, version=settings.version)
        self.backend = backend or QueueBackend(settings)
        self.dispatcher = JobDispatcher(self.backend, settings)
        if bot is None:
            bot = WhatsAppBot(settings.whatsapp, settings.bot, self.webservice, self.dispatcher)
        else:
            bot.attach_dispatcher(self.dispatcher)
        self.bot = bot
        self.message_handler = MessageHandler(self.webservice, self.dispatcher, settings.bot)
        self.api_server = api_server or ApiServer(
            create_app(self), settings.server.host, settings.server.port,
        )

        monitoring = settings.monitoring
        self.periodic_tasks = [
            PeriodicTask("heartbeat", monitoring.heartbeat_interval, self.send_heartbeat),
            PeriodicTask("queue_cleanup", monitoring.cleanup_interval, self.clean_queue),
            PeriodicTask("memory_watch", monitoring.memory_check_interval, self.check_memory),
        ]
        self.processor_types: list[str] = []

        self._process = psutil.Process()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._shutdown_task: Optional[asyncio.Task] = None
        self._emergency = False
        self._background: set[asyncio.Task] = set()
        self._stopped = asyncio.Event()

        self.bot.add_status_listener(self._on_whatsapp_status)

    @property
    def is_running(self) -> bool:
        return self.state is WorkerState.RUNNING

    # ── Startup ───────────────────────────────────────────────

    async def initialize(self) -> bool:
        """Start every service in order. Returns False when startup failed."""
        if self.state is not WorkerState.CREATED:
            logger.warning("worker_already_initialized", state=self.state.value)
            return self.is_running

        self.state = WorkerState.INITIALIZING
        logger.info("worker_initializing",
                    name=self.settings.app_name,
                    version=self.settings.version,
                    environment=self.settings.server.environment)

        try:
            await self._start_services()
        except FatalStartupError as e:
            logger.error("worker_initialization_failed", step=e.step, error=str(e))
            await self.shutdown()
            return False
        except StartupInterrupted as e:
            logger.warning("worker_startup_interrupted", step=e.step, state=self.state.value)
            await self.shutdown()
            # the API may have bound after shutdown already stopped it
            if self.api_server.is_running:
                await self.api_server.stop()
            return False

        self.state = WorkerState.RUNNING
        await self.register_with_webservice()
        for task in self.periodic_tasks:
            task.start()

        logger.info("worker_started",
                    port=self.settings.server.port,
                    queue=self.settings.queue.name,
                    processors=len(self.processor_types),
                    pid=os.getpid())
        return True

    async def _start_services(self) -> None:
        try:
            reachable = await self.webservice.test_connection()
        except Exception as e:
            logger.warning("webservice_probe_error", error=str(e))
            reachable = False
        if not reachable:
            logger.warning("webservice_unreachable", url=self.settings.webservice.api_url, mode="degraded")

        self._check_not_interrupted("webservice")

        started = await self.backend.initialize()
        self._check_not_interrupted("queue")
        if not started:
            raise FatalStartupError("queue", "Queue backend failed to initialize")

        started = await self.api_server.start()
        self._check_not_interrupted("api")
        if not started:
            raise FatalStartupError("api", "Control API server failed to start")

        started = await self.bot.initialize()
        self._check_not_interrupted("whatsapp")
        if not started:
            raise FatalStartupError("whatsapp", "WhatsApp client failed to initialize")

        try:
            self.processor_types = register_processors(
                self.dispatcher,
                self.settings.queue.name,
                bot=self.bot,
                webservice=self.webservice,
                message_handler=self.message_handler,
                concurrency=self.settings.worker.concurrency,
            )
        except Exception as e:
            raise FatalStartupError("processors", str(e)) from e

    def _check_not_interrupted(self, step: str) -> None:
        if self.state is not WorkerState.INITIALIZING:
            raise StartupInterrupted(step)

    def worker_info(self) -> dict[str, Any]:
        return {
            "name": self.settings.app_name,
            "version": self.settings.version,
            "type": "whatsapp-bot",
            "port": self.settings.server.port,
            "pid": os.getpid(),
            "startTime": self.start_time.isoformat(),
            "capabilities": CAPABILITIES,
        }

    async def register_with_webservice(self) -> bool:
        try:
            result = await self.webservice.register_worker(self.worker_info())
        except Exception as e:
            logger.warning("worker_registration_error", error=str(e))
            return False
        if result["success"]:
            logger.info("worker_registered")
            return True
        logger.warning("worker_registration_failed", error=result.get("error"))
        return False

    # ── Periodic work ─────────────────────────────────────────

    async def send_heartbeat(self) -> None:
        try:
            stats = await self.dispatcher.get_queue_stats(self.settings.queue.name)
            result = await self.webservice.update_worker_status("active", {
                "whatsapp": self.bot.get_client_info(),
                "queue": stats.get("stats"),
                "memory": self.memory_usage(),
                "uptime": self.uptime(),
            })
        except Exception as e:
            logger.debug("heartbeat_failed", error=str(e))
            return
        if not result["success"]:
            logger.debug("heartbeat_failed", error=result.get("error"))

    async def clean_queue(self) -> None:
        result = await self.dispatcher.clean_queue(
            self.settings.queue.name, self.settings.monitoring.clean_older_than,
        )
        if result["success"]:
            logger.info("queue_cleanup_complete", queue=self.settings.queue.name, cleaned=result["cleaned"])
        else:
            logger.error("queue_cleanup_failed", queue=self.settings.queue.name, error=result.get("error"))

    async def check_memory(self) -> None:
        usage = self.memory_usage()
        logger.info("memory_usage", rss_mb=usage["rss"], vms_mb=usage["vms"])
        if usage["rss"] > self.settings.monitoring.memory_threshold_mb:
            logger.warning("memory_usage_high",
                           rss_mb=usage["rss"],
                           threshold_mb=self.settings.monitoring.memory_threshold_mb)

    def memory_usage(self) -> dict[str, float]:
        """Process memory in MB."""
        info = self._process.memory_info()
        return {"rss": round(info.rss / MB, 2), "vms": round(info.vms / MB, 2)}

    def uptime(self) -> float:
        return round(time.monotonic() - self._started, 3)

    def _on_whatsapp_status(self, connected: bool, reason: str) -> None:
        if connected:
            logger.info("worker_whatsapp_connected", reason=reason)
        else:
            logger.warning("worker_whatsapp_disconnected", reason=reason,
                           reconnect_attempts=self.bot.reconnect_attempts)

    # ── Shutdown ──────────────────────────────────────────────

    async def shutdown(self) -> None:
        """Graceful shutdown. Idempotent; concurrent callers share one run."""
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.create_task(self._shutdown())
        await asyncio.shield(self._shutdown_task)

    async def _shutdown(self) -> None:
        previous = self.state
        if self.state is not WorkerState.EMERGENCY_SHUTDOWN:
            self.state = WorkerState.SHUTTING_DOWN
        logger.info("worker_shutting_down", previous_state=previous.value)

        for task in self.periodic_tasks:
            await task.stop()

        steps = [
            ("notify_webservice", self._notify_shutdown),
            ("api_server", self.api_server.stop),
            ("whatsapp", self.bot.shutdown),
            ("queue", self.backend.shutdown),
            ("webservice_client", self.webservice.close),
        ]
        for step, action in steps:
            try:
                await action()
            except Exception as e:
                logger.error("worker_shutdown_step_failed", step=step, error=str(e))

        self.state = WorkerState.STOPPED
        self._stopped.set()
        logger.info("worker_shutdown_complete", uptime=self.uptime())

    async def _notify_shutdown(self) -> None:
        result = await self.webservice.update_worker_status("shutting_down")
        if not result["success"]:
            logger.warning("worker_shutdown_notify_failed", error=result.get("error"))

    async def emergency_shutdown(self, reason: Any = None) -> None:
        """Race the graceful shutdown against the emergency timeout, then exit(1)."""
        if self._emergency:
            return
        self._emergency = True
        if self.state is not WorkerState.STOPPED:
            self.state = WorkerState.EMERGENCY_SHUTDOWN
        timeout = self.settings.monitoring.emergency_timeout
        logger.critical("worker_emergency_shutdown", reason=str(reason), timeout=timeout)

        try:
            await asyncio.wait_for(self.shutdown(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error("worker_emergency_shutdown_timeout", timeout=timeout)
        except Exception as e:
            logger.error("worker_emergency_shutdown_error", error=str(e))
        self._exit(1)

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    # ── Process-level hooks ───────────────────────────────────

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop = None) -> None:
        """SIGTERM/SIGINT shut down gracefully; uncaught errors trigger the emergency path."""
        loop = loop or asyncio.get_running_loop()
        self._loop = loop
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except NotImplementedError:
                signal.signal(sig, lambda s, _frame: loop.call_soon_threadsafe(self._on_signal, signal.Signals(s)))
        loop.set_exception_handler(self._on_loop_exception)
        sys.excepthook = self._on_uncaught_exception

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info("worker_signal_received", signal=sig.name)
        if self._shutdown_task is not None:
            return
        self._spawn(self.shutdown())

    def _on_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        error = context.get("exception")
        logger.critical("worker_unhandled_exception",
                        message=context.get("message"),
                        error=str(error) if error else None,
                        exc_info=error)
        self._spawn(self.emergency_shutdown(error or context.get("message")))

    def _on_uncaught_exception(self, exc_type, exc, tb) -> None:
        logger.critical("worker_uncaught_exception", error=str(exc), exc_info=(exc_type, exc, tb))
        if self._loop is not None and self._loop.is_running():
            self._loop.call_soon_threadsafe(self._spawn, self.emergency_shutdown(exc))
        else:
            self._exit(1)

    # ── Status ────────────────────────────────────────────────

    def get_status(self) -> dict[str, Any]:
        return {
            "isRunning": self.is_running,
            "state": self.state.value,
            "services": {
                "queue": self.backend.is_healthy(),
                "whatsapp": self.bot.is_healthy(),
                "api": self.api_server.is_running,
            },
            "reconnectAttempts": self.bot.reconnect_attempts,
            "uptime": self.uptime(),
            "memory": self.memory_usage(),
            "pid": os.getpid(),
        }

    async def run(self) -> int:
        """Initialize, then block until stopped. Returns the process exit code."""
        self.install_signal_handlers()
        if not await self.initialize():
            return 1
        await self.wait_stopped()
        return 0
