"""Shared test fixtures for the WhatsApp bridge worker."""
import asyncio
import json
import time
from typing import Any, Callable

import httpx
import pytest
import pytest_asyncio

from backend.webservice_client import WebserviceClient
from config.settings import Settings
from job_queue.backend import QueueBackend
from job_queue.dispatcher import JobDispatcher
from job_queue.store import InMemoryJobStore


async def wait_until(predicate: Callable[[], Any], timeout: float = 3.0, interval: float = 0.01) -> None:
    """Poll ``predicate`` (sync or async) until it is truthy."""
    deadline = time.monotonic() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


class WebserviceRecorder:
    """httpx MockTransport handler that records every webservice call."""

    def __init__(self, status: int = 200, body: Any = None):
        self.status = status
        self.body = body if body is not None else {"ok": True}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, json=self.body)

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]

    def bodies(self, path: str) -> list[dict]:
        return [json.loads(r.content or b"{}") for r in self.requests if r.url.path == path]


@pytest.fixture
def settings() -> Settings:
    """Fast settings on the in-memory backend."""
    s = Settings()
    s.server.host = "127.0.0.1"
    s.server.port = 0
    s.webservice.api_url = "http://webservice.test"
    s.webservice.max_retries = 1
    s.webservice.retry_backoff = 0
    s.queue.name = "jobs"
    s.queue.backend = "memory"
    s.queue.poll_interval = 50
    s.queue.lock_duration = 1000
    s.queue.stalled_interval = 100
    s.queue.operation_timeout = 1.0
    s.worker.concurrency = 1
    s.worker.max_retries = 1
    s.worker.retry_delay = 10
    s.monitoring.emergency_timeout = 0.5
    s.logging.file = ""
    return s


@pytest_asyncio.fixture
async def store():
    s = InMemoryJobStore()
    await s.connect()
    yield s
    await s.close()


@pytest_asyncio.fixture
async def backend(settings):
    b = QueueBackend(settings, store=InMemoryJobStore())
    assert await b.initialize()
    yield b
    await b.shutdown()


@pytest.fixture
def dispatcher(backend, settings) -> JobDispatcher:
    return JobDispatcher(backend, settings)


@pytest.fixture
def recorder() -> WebserviceRecorder:
    return WebserviceRecorder()


@pytest_asyncio.fixture
async def webservice(settings, recorder):
    client = WebserviceClient(settings.webservice, transport=httpx.MockTransport(recorder))
    yield client
    await client.close()
