"""
Webservice Client — HTTP channel to the primary web service.

Every call returns a result dict instead of raising:
  success: {"success": True,  "data": <body>, "status": <code>}
  failure: {"success": False, "error": <message>, "status": <code|None>, "details": <body>?}

Transport failures (connection refused, timeouts) are retried with
exponential backoff; HTTP error statuses are returned as-is.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import WebserviceConfig, get_settings

logger = structlog.get_logger()

WORKER_SOURCE = "whatsapp-worker"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class WebserviceClient:
    """Async REST client for the webservice worker and WhatsApp APIs."""

    def __init__(self, config: WebserviceConfig = None, version: str = "1.0.0",
                 transport: httpx.AsyncBaseTransport = None):
        self.config = config or get_settings().webservice
        self.version = version
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {
                "Content-Type": "application/json",
                "User-Agent": f"WhatsApp-Worker/{self.version}",
            }
            if self.config.api_token:
                headers["Authorization"] = f"Bearer {self.config.api_token}"

            self.client = httpx.AsyncClient(
                base_url=self.config.api_url,
                headers=headers,
                timeout=self.config.timeout,
                transport=self._transport,
                event_hooks={"request": [self._log_request], "response": [self._log_response]},
            )
        return self.client

    async def _log_request(self, request: httpx.Request):
        logger.debug("webservice_request", method=request.method, url=str(request.url))

    async def _log_response(self, response: httpx.Response):
        if response.is_error:
            logger.error("webservice_api_error",
                         method=response.request.method,
                         url=str(response.request.url),
                         status=response.status_code)
        else:
            logger.debug("webservice_response", status=response.status_code, url=str(response.request.url))

    async def _send(self, method: str, endpoint: str, **kwargs) -> httpx.Response:
        client = self._get_client()
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(self.config.max_retries, 1)),
            wait=wait_exponential(multiplier=self.config.retry_backoff, max=10),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        ):
            with attempt:
                return await client.request(method, endpoint, **kwargs)

    @staticmethod
    def _body(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def request(self, method: str, endpoint: str, **kwargs) -> dict[str, Any]:
        try:
            response = await self._send(method, endpoint, **kwargs)
        except httpx.HTTPError as e:
            logger.error("webservice_network_error", method=method, endpoint=endpoint, error=str(e))
            return self.handle_error(e)

        if response.is_error:
            return self.handle_error(response=response)
        return {"success": True, "data": self._body(response), "status": response.status_code}

    def handle_error(self, error: Exception = None, response: httpx.Response = None) -> dict[str, Any]:
        if response is not None:
            result = {
                "success": False,
                "error": f"Request failed with status code {response.status_code}",
                "status": response.status_code,
            }
            details = self._body(response)
            if details is not None:
                result["details"] = details
            return result
        return {"success": False, "error": str(error) or type(error).__name__, "status": None}

    # ── generic verbs ──────────────────────────────────────

    async def get(self, endpoint: str, params: dict[str, Any] = None) -> dict[str, Any]:
        return await self.request("GET", endpoint, params=params or {})

    async def post(self, endpoint: str, data: Any = None) -> dict[str, Any]:
        return await self.request("POST", endpoint, json=data if data is not None else {})

    async def put(self, endpoint: str, data: Any = None) -> dict[str, Any]:
        return await self.request("PUT", endpoint, json=data if data is not None else {})

    async def delete(self, endpoint: str) -> dict[str, Any]:
        return await self.request("DELETE", endpoint)

    # ── worker ─────────────────────────────────────────────

    async def register_worker(self, worker_info: dict[str, Any]) -> dict[str, Any]:
        return await self.post("/api/worker/register", {
            "type": "whatsapp-bot",
            "status": "active",
            "capabilities": ["message-processing", "file-handling", "webhook-processing"],
            **worker_info,
        })

    async def update_worker_status(self, status: str, details: dict[str, Any] = None) -> dict[str, Any]:
        return await self.post("/api/worker/status", {
            "status": status,
            "timestamp": _timestamp(),
            **(details or {}),
        })

    async def report_worker_health(self) -> dict[str, Any]:
        return await self.get("/api/worker/health")

    # ── jobs ───────────────────────────────────────────────

    async def queue_job(self, job_type: str, job_data: Any, options: dict[str, Any] = None) -> dict[str, Any]:
        """Ask the webservice to enqueue a job on its own queue."""
        return await self.post("/api/worker/jobs", {
            "type": job_type,
            "data": job_data,
            "options": options or {},
        })

    async def get_job_status(self, job_id: str) -> dict[str, Any]:
        return await self.get(f"/api/worker/jobs/{job_id}/status")

    async def queue_batch_jobs(self, jobs: list[dict[str, Any]]) -> dict[str, Any]:
        return await self.post("/api/worker/jobs/batch", {"jobs": jobs})

    async def get_queue_stats(self) -> dict[str, Any]:
        return await self.get("/api/worker/queue/stats")

    # ── whatsapp ───────────────────────────────────────────

    async def send_whatsapp_message(self, to: str, message: str, options: dict[str, Any] = None) -> dict[str, Any]:
        return await self.post("/api/whatsapp/send", {"to": to, "message": message, **(options or {})})

    async def log_whatsapp_event(self, event_type: str, event_data: Any) -> dict[str, Any]:
        return await self.post("/api/whatsapp/events", {
            "type": event_type,
            "data": event_data,
            "timestamp": _timestamp(),
        })

    async def get_whatsapp_settings(self) -> dict[str, Any]:
        return await self.get("/api/whatsapp/settings")

    # ── users ──────────────────────────────────────────────

    async def get_user(self, user_id: str) -> dict[str, Any]:
        return await self.get(f"/api/users/{user_id}")

    async def create_user(self, user_data: dict[str, Any]) -> dict[str, Any]:
        return await self.post("/api/users", user_data)

    async def update_user(self, user_id: str, user_data: dict[str, Any]) -> dict[str, Any]:
        return await self.put(f"/api/users/{user_id}", user_data)

    # ── supabase relay ─────────────────────────────────────

    async def sync_to_supabase(self, table: str, data: Any) -> dict[str, Any]:
        return await self.post("/api/supabase/sync", {"table": table, "data": data, "source": WORKER_SOURCE})

    async def query_supabase(self, table: str, filters: dict[str, Any] = None) -> dict[str, Any]:
        return await self.post("/api/supabase/query", {"table": table, "filters": filters or {}})

    # ── health ─────────────────────────────────────────────

    async def health_check(self) -> bool:
        result = await self.get("/health")
        return result["success"] and result["status"] == 200

    async def test_connection(self) -> bool:
        logger.info("webservice_connection_test", url=self.config.api_url)
        healthy = await self.health_check()
        if healthy:
            logger.info("webservice_connected", url=self.config.api_url)
        else:
            logger.error("webservice_connection_failed", url=self.config.api_url)
        return healthy

    async def close(self):
        if self.client:
            await self.client.aclose()
            self.client = None
