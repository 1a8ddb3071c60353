"""
WhatsApp Bot — WhatsApp Business Cloud API client for the worker.

Provides:
- Credential check on startup, with a mock mode when no credentials are set
- Connected/disconnected signal and a bounded reconnect loop
- Webhook verification (hub.verify_token challenge) and signature check
- Inbound: text, interactive, image, video, audio, voice, document,
  sticker, location, contacts; status updates are logged as acks
- Bot commands (!help, !status, !ping, !info) when auto-reply is enabled
- Outbound: text and media messages, media download
"""
from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import re
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import httpx
import structlog

from backend.webservice_client import WebserviceClient
from config.settings import BotConfig, WhatsAppConfig

logger = structlog.get_logger()

MEDIA_TYPES = ("image", "video", "audio", "voice", "document", "sticker")

StatusListener = Callable[[bool, str], Any]


def _format_uptime(seconds: float) -> str:
    seconds = int(seconds)
    return f"{seconds // 3600}h {(seconds % 3600) // 60}m {seconds % 60}s"


class WhatsAppBot:
    """
    WhatsApp Business Cloud API bot.

    The dispatcher is attached after construction because the queue comes
    up before the bot during worker startup.
    """

    def __init__(self, config: WhatsAppConfig, bot_config: BotConfig, webservice: WebserviceClient,
                 dispatcher=None, transport: httpx.AsyncBaseTransport = None):
        self.config = config
        self.bot_config = bot_config
        self.webservice = webservice
        self.dispatcher = dispatcher
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

        self.is_ready = False
        self.is_connected = False
        self.reconnect_attempts = 0
        self._info: dict[str, Any] = {}
        self._status_listeners: list[StatusListener] = []
        self._reconnect_task: Optional[asyncio.Task] = None
        self._started_at = time.monotonic()
        self._shutting_down = False

    @property
    def mock(self) -> bool:
        return not (self.config.access_token and self.config.phone_number_id)

    @property
    def mode(self) -> str:
        return "mock" if self.mock else "cloud-api"

    def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.config.api_base_url,
                headers={"Authorization": f"Bearer {self.config.access_token}"},
                timeout=30.0,
                transport=self._transport,
            )
        return self.client

    def attach_dispatcher(self, dispatcher) -> None:
        self.dispatcher = dispatcher

    # ── Connection state ──────────────────────────────────────

    def add_status_listener(self, callback: StatusListener) -> Callable[[], None]:
        """Subscribe to connected/disconnected changes; returns an unsubscribe callable."""
        self._status_listeners.append(callback)

        def unsubscribe():
            if callback in self._status_listeners:
                self._status_listeners.remove(callback)
        return unsubscribe

    def _set_connected(self, connected: bool, reason: str = "") -> None:
        changed = connected != self.is_connected
        self.is_ready = connected
        self.is_connected = connected
        if not changed:
            return
        for callback in list(self._status_listeners):
            try:
                callback(connected, reason)
            except Exception:
                logger.exception("whatsapp_status_listener_error")

    def is_healthy(self) -> bool:
        return self.is_ready and self.is_connected

    def get_client_info(self) -> Optional[dict[str, Any]]:
        if not self.is_ready:
            return None
        return {
            "isReady": self.is_ready,
            "isConnected": self.is_connected,
            "number": self._info.get("display_phone_number"),
            "name": self._info.get("verified_name"),
            "platform": self.mode,
            "reconnectAttempts": self.reconnect_attempts,
        }

    # ── Lifecycle ─────────────────────────────────────────────

    async def initialize(self) -> bool:
        """Verify credentials and mark the bot ready. Never raises."""
        logger.info("whatsapp_initializing", mode=self.mode, session=self.config.session_name)
        if self.mock:
            self._info = {"display_phone_number": "mock", "verified_name": self.config.session_name}
            self._set_connected(True, "mock")
            logger.warning("whatsapp_mock_mode", reason="no Cloud API credentials configured")
            await self.webservice.log_whatsapp_event("ready", {"mode": "mock"})
            return True

        if await self._connect():
            await self.webservice.log_whatsapp_event("ready", {
                "number": self._info.get("display_phone_number"),
                "name": self._info.get("verified_name"),
            })
            return True
        await self.webservice.log_whatsapp_event("auth_failure", {"phoneNumberId": self.config.phone_number_id})
        return False

    async def _connect(self) -> bool:
        try:
            response = await self._get_client().get(
                f"/{self.config.phone_number_id}",
                params={"fields": "display_phone_number,verified_name"},
            )
        except httpx.HTTPError as e:
            logger.error("whatsapp_connect_failed", error=str(e))
            return False
        if response.is_error:
            logger.error("whatsapp_auth_failed", status=response.status_code)
            return False

        self._info = response.json()
        self._set_connected(True, "authenticated")
        self.reconnect_attempts = 0
        logger.info("whatsapp_ready",
                    number=self._info.get("display_phone_number"),
                    name=self._info.get("verified_name"))
        return True

    async def mark_disconnected(self, reason: str) -> None:
        """Record a lost connection and start the reconnect loop."""
        if self._shutting_down or not self.is_connected:
            return
        logger.warning("whatsapp_disconnected", reason=reason)
        self._set_connected(False, reason)
        await self.webservice.log_whatsapp_event("disconnected", {"reason": reason})
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        while self.reconnect_attempts < self.config.max_reconnect_attempts:
            self.reconnect_attempts += 1
            logger.info("whatsapp_reconnect_attempt",
                        attempt=self.reconnect_attempts,
                        max_attempts=self.config.max_reconnect_attempts)
            await asyncio.sleep(self.config.reconnect_delay)
            if self._shutting_down:
                return
            if self.mock or await self._connect():
                self._set_connected(True, "reconnected")
                self.reconnect_attempts = 0
                return
        logger.error("whatsapp_max_reconnect_attempts", attempts=self.reconnect_attempts)

    async def shutdown(self) -> None:
        self._shutting_down = True
        logger.info("whatsapp_shutting_down")
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        if self.client is not None:
            await self.client.aclose()
            self.client = None
        self._set_connected(False, "shutdown")
        logger.info("whatsapp_shutdown_complete")

    # ── Webhook verification ──────────────────────────────────

    def verify_webhook(self, params: dict[str, Any]) -> Optional[str]:
        """
        Verify the Cloud API webhook subscription.
        Returns the challenge string on success, None on failure.
        """
        mode = params.get("hub.mode", "")
        token = params.get("hub.verify_token", "")
        challenge = params.get("hub.challenge", "")

        if mode == "subscribe" and self.config.verify_token and token == self.config.verify_token:
            return challenge
        return None

    def verify_signature(self, body: bytes, signature: Optional[str]) -> bool:
        """Check ``X-Hub-Signature-256``; always passes when no app secret is set."""
        if not self.config.app_secret:
            return True
        if not signature or not signature.startswith("sha256="):
            return False
        expected = hmac.new(self.config.app_secret.encode(), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature[len("sha256="):])

    # ── Inbound parsing ───────────────────────────────────────

    @staticmethod
    def _normalize_phone(phone: str) -> str:
        """Normalize phone to digits only, stripping +, spaces, dashes."""
        return re.sub(r"[^\d]", "", phone)

    def parse_inbound(self, payload: dict[str, Any]) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        """Split a webhook payload into (messages, statuses)."""
        messages, statuses = [], []
        for entry in payload.get("entry", []) or []:
            for change in entry.get("changes", []) or []:
                value = change.get("value", {}) or {}
                names = {
                    c.get("wa_id", ""): c.get("profile", {}).get("name", "")
                    for c in value.get("contacts", []) or []
                }
                for msg in value.get("messages", []) or []:
                    messages.append(self._parse_message(msg, names))
                for status in value.get("statuses", []) or []:
                    statuses.append({
                        "messageId": status.get("id", ""),
                        "status": status.get("status", "unknown"),
                        "recipient": status.get("recipient_id", ""),
                        "timestamp": status.get("timestamp"),
                    })
        return messages, statuses

    def _parse_message(self, msg: dict[str, Any], names: dict[str, str]) -> dict[str, Any]:
        sender = msg.get("from", "")
        msg_type = msg.get("type", "text")
        data: dict[str, Any] = {
            "messageId": msg.get("id", ""),
            "from": sender,
            "fromName": names.get(sender, ""),
            "type": msg_type,
            "body": "",
            "timestamp": int(msg.get("timestamp") or 0),
            "isGroup": False,
            "chatId": sender,
            "hasMedia": False,
            "isForwarded": bool(msg.get("context", {}).get("forwarded")),
        }

        if msg_type == "text":
            data["body"] = msg.get("text", {}).get("body", "")

        elif msg_type == "interactive":
            interactive = msg.get("interactive", {})
            reply = interactive.get(interactive.get("type", ""), {})
            data["body"] = reply.get("title", "")
            data["replyId"] = reply.get("id", "")

        elif msg_type in MEDIA_TYPES:
            media = msg.get(msg_type, {})
            data["hasMedia"] = True
            data["mediaId"] = media.get("id", "")
            data["mimeType"] = media.get("mime_type", "")
            data["caption"] = media.get("caption", "")
            data["filename"] = media.get("filename", "")
            data["body"] = data["caption"]

        elif msg_type == "location":
            loc = msg.get("location", {})
            data["location"] = {
                "latitude": loc.get("latitude", 0),
                "longitude": loc.get("longitude", 0),
                "name": loc.get("name", ""),
                "address": loc.get("address", ""),
            }

        elif msg_type == "contacts":
            data["contacts"] = [
                {
                    "name": c.get("name", {}).get("formatted_name", ""),
                    "phones": [p.get("phone", "") for p in c.get("phones", [])],
                }
                for c in msg.get("contacts", [])
            ]

        return data

    async def handle_inbound(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Queue every inbound message and log delivery statuses."""
        messages, statuses = self.parse_inbound(payload)
        queued = 0
        for message in messages:
            if await self.handle_incoming_message(message):
                queued += 1
        for status in statuses:
            await self.webservice.log_whatsapp_event("message_ack", status)
        return {"messages": len(messages), "queued": queued, "statuses": len(statuses)}

    async def handle_incoming_message(self, message: dict[str, Any]) -> bool:
        logger.info("whatsapp_message_received",
                    message_id=message["messageId"],
                    sender=message["from"],
                    type=message["type"],
                    body=message["body"][:100])

        queued = False
        if self.dispatcher is not None:
            result = await self.dispatcher.add_whatsapp_message_job(message)
            queued = result["success"]
            if not queued:
                logger.error("whatsapp_message_queue_failed",
                             message_id=message["messageId"],
                             error=result.get("error"))

        body = message.get("body") or ""
        if self.bot_config.auto_reply_enabled and body.startswith(self.bot_config.prefix):
            await self.handle_bot_command(message)

        await self.webservice.log_whatsapp_event("message_received", {
            "messageId": message["messageId"],
            "from": message["from"],
            "type": message["type"],
        })
        return queued

    # ── Bot commands ──────────────────────────────────────────

    async def handle_bot_command(self, message: dict[str, Any]) -> dict[str, Any]:
        prefix = self.bot_config.prefix
        parts = message["body"][len(prefix):].split(" ")
        command = parts[0].lower()
        logger.info("bot_command", command=command, args=parts[1:])

        if command == "help":
            text = (
                "*WhatsApp Bot - Available commands*\n\n"
                f"{prefix}help - Show this help\n"
                f"{prefix}status - Bot status\n"
                f"{prefix}ping - Connectivity test\n"
                f"{prefix}info - Message information"
            )
        elif command == "status":
            text = await self._status_text()
        elif command == "ping":
            text = "Pong!"
        elif command == "info":
            sent_at = datetime.fromtimestamp(message.get("timestamp") or 0, tz=timezone.utc)
            text = (
                "*Message information*\n\n"
                f"From: {message.get('fromName') or message['from']}\n"
                f"Chat: {'Group' if message.get('isGroup') else 'Private chat'}\n"
                f"Date: {sent_at.isoformat()}\n"
                f"Message ID: {message['messageId']}\n"
                f"Type: {message['type']}"
            )
        else:
            text = f"Unknown command: {command}\nSend {prefix}help to see the available commands."
        return await self.send_message(message["from"], text)

    async def _status_text(self) -> str:
        stats = {}
        if self.dispatcher is not None:
            result = await self.dispatcher.get_queue_stats(self.dispatcher.default_queue)
            if result["success"]:
                stats = result["stats"]
        return (
            "*Bot status*\n\n"
            "State: Active\n"
            f"Uptime: {_format_uptime(time.monotonic() - self._started_at)}\n"
            f"Connected to WhatsApp: {'yes' if self.is_connected else 'no'}\n"
            f"Queued jobs: {stats.get('waiting', 'N/A')}\n"
            f"Processed jobs: {stats.get('completed', 'N/A')}\n"
            f"Failed jobs: {stats.get('failed', 'N/A')}"
        )

    # ── Outbound ──────────────────────────────────────────────

    async def _post_message(self, payload: dict[str, Any]) -> dict[str, Any]:
        if not self.is_ready:
            return {"success": False, "error": "WhatsApp client is not ready"}

        sent_at = datetime.now(timezone.utc).isoformat()
        if self.mock:
            msg_id = f"wamid.{uuid.uuid4().hex[:20]}"
            logger.info("whatsapp_mock_sent", to=payload["to"], type=payload["type"], message_id=msg_id)
            return {"success": True, "messageId": msg_id, "timestamp": sent_at}

        try:
            response = await self._get_client().post(f"/{self.config.phone_number_id}/messages", json=payload)
        except httpx.TransportError as e:
            logger.error("whatsapp_send_failed", to=payload["to"], error=str(e))
            await self.mark_disconnected(f"transport error: {e}")
            return {"success": False, "error": str(e)}

        if response.is_error:
            logger.error("whatsapp_send_failed", to=payload["to"], status=response.status_code)
            if response.status_code == 401:
                await self.mark_disconnected("access token rejected")
            return {"success": False, "error": f"WhatsApp API error {response.status_code}", "details": response.text}

        body = response.json()
        msg_id = (body.get("messages") or [{}])[0].get("id", "")
        logger.info("whatsapp_message_sent", to=payload["to"], type=payload["type"], message_id=msg_id)
        return {"success": True, "messageId": msg_id, "timestamp": sent_at}

    async def send_message(self, to: str, message: str) -> dict[str, Any]:
        return await self._post_message({
            "messaging_product": "whatsapp",
            "to": self._normalize_phone(to),
            "type": "text",
            "text": {"body": message},
        })

    async def send_media_message(self, to: str, media_url: str, caption: str = "",
                                 media_type: str = "image") -> dict[str, Any]:
        if media_type not in ("image", "video", "audio", "document", "sticker"):
            return {"success": False, "error": f"Unsupported media type: {media_type}"}
        media: dict[str, Any] = {"link": media_url}
        if caption and media_type in ("image", "video", "document"):
            media["caption"] = caption
        return await self._post_message({
            "messaging_product": "whatsapp",
            "to": self._normalize_phone(to),
            "type": media_type,
            media_type: media,
        })

    async def download_media(self, media_id: str) -> dict[str, Any]:
        """Fetch media metadata then its bytes; returns base64 data."""
        if self.mock:
            return {"success": True, "mimeType": "application/octet-stream", "data": "", "size": 0}
        client = self._get_client()
        try:
            meta = await client.get(f"/{media_id}")
            meta.raise_for_status()
            info = meta.json()
            content = await client.get(info["url"])
            content.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("whatsapp_media_download_failed", media_id=media_id, error=str(e))
            return {"success": False, "error": str(e)}
        return {
            "success": True,
            "mimeType": info.get("mime_type", ""),
            "data": base64.b64encode(content.content).decode(),
            "size": len(content.content),
        }

    async def process_media_message(self, media_data: dict[str, Any]) -> dict[str, Any]:
        """Download inbound media and hand it to the webservice for processing."""
        media_id = media_data.get("mediaId")
        if not media_id:
            return {"success": False, "error": "Message has no media"}

        media = await self.download_media(media_id)
        if not media["success"]:
            return media

        return await self.webservice.queue_job("process-media", {
            "messageId": media_data.get("messageId"),
            "mediaType": media["mimeType"] or media_data.get("mimeType", ""),
            "mediaSize": media["size"],
            "mediaData": media["data"],
            "filename": media_data.get("filename", ""),
        })
