"""
Message Handler — routes a queued WhatsApp message by type.

Text messages are relayed to the webservice (commands separately from
chat text) and may trigger an auto-reply job. Media messages are split in
two: the slow download goes onto its own ``whatsapp-media`` job so it never
holds up the message lane, and the webservice is told about the message
right away.
"""
from __future__ import annotations

import re
from collections import Counter
from typing import Any, Awaitable, Callable

import structlog

from backend.webservice_client import WebserviceClient
from config.settings import BotConfig
from job_queue.errors import JobProcessingError

logger = structlog.get_logger()

MEDIA_TYPES = ("image", "video", "audio", "voice", "document")

# message type → remote job type for types that are only relayed
RELAY_TYPES = {
    "sticker": "process-sticker-message",
    "location": "process-location-message",
    "contacts": "process-contact-message",
    "interactive": "process-interactive-message",
}

MAX_KEYWORDS = 10


def extract_keywords(text: str) -> list[str]:
    if not text:
        return []
    words = re.sub(r"[^\w\s]", "", text.lower()).split()
    return [w for w in words if len(w) > 3][:MAX_KEYWORDS]


class MessageHandler:
    """Processes ``whatsapp-message`` jobs."""

    def __init__(self, webservice: WebserviceClient, dispatcher, bot_config: BotConfig):
        self.webservice = webservice
        self.dispatcher = dispatcher
        self.bot_config = bot_config
        self.stats: Counter = Counter()

        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]] = {
            "text": self.handle_text_message,
            "revoked": self.handle_revoked_message,
            "unknown": self.handle_unknown_message,
        }
        for media_type in MEDIA_TYPES:
            self._handlers[media_type] = self.handle_media_message
        for message_type in RELAY_TYPES:
            self._handlers[message_type] = self.handle_relay_message

    async def process_message(self, message_data: dict[str, Any]) -> dict[str, Any]:
        """Handle one message; raises JobProcessingError so the job is retried."""
        message_type = message_data.get("type", "unknown")
        logger.info("message_processing",
                    message_id=message_data.get("messageId"),
                    sender=message_data.get("from"),
                    type=message_type)

        handler = self._handlers.get(message_type, self.handle_unknown_message)
        result = await handler(message_data)
        self.stats[message_type if message_type in self._handlers else "unknown"] += 1

        await self.webservice.log_whatsapp_event("message_processed", {
            "messageId": message_data.get("messageId"),
            "type": message_type,
            "result": result,
        })
        return result

    async def _relay(self, remote_type: str, payload: dict[str, Any]) -> dict[str, Any]:
        result = await self.webservice.queue_job(remote_type, payload)
        if not result["success"]:
            raise JobProcessingError(f"Webservice rejected {remote_type}: {result.get('error')}",
                                     job_type=remote_type)
        return result

    # ── Text ──────────────────────────────────────────────────

    async def handle_text_message(self, message_data: dict[str, Any]) -> dict[str, Any]:
        body = message_data.get("body") or ""
        if body.startswith(self.bot_config.prefix):
            return await self.handle_command_message(message_data)

        keywords = extract_keywords(body)
        result = await self._relay("process-text-message", {
            "messageId": message_data.get("messageId"),
            "from": message_data.get("from"),
            "body": body,
            "keywords": keywords,
            "isGroup": message_data.get("isGroup", False),
            "chatId": message_data.get("chatId"),
        })

        auto_reply = self.bot_config.auto_reply_enabled and self.should_auto_reply(message_data)
        if auto_reply:
            await self.send_auto_reply(message_data)

        return {
            "success": True,
            "type": "text",
            "processed": True,
            "keywords": keywords,
            "autoReply": auto_reply,
            "result": result,
        }

    async def handle_command_message(self, message_data: dict[str, Any]) -> dict[str, Any]:
        parts = message_data["body"][len(self.bot_config.prefix):].split(" ")
        command, args = parts[0].lower(), parts[1:]
        logger.info("message_command", message_id=message_data.get("messageId"), command=command)

        result = await self._relay("process-bot-command", {
            "messageId": message_data.get("messageId"),
            "from": message_data.get("from"),
            "command": command,
            "args": args,
            "isGroup": message_data.get("isGroup", False),
        })
        return {"success": True, "type": "command", "command": command, "args": args,
                "processed": True, "result": result}

    def should_auto_reply(self, message_data: dict[str, Any]) -> bool:
        if message_data.get("isGroup"):
            return False
        return not (message_data.get("body") or "").startswith(self.bot_config.prefix)

    async def send_auto_reply(self, message_data: dict[str, Any]) -> None:
        result = await self.dispatcher.add_auto_reply_job({
            "to": message_data.get("from"),
            "originalMessageId": message_data.get("messageId"),
            "message": self.bot_config.welcome_message,
        })
        if result["success"]:
            logger.info("auto_reply_queued", message_id=message_data.get("messageId"), job_id=result["jobId"])
        else:
            logger.error("auto_reply_queue_failed", message_id=message_data.get("messageId"),
                         error=result.get("error"))

    # ── Media ─────────────────────────────────────────────────

    async def handle_media_message(self, message_data: dict[str, Any]) -> dict[str, Any]:
        media_type = message_data["type"]
        # voice notes are usually time-sensitive
        options = {"priority": 7} if media_type == "voice" else None
        queued = await self.dispatcher.add_whatsapp_media_job({
            "messageId": message_data.get("messageId"),
            "type": media_type,
            "from": message_data.get("from"),
            "chatId": message_data.get("chatId"),
            "mediaId": message_data.get("mediaId"),
            "mimeType": message_data.get("mimeType", ""),
            "caption": message_data.get("caption", ""),
            "filename": message_data.get("filename", ""),
        }, options)
        if not queued["success"]:
            raise JobProcessingError(f"Could not queue media job: {queued.get('error')}",
                                     job_type="whatsapp-media")

        payload = {
            "messageId": message_data.get("messageId"),
            "from": message_data.get("from"),
            "isGroup": message_data.get("isGroup", False),
        }
        if message_data.get("caption"):
            payload["caption"] = message_data["caption"]
        if message_data.get("filename"):
            payload["filename"] = message_data["filename"]
        result = await self._relay(f"process-{media_type}-message", payload)

        return {"success": True, "type": media_type, "processed": True,
                "queued": True, "mediaJobId": queued["jobId"], "result": result}

    # ── Other types ───────────────────────────────────────────

    async def handle_relay_message(self, message_data: dict[str, Any]) -> dict[str, Any]:
        message_type = message_data["type"]
        payload = {
            "messageId": message_data.get("messageId"),
            "from": message_data.get("from"),
            "isGroup": message_data.get("isGroup", False),
        }
        for extra in ("location", "contacts", "body"):
            if message_data.get(extra):
                payload[extra] = message_data[extra]
        result = await self._relay(RELAY_TYPES[message_type], payload)
        return {"success": True, "type": message_type, "processed": True, "result": result}

    async def handle_revoked_message(self, message_data: dict[str, Any]) -> dict[str, Any]:
        result = await self.webservice.log_whatsapp_event("message_revoked", {
            "messageId": message_data.get("messageId"),
            "from": message_data.get("from"),
            "isGroup": message_data.get("isGroup", False),
        })
        return {"success": True, "type": "revoked", "processed": True, "result": result}

    async def handle_unknown_message(self, message_data: dict[str, Any]) -> dict[str, Any]:
        logger.warning("message_type_unknown", message_id=message_data.get("messageId"),
                       type=message_data.get("type"))
        result = await self.webservice.log_whatsapp_event("unknown_message_type", {
            "messageId": message_data.get("messageId"),
            "type": message_data.get("type"),
            "from": message_data.get("from"),
            "isGroup": message_data.get("isGroup", False),
        })
        return {"success": True, "type": "unknown", "processed": True, "result": result}

    def get_handler_stats(self) -> dict[str, Any]:
        return {
            "totalHandlers": len(self._handlers),
            "supportedTypes": sorted(self._handlers),
            "handled": dict(self.stats),
        }
