"""
Tests for WhatsAppBot (Cloud API client)

Covers mock mode, credential check, reconnect loop, webhook verification,
inbound parsing, bot commands, and outbound sends.
"""
import hashlib
import hmac
import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio

from channels.whatsapp_bot import WhatsAppBot
from config.settings import BotConfig, WhatsAppConfig
from conftest import wait_until


def _cloud_config(**overrides) -> WhatsAppConfig:
    cfg = WhatsAppConfig(
        phone_number_id="PNID",
        access_token="token",
        verify_token="verify-me",
        app_secret="",
        api_base_url="https://graph.test/v18.0",
        max_reconnect_attempts=2,
        reconnect_delay=0.01,
    )
    for key, value in overrides.items():
        setattr(cfg, key, value)
    return cfg


class GraphApi:
    """Minimal Cloud API double for httpx.MockTransport."""

    def __init__(self):
        self.auth_status = 200
        self.send_status = 200
        self.sent: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "GET" and path.endswith("/PNID"):
            if self.auth_status != 200:
                return httpx.Response(self.auth_status, json={"error": {"message": "bad token"}})
            return httpx.Response(200, json={"display_phone_number": "+1 555 0100", "verified_name": "Acme"})
        if request.method == "POST" and path.endswith("/PNID/messages"):
            if self.send_status != 200:
                return httpx.Response(self.send_status, json={"error": {"message": "nope"}})
            self.sent.append(json.loads(request.content))
            return httpx.Response(200, json={"messages": [{"id": f"wamid.{len(self.sent)}"}]})
        return httpx.Response(404)


@pytest.fixture
def graph() -> GraphApi:
    return GraphApi()


@pytest_asyncio.fixture
async def cloud_bot(webservice, graph):
    bot = WhatsAppBot(_cloud_config(), BotConfig(), webservice, transport=httpx.MockTransport(graph))
    yield bot
    await bot.shutdown()


@pytest_asyncio.fixture
async def mock_bot(webservice):
    bot = WhatsAppBot(WhatsAppConfig(), BotConfig(auto_reply_enabled=True), webservice)
    yield bot
    await bot.shutdown()


def _webhook(*messages, statuses=()):
    return {
        "object": "whatsapp_business_account",
        "entry": [{
            "changes": [{
                "value": {
                    "contacts": [{"wa_id": "15550001", "profile": {"name": "Ana"}}],
                    "messages": list(messages),
                    "statuses": list(statuses),
                },
            }],
        }],
    }


# ──────────────────────────────────────────────────────────────
#  Lifecycle
# ──────────────────────────────────────────────────────────────

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_mock_mode_is_ready(self, mock_bot, recorder):
        assert mock_bot.mode == "mock"
        assert await mock_bot.initialize() is True
        assert mock_bot.is_healthy()
        assert mock_bot.get_client_info()["platform"] == "mock"
        assert recorder.bodies("/api/whatsapp/events")[0]["type"] == "ready"

    @pytest.mark.asyncio
    async def test_cloud_credentials_accepted(self, cloud_bot):
        assert await cloud_bot.initialize() is True
        info = cloud_bot.get_client_info()
        assert info["number"] == "+1 555 0100"
        assert info["name"] == "Acme"
        assert info["platform"] == "cloud-api"

    @pytest.mark.asyncio
    async def test_cloud_credentials_rejected(self, cloud_bot, graph, recorder):
        graph.auth_status = 401
        assert await cloud_bot.initialize() is False
        assert cloud_bot.get_client_info() is None
        assert recorder.bodies("/api/whatsapp/events")[-1]["type"] == "auth_failure"

    @pytest.mark.asyncio
    async def test_reconnect_gives_up_after_cap(self, cloud_bot, graph):
        await cloud_bot.initialize()
        graph.send_status = 401
        graph.auth_status = 401

        result = await cloud_bot.send_message("+1 555 0001", "hi")
        assert result["success"] is False
        assert not cloud_bot.is_connected

        await wait_until(lambda: cloud_bot._reconnect_task.done())
        assert cloud_bot.reconnect_attempts == 2
        assert not cloud_bot.is_healthy()

    @pytest.mark.asyncio
    async def test_reconnect_recovers_and_resets_attempts(self, cloud_bot, graph):
        changes = []
        cloud_bot.add_status_listener(lambda connected, reason: changes.append(connected))
        await cloud_bot.initialize()

        graph.send_status = 401
        await cloud_bot.send_message("15550001", "hi")
        graph.send_status = 200

        await wait_until(lambda: cloud_bot.is_connected)
        assert cloud_bot.reconnect_attempts == 0
        assert changes == [True, False, True]


# ──────────────────────────────────────────────────────────────
#  Webhook
# ──────────────────────────────────────────────────────────────

class TestWebhook:
    def test_verify_webhook(self):
        bot = WhatsAppBot(_cloud_config(), BotConfig(), MagicMock())
        params = {"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "42"}
        assert bot.verify_webhook(params) == "42"
        assert bot.verify_webhook({**params, "hub.verify_token": "wrong"}) is None

    def test_verify_signature(self):
        bot = WhatsAppBot(_cloud_config(app_secret="s3cret"), BotConfig(), MagicMock())
        body = b'{"entry": []}'
        good = "sha256=" + hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()
        assert bot.verify_signature(body, good)
        assert not bot.verify_signature(body, "sha256=deadbeef")
        assert not bot.verify_signature(body, None)

    def test_parse_inbound(self):
        bot = WhatsAppBot(WhatsAppConfig(), BotConfig(), MagicMock())
        messages, statuses = bot.parse_inbound(_webhook(
            {"id": "m1", "from": "15550001", "timestamp": "1700000000", "type": "text", "text": {"body": "hello"}},
            {"id": "m2", "from": "15550001", "type": "image",
             "image": {"id": "media-1", "mime_type": "image/jpeg", "caption": "look"}},
            statuses=[{"id": "m0", "status": "read", "recipient_id": "15550001"}],
        ))

        assert messages[0]["body"] == "hello"
        assert messages[0]["fromName"] == "Ana"
        assert messages[0]["timestamp"] == 1700000000
        assert messages[1]["hasMedia"] is True
        assert messages[1]["mediaId"] == "media-1"
        assert messages[1]["caption"] == "look"
        assert statuses == [{"messageId": "m0", "status": "read", "recipient": "15550001", "timestamp": None}]

    @pytest.mark.asyncio
    async def test_handle_inbound_queues_messages(self, mock_bot, recorder):
        dispatcher = AsyncMock()
        dispatcher.add_whatsapp_message_job.return_value = {"success": True, "jobId": "1"}
        mock_bot.attach_dispatcher(dispatcher)

        result = await mock_bot.handle_inbound(_webhook(
            {"id": "m1", "from": "15550001", "type": "text", "text": {"body": "hello"}},
            statuses=[{"id": "m0", "status": "delivered"}],
        ))

        assert result == {"messages": 1, "queued": 1, "statuses": 1}
        queued = dispatcher.add_whatsapp_message_job.await_args.args[0]
        assert queued["messageId"] == "m1"
        event_types = [b["type"] for b in recorder.bodies("/api/whatsapp/events")]
        assert "message_ack" in event_types
        assert "message_received" in event_types


# ──────────────────────────────────────────────────────────────
#  Commands and outbound
# ──────────────────────────────────────────────────────────────

class TestOutbound:
    @pytest.mark.asyncio
    async def test_ping_command_replies(self, mock_bot):
        await mock_bot.initialize()
        mock_bot.send_message = AsyncMock(return_value={"success": True})
        await mock_bot.handle_incoming_message({
            "messageId": "m1", "from": "15550001", "type": "text", "body": "!ping",
        })
        mock_bot.send_message.assert_awaited_once_with("15550001", "Pong!")

    @pytest.mark.asyncio
    async def test_send_text_normalizes_number(self, cloud_bot, graph):
        await cloud_bot.initialize()
        result = await cloud_bot.send_message("+1 (555) 000-1", "hi")
        assert result["success"] is True
        assert result["messageId"] == "wamid.1"
        assert graph.sent[0]["to"] == "15550001"
        assert graph.sent[0]["text"] == {"body": "hi"}

    @pytest.mark.asyncio
    async def test_send_media(self, cloud_bot, graph):
        await cloud_bot.initialize()
        result = await cloud_bot.send_media_message("15550001", "https://cdn.test/a.png", "caption")
        assert result["success"] is True
        assert graph.sent[0]["image"] == {"link": "https://cdn.test/a.png", "caption": "caption"}

        bad = await cloud_bot.send_media_message("15550001", "https://cdn.test/a.zip", media_type="archive")
        assert bad["success"] is False

    @pytest.mark.asyncio
    async def test_send_before_ready_fails(self, cloud_bot):
        result = await cloud_bot.send_message("15550001", "hi")
        assert result == {"success": False, "error": "WhatsApp client is not ready"}

    @pytest.mark.asyncio
    async def test_process_media_relays_to_webservice(self, mock_bot, recorder):
        await mock_bot.initialize()
        result = await mock_bot.process_media_message({"messageId": "m2", "mediaId": "media-1",
                                                       "mimeType": "image/jpeg"})
        assert result["success"] is True
        body = recorder.bodies("/api/worker/jobs")[0]
        assert body["type"] == "process-media"
        assert body["data"]["messageId"] == "m2"
        assert body["data"]["mediaSize"] == 0

        missing = await mock_bot.process_media_message({"messageId": "m3"})
        assert missing == {"success": False, "error": "Message has no media"}
