"""
Unit tests for the Telegram channel and the webhook endpoint.
"""

from unittest.mock import AsyncMock

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from comment_bot.api.telegram_webhook import SECRET_HEADER, UpdateDeduplicator, router
from comment_bot.channels.telegram import MAX_MESSAGE_LENGTH, TelegramBot
from comment_bot.models.events import Button, EventKind, InboundEvent, Reply


def _message(text, user_id=11, chat_id=22):
    return {
        "update_id": 1000,
        "message": {
            "message_id": 5,
            "from": {"id": user_id, "first_name": "Olga", "username": "olga_k"},
            "chat": {"id": chat_id, "type": "private"},
            "text": text,
        },
    }


class TestTelegramBot:

    def test_init(self):
        bot = TelegramBot(token="123:abc", webhook_secret="s3cret", timeout=5)
        assert bot.token == "123:abc"
        assert bot.webhook_secret == "s3cret"
        assert bot._url("sendMessage") == "https://api.telegram.org/bot123:abc/sendMessage"

    def test_verify_secret(self):
        assert TelegramBot("t").verify_secret(None) is True
        bot = TelegramBot("t", webhook_secret="s3cret")
        assert bot.verify_secret("s3cret") is True
        assert bot.verify_secret("wrong") is False
        assert bot.verify_secret(None) is False

    def test_render_reply_with_keyboard(self):
        reply = Reply(
            text="Pick one",
            buttons=[[Button(label="1", action="select:1"), Button(label="2", action="select:2")]],
        )
        payload = TelegramBot.render_reply("22", reply)
        assert payload["chat_id"] == "22"
        assert payload["reply_markup"]["inline_keyboard"] == [[
            {"text": "1", "callback_data": "select:1"},
            {"text": "2", "callback_data": "select:2"},
        ]]

    def test_render_reply_truncates(self):
        payload = TelegramBot.render_reply("22", Reply(text="x" * (MAX_MESSAGE_LENGTH + 10)))
        assert len(payload["text"]) == MAX_MESSAGE_LENGTH
        assert payload["text"].endswith("...")
        assert "reply_markup" not in payload

    @pytest.mark.asyncio
    async def test_deliver_answers_callback_then_sends(self):
        bot = TelegramBot("t")
        bot._call = AsyncMock(return_value={"ok": True})
        event = InboundEvent(
            external_user_id="11", conversation_id="22", kind=EventKind.ACTION,
            action="rate:5", callback_id="cb1",
        )
        await bot.deliver(event, [Reply(text="a"), Reply(text="b")])

        methods = [call.args[0] for call in bot._call.call_args_list]
        assert methods == ["answerCallbackQuery", "sendMessage", "sendMessage"]

    @pytest.mark.asyncio
    async def test_deliver_survives_callback_failure(self):
        bot = TelegramBot("t")
        bot.answer_callback_query = AsyncMock(side_effect=httpx.ConnectError("down"))
        bot.send_message = AsyncMock(return_value={"ok": True})
        event = InboundEvent(
            external_user_id="11", conversation_id="22", kind=EventKind.ACTION, callback_id="cb1",
        )
        await bot.deliver(event, [Reply(text="a")])
        bot.send_message.assert_awaited_once()


class TestUpdateParsing:

    def test_plain_text(self):
        event = TelegramBot.parse_update(_message("Hello there"))
        assert event.kind == EventKind.TEXT
        assert event.text == "Hello there"
        assert event.external_user_id == "11"
        assert event.conversation_id == "22"
        assert event.profile.first_name == "Olga"
        assert event.profile.username == "olga_k"

    def test_command_with_bot_name_and_args(self):
        event = TelegramBot.parse_update(_message("/SetModel@comment_bot qwen-plus"))
        assert event.kind == EventKind.COMMAND
        assert event.command == "setmodel"
        assert event.text == "qwen-plus"

    def test_command_without_args(self):
        event = TelegramBot.parse_update(_message("/start"))
        assert event.command == "start"
        assert event.text is None

    def test_callback_query(self):
        update = {
            "update_id": 1001,
            "callback_query": {
                "id": "777",
                "from": {"id": 11, "first_name": "Olga"},
                "message": {"message_id": 6, "chat": {"id": 22}},
                "data": "rate:4",
            },
        }
        event = TelegramBot.parse_update(update)
        assert event.kind == EventKind.ACTION
        assert event.action == "rate:4"
        assert event.callback_id == "777"
        assert event.conversation_id == "22"

    def test_edited_message(self):
        update = _message("edited")
        update["edited_message"] = update.pop("message")
        assert TelegramBot.parse_update(update).text == "edited"

    @pytest.mark.parametrize("update", [
        {"update_id": 1},
        {"update_id": 2, "message": {"from": {"id": 1}, "chat": {"id": 1}, "photo": []}},
        {"update_id": 3, "channel_post": {"text": "hi"}},
    ])
    def test_unsupported_updates(self, update):
        assert TelegramBot.parse_update(update) is None


class TestUpdateDeduplicator:

    def test_seen(self):
        dedup = UpdateDeduplicator()
        assert dedup.seen(1) is False
        assert dedup.seen(1) is True

    def test_capacity(self):
        dedup = UpdateDeduplicator(capacity=2)
        for update_id in (1, 2, 3):
            dedup.seen(update_id)
        assert dedup.seen(1) is False
        assert dedup.seen(3) is True


@pytest.fixture
def webhook_app():
    app = FastAPI()
    app.include_router(router)
    bot = TelegramBot("t", webhook_secret="s3cret")
    bot.deliver = AsyncMock()
    orchestrator = AsyncMock()
    orchestrator.handle.return_value = [Reply(text="done")]
    app.state.telegram_bot = bot
    app.state.orchestrator = orchestrator
    app.state.telegram_updates = UpdateDeduplicator()
    return app


class TestTelegramWebhook:

    def test_not_configured(self):
        app = FastAPI()
        app.include_router(router)
        client = TestClient(app)
        assert client.post("/telegram/webhook", json=_message("hi")).status_code == 503

    def test_bad_secret(self, webhook_app):
        client = TestClient(webhook_app)
        response = client.post("/telegram/webhook", json=_message("hi"), headers={SECRET_HEADER: "nope"})
        assert response.status_code == 403
        webhook_app.state.orchestrator.handle.assert_not_called()

    def test_message_is_handled_and_delivered(self, webhook_app):
        client = TestClient(webhook_app)
        response = client.post("/telegram/webhook", json=_message("hi"), headers={SECRET_HEADER: "s3cret"})
        assert response.status_code == 200
        assert response.json() == {"ok": True}

        event = webhook_app.state.orchestrator.handle.call_args.args[0]
        assert event.text == "hi"
        delivered_event, replies = webhook_app.state.telegram_bot.deliver.call_args.args
        assert delivered_event is event
        assert replies[0].text == "done"

    def test_duplicate_update_is_ignored(self, webhook_app):
        client = TestClient(webhook_app)
        headers = {SECRET_HEADER: "s3cret"}
        client.post("/telegram/webhook", json=_message("hi"), headers=headers)
        client.post("/telegram/webhook", json=_message("hi"), headers=headers)
        assert webhook_app.state.orchestrator.handle.await_count == 1

    def test_failure_is_still_acknowledged(self, webhook_app):
        webhook_app.state.orchestrator.handle.side_effect = RuntimeError("boom")
        client = TestClient(webhook_app)
        response = client.post("/telegram/webhook", json=_message("hi"), headers={SECRET_HEADER: "s3cret"})
        assert response.status_code == 200
        webhook_app.state.telegram_bot.deliver.assert_not_called()

    def test_unsupported_update_is_acknowledged(self, webhook_app):
        client = TestClient(webhook_app)
        response = client.post("/telegram/webhook", json={"update_id": 5}, headers={SECRET_HEADER: "s3cret"})
        assert response.status_code == 200
        webhook_app.state.orchestrator.handle.assert_not_called()
