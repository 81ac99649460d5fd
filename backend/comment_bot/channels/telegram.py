"""
Telegram Bot API Integration.
Parses webhook updates into channel-neutral events and delivers replies.
"""

import hmac
import logging
from typing import Any, Dict, List, Optional

import httpx

from ..models.events import EventKind, InboundEvent, Reply
from ..models.user import UserProfile

logger = logging.getLogger(__name__)

# Telegram rejects longer messages
MAX_MESSAGE_LENGTH = 4096


class TelegramBot:
    """
    Telegram bot client for sending messages and acknowledging button presses.
    """

    API_URL = "https://api.telegram.org/bot{token}/{method}"

    def __init__(self, token: str, webhook_secret: Optional[str] = None, timeout: float = 30.0):
        """
        Initialize Telegram bot.

        Args:
            token: Bot token from @BotFather
            webhook_secret: Expected X-Telegram-Bot-Api-Secret-Token header value
            timeout: HTTP timeout in seconds
        """
        self.token = token
        self.webhook_secret = webhook_secret
        self.timeout = timeout

    def _url(self, method: str) -> str:
        return self.API_URL.format(token=self.token, method=method)

    async def _call(self, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(self._url(method), json=payload)
            resp.raise_for_status()
            return resp.json()

    async def send_message(self, chat_id: str, reply: Reply) -> Dict[str, Any]:
        """
        Send a reply, with its inline keyboard if it has buttons.

        Args:
            chat_id: Target Telegram chat id
            reply: Reply to render
        """
        return await self._call("sendMessage", self.render_reply(chat_id, reply))

    async def answer_callback_query(self, callback_query_id: str) -> Dict[str, Any]:
        """Stop the loading indicator on a pressed inline button."""
        return await self._call("answerCallbackQuery", {"callback_query_id": callback_query_id})

    async def deliver(self, event: InboundEvent, replies: List[Reply]) -> None:
        if event.callback_id:
            try:
                await self.answer_callback_query(event.callback_id)
            except httpx.HTTPError as e:
                logger.warning(f"answerCallbackQuery failed: {e}")
        for reply in replies:
            await self.send_message(event.conversation_id, reply)

    def verify_secret(self, header_value: Optional[str]) -> bool:
        """
        Check the webhook secret token header.

        Returns:
            True if no secret is configured or the header matches
        """
        if not self.webhook_secret:
            return True
        return hmac.compare_digest(header_value or "", self.webhook_secret)

    @staticmethod
    def render_reply(chat_id: str, reply: Reply) -> Dict[str, Any]:
        text = reply.text
        if len(text) > MAX_MESSAGE_LENGTH:
            text = text[:MAX_MESSAGE_LENGTH - 3] + "..."
        payload: Dict[str, Any] = {"chat_id": chat_id, "text": text}
        if reply.buttons:
            payload["reply_markup"] = {
                "inline_keyboard": [
                    [{"text": b.label, "callback_data": b.action} for b in row]
                    for row in reply.buttons
                ]
            }
        return payload

    @staticmethod
    def parse_update(update: Dict[str, Any]) -> Optional[InboundEvent]:
        """
        Parse a Telegram update into an InboundEvent.

        Handles text messages (commands and plain text) and callback queries.
        Other update types return None.
        """
        if "callback_query" in update:
            query = update["callback_query"]
            sender = query.get("from", {})
            message = query.get("message") or {}
            chat = message.get("chat") or {}
            return InboundEvent(
                external_user_id=str(sender.get("id", "")),
                conversation_id=str(chat.get("id", sender.get("id", ""))),
                kind=EventKind.ACTION,
                action=query.get("data", ""),
                callback_id=str(query.get("id", "")) or None,
                profile=_profile(sender),
            )

        message = update.get("message") or update.get("edited_message")
        if not message or "text" not in message:
            return None

        sender = message.get("from", {})
        chat = message.get("chat", {})
        text: str = message["text"]
        base = dict(
            external_user_id=str(sender.get("id", "")),
            conversation_id=str(chat.get("id", "")),
            profile=_profile(sender),
        )

        if text.startswith("/"):
            head, _, rest = text[1:].partition(" ")
            command = head.split("@", 1)[0].lower()
            return InboundEvent(kind=EventKind.COMMAND, command=command, text=rest.strip() or None, **base)

        return InboundEvent(kind=EventKind.TEXT, text=text, **base)


def _profile(sender: Dict[str, Any]) -> UserProfile:
    return UserProfile(
        username=sender.get("username"),
        first_name=sender.get("first_name"),
        last_name=sender.get("last_name"),
    )
