"""
Telegram Webhook API - Handles incoming updates from the Telegram bot.
"""

import logging
from collections import OrderedDict

from fastapi import APIRouter, HTTPException, Request

from ..core.logging_config import filter_sensitive_data

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/telegram", tags=["telegram"])

SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"


class UpdateDeduplicator:
    """Remembers the most recent update ids so redelivered updates are ignored."""

    def __init__(self, capacity: int = 1000):
        self.capacity = capacity
        self._seen: "OrderedDict[int, None]" = OrderedDict()

    def seen(self, update_id: int) -> bool:
        """Return True if the id was already processed; otherwise record it."""
        if update_id in self._seen:
            return True
        self._seen[update_id] = None
        while len(self._seen) > self.capacity:
            self._seen.popitem(last=False)
        return False


@router.post("/webhook")
async def telegram_webhook(request: Request):
    """
    Handle an incoming Telegram update.
    Always acknowledges processed updates so Telegram does not redeliver them.
    """
    state = request.app.state
    bot = getattr(state, "telegram_bot", None)
    if bot is None:
        raise HTTPException(status_code=503, detail="Telegram bot not configured")

    if not bot.verify_secret(request.headers.get(SECRET_HEADER)):
        raise HTTPException(status_code=403, detail="Invalid secret token")

    body = await request.json()
    logger.debug("Telegram update received", extra={"extra_fields": filter_sensitive_data(body)})

    update_id = body.get("update_id")
    if update_id is not None and state.telegram_updates.seen(update_id):
        return {"ok": True}

    event = bot.parse_update(body)
    if event is None or not event.external_user_id:
        return {"ok": True}

    try:
        replies = await state.orchestrator.handle(event)
        await bot.deliver(event, replies)
    except Exception:
        logger.exception(
            "Error delivering Telegram reply",
            extra={"extra_fields": {"update_id": update_id}},
        )

    return {"ok": True}
