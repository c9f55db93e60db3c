from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict

from aiogram import BaseMiddleware
from aiogram.exceptions import TelegramAPIError
from aiogram.types import CallbackQuery, Message

from csvpay.services.security import get_admin_ids, is_admin_uid

logger = logging.getLogger(__name__)

DENIED_TEXT = "⛔️ This bot only accepts payments from its operators."


class AdminGateMiddleware(BaseMiddleware):
    """Blocks every message and callback from users outside TELEGRAM_ADMIN_IDS."""

    def __init__(self) -> None:
        self._warned_empty = False

    async def __call__(
        self,
        handler: Callable[[Any, Dict[str, Any]], Awaitable[Any]],
        event: Message | CallbackQuery,
        data: Dict[str, Any],
    ) -> Any:
        user = getattr(event, "from_user", None)
        if user is not None and is_admin_uid(user.id):
            return await handler(event, data)

        if not self._warned_empty and not get_admin_ids():
            logger.warning("TELEGRAM_ADMIN_IDS is empty; every update is rejected")
            self._warned_empty = True
        logger.info("update rejected by admin gate", extra={"extra": {"uid": getattr(user, "id", None)}})
        try:
            await event.answer(DENIED_TEXT)
        except TelegramAPIError as e:
            logger.debug("admin gate reply failed: %s", e)
        return None
