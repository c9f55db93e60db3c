from __future__ import annotations

import logging

from aiogram import Router
from aiogram.exceptions import TelegramAPIError
from aiogram.filters import Command
from aiogram.types import Message

from csvpay.config import settings
from csvpay.payman.errors import PaymanError
from csvpay.payman.oauth import authorize_url, exchange_code, extract_code
from csvpay.services.dispatcher import get_dispatcher
from csvpay.services.session_manager import get_session_manager
from csvpay.utils.intent_store import clear_intent, pending_batch_key

logger = logging.getLogger(__name__)

router = Router()


@router.message(Command("connect"))
async def handle_connect(message: Message) -> None:
    if not settings.payman_client_id or not settings.payman_redirect_uri:
        await message.answer("Payman OAuth is not configured (PAYMAN_CLIENT_ID / PAYMAN_REDIRECT_URI).")
        return
    uid = message.from_user.id if message.from_user else 0
    await message.answer(
        "Open the link below and approve access. You will be redirected to a page whose address "
        "contains ?code=…\n"
        "Then send: /code <CODE> (or paste the whole redirect address).\n\n"
        f"{authorize_url(state=str(uid))}"
    )


@router.message(Command("code"))
async def handle_code(message: Message) -> None:
    parts = (message.text or "").split(maxsplit=1)
    code = extract_code(parts[1]) if len(parts) == 2 else None
    # The code is single-use but still a secret; keep it out of the chat history
    try:
        await message.delete()
    except TelegramAPIError as e:
        logger.debug("could not delete /code message: %s", e)
    if not code:
        await message.answer("Usage: /code <CODE_OR_REDIRECT_URL>")
        return

    await message.answer("Connecting to Payman...")
    try:
        token = await exchange_code(code)
        await get_session_manager().connect(token.access_token)
    except PaymanError as e:
        logger.warning("Payman connect failed: %s", e)
        await message.answer(f"❌ Failed to connect to Payman: {e}")
        return
    await message.answer("✅ Successfully connected to Payman!\nYou can now upload your CSV file to process payments.")


@router.message(Command("disconnect"))
async def handle_disconnect(message: Message) -> None:
    await get_dispatcher().disconnect()
    if message.from_user:
        await clear_intent(pending_batch_key(message.from_user.id))
    await message.answer("Disconnected from Payman.")
