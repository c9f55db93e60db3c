from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, List, Optional

from aiogram import Bot, F, Router
from aiogram.exceptions import TelegramAPIError
from aiogram.filters import Command
from aiogram.types import CallbackQuery, InlineKeyboardButton, InlineKeyboardMarkup, Message

from csvpay.bot.render import render_preview, render_results
from csvpay.payman.errors import InvalidCredential, NotAuthenticated
from csvpay.services.csv_import import CsvFormatError, parse_payments_csv
from csvpay.services.dispatcher import get_dispatcher
from csvpay.services.models import PaymentRequest, PaymentResult
from csvpay.services.session_manager import get_session_manager
from csvpay.utils.intent_store import clear_intent, pending_batch_key, pop_pending_batch, save_pending_batch

logger = logging.getLogger(__name__)

router = Router()

MAX_UPLOAD_BYTES = 1024 * 1024
CSV_MIME_TYPES = {"text/csv", "application/csv"}
MAX_ROW_ERRORS_SHOWN = 10


def _is_csv(file_name: str | None, mime_type: str | None) -> bool:
    if file_name and file_name.lower().endswith(".csv"):
        return True
    return bool(mime_type and mime_type.lower() in CSV_MIME_TYPES)


def _process_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        inline_keyboard=[[
            InlineKeyboardButton(text="▶️ Process payments", callback_data="pay:run"),
            InlineKeyboardButton(text="✖️ Discard", callback_data="pay:discard"),
        ]]
    )


@router.message(F.document)
async def handle_csv_upload(message: Message, bot: Bot) -> None:
    doc = message.document
    if not message.from_user or doc is None:
        return
    if not _is_csv(doc.file_name, doc.mime_type):
        await message.answer("Please upload a valid CSV file.")
        return
    if doc.file_size and doc.file_size > MAX_UPLOAD_BYTES:
        await message.answer("The CSV file is too large (limit 1 MB).")
        return
    try:
        await get_session_manager().ensure_session()
    except NotAuthenticated:
        await message.answer("🔌 Connect to Payman first with /connect.")
        return
    except InvalidCredential:
        await message.answer("⚠️ The stored Payman token is invalid. Use /connect to authorize again.")
        return

    buf = await bot.download(doc)
    data = buf.read() if buf is not None else b""
    try:
        requests = parse_payments_csv(data)
    except CsvFormatError as e:
        lines = [f"❌ Failed to parse CSV file: {e}"]
        for line_no, reason in e.row_errors[:MAX_ROW_ERRORS_SHOWN]:
            lines.append(f"line {line_no}: {reason}")
        hidden = len(e.row_errors) - MAX_ROW_ERRORS_SHOWN
        if hidden > 0:
            lines.append(f"… and {hidden} more")
        await message.answer("\n".join(lines))
        return

    await save_pending_batch(message.from_user.id, requests, doc.file_name or "")
    logger.info("csv parsed", extra={"extra": {"uid": message.from_user.id, "rows": len(requests)}})
    await message.answer(render_preview(requests, doc.file_name or ""), reply_markup=_process_keyboard())


async def run_batch(batch: List[PaymentRequest], reply: Callable[[str], Awaitable[Any]]) -> Optional[List[PaymentResult]]:
    await reply(f"Processing {len(batch)} payment(s)... Use /cancel to stop after the current row.")
    try:
        results = await get_dispatcher().process(batch)
    except Exception as e:
        logger.exception("batch failed unexpectedly")
        await reply(f"❌ Error processing payments: {e}")
        return None
    for text in render_results(results):
        await reply(text)
    return results


@router.callback_query(F.data == "pay:run")
async def cb_process_payments(cb: CallbackQuery) -> None:
    msg = cb.message
    if not isinstance(msg, Message):
        await cb.answer("This upload is too old. Send the CSV file again.", show_alert=True)
        return
    # Popping the batch first makes a second click find nothing to run
    batch = await pop_pending_batch(cb.from_user.id)
    if not batch:
        await cb.answer("Nothing to process. Upload a CSV file first.", show_alert=True)
        return
    await cb.answer("Processing payments...")
    try:
        await msg.edit_reply_markup(reply_markup=None)
    except TelegramAPIError as e:
        logger.debug("could not remove keyboard: %s", e)

    await run_batch(batch, msg.answer)


@router.callback_query(F.data == "pay:discard")
async def cb_discard(cb: CallbackQuery) -> None:
    await clear_intent(pending_batch_key(cb.from_user.id))
    await cb.answer("Discarded")
    if isinstance(cb.message, Message):
        try:
            await cb.message.edit_reply_markup(reply_markup=None)
        except TelegramAPIError as e:
            logger.debug("could not remove keyboard: %s", e)
        await cb.message.answer("Ready to process another file.")


@router.message(Command("cancel"))
async def handle_cancel(message: Message) -> None:
    cancelled = get_dispatcher().cancel_all()
    if cancelled:
        await message.answer("⏹ Stopping after the current row. Remaining rows will be reported as cancelled.")
    else:
        await message.answer("No payment batch is running.")
