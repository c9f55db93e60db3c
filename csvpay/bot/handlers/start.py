from __future__ import annotations

from aiogram import Router
from aiogram.filters import Command, CommandStart
from aiogram.types import Message

from csvpay.payman.errors import InvalidCredential, NotAuthenticated
from csvpay.services.dispatcher import get_dispatcher
from csvpay.services.session_manager import get_session_manager

router = Router()

HELP_TEXT = (
    "💸 CSV Pay Machine\n"
    "Send money to many payees with a single CSV upload.\n\n"
    "1. /connect — link your Payman account\n"
    "2. Upload a .csv file with columns: payee, amount, wallet (first row is the header)\n"
    "3. Press “Process payments” and wait for the results\n\n"
    "/status — connection status\n"
    "/cancel — stop the running batch after the current row\n"
    "/disconnect — forget the Payman token"
)


async def connection_status() -> str:
    try:
        await get_session_manager().ensure_session()
    except NotAuthenticated:
        return "🔌 Not connected to Payman. Use /connect."
    except InvalidCredential:
        return "⚠️ The stored Payman token is invalid. Use /connect to authorize again."
    status = "✅ Connected to Payman."
    if get_dispatcher().is_running:
        status += "\n⏳ A payment batch is running."
    return status


@router.message(CommandStart())
async def handle_start(message: Message) -> None:
    await message.answer(HELP_TEXT + "\n\n" + await connection_status())


@router.message(Command("help"))
async def handle_help(message: Message) -> None:
    await message.answer(HELP_TEXT)


@router.message(Command("status"))
async def handle_status(message: Message) -> None:
    await message.answer(await connection_status())
