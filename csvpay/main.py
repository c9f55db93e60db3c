import asyncio
import logging

from aiogram import Bot, Dispatcher

from csvpay.bot.handlers import connect as connect_handlers
from csvpay.bot.handlers import payments as payments_handlers
from csvpay.bot.handlers import start as start_handlers
from csvpay.bot.middlewares.admin_gate import AdminGateMiddleware
from csvpay.bot.middlewares.correlation import CorrelationMiddleware
from csvpay.config import settings
from csvpay.db.session import create_all, dispose_engine
from csvpay.logging_config import setup_logging
from csvpay.services.session_manager import get_session_manager


def build_dispatcher() -> Dispatcher:
    dp = Dispatcher()

    # Correlation first so the gate's own log lines carry the update id
    corr = CorrelationMiddleware()
    dp.message.outer_middleware(corr)
    dp.callback_query.outer_middleware(corr)

    gate = AdminGateMiddleware()
    dp.message.middleware(gate)
    dp.callback_query.middleware(gate)

    dp.include_router(start_handlers.router)
    dp.include_router(connect_handlers.router)
    dp.include_router(payments_handlers.router)
    return dp


async def main() -> None:
    setup_logging()

    token = settings.telegram_bot_token
    if not token:
        logging.error("TELEGRAM_BOT_TOKEN is not set. Put it in the .env file.")
        raise SystemExit(1)

    await create_all()

    bot = Bot(token=token)
    dp = build_dispatcher()

    logging.info("Starting Telegram bot polling ...")
    await bot.delete_webhook(drop_pending_updates=True)
    try:
        await dp.start_polling(bot)
    finally:
        # In-memory handle only; the stored token survives restarts
        await get_session_manager().aclose()
        await dispose_engine()
        await bot.session.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        pass
