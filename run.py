"""
Main Entry Point for SendCash

Starts the complete backend on one event loop:
1. Storage (SQLite or JSON files) and the Base chain client
2. REST API for the web app
3. Payment scheduler (alerts and pending reminders)
4. Telegram bot polling

Without TELEGRAM_BOT_TOKEN only the REST API runs.
"""

import asyncio
import logging

from aiogram import Bot
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode

import config
from api_server import APIServer
from bot import SendCashBot
from chain import ChainClient
from chat_directory import ChatDirectory
from database import create_database
from notifications import NotificationFormatter
from payment_store import PaymentStore
from scheduler import PaymentScheduler
from transport import TelegramTransport
from username_cache import UsernameCache

# Configure logging
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=logging.INFO,
    handlers=[
        logging.FileHandler(config.LOG_FILE),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)


async def main():
    logger.info("=" * 60)
    logger.info("SENDCASH - Telegram payments backend")
    logger.info("=" * 60)

    db = create_database(config.DATABASE_BACKEND, config.DATABASE_PATH, config.JSON_DATA_DIR)
    await db.connect()
    logger.info(f"✓ Storage ready ({config.DATABASE_BACKEND})")

    chain = ChainClient(
        config.BASE_RPC_FALLBACKS,
        registry_address=config.CONTRACTS["USERNAME_REGISTRY"],
        send_cash_address=config.CONTRACTS["SEND_CASH"],
        timeout=config.RPC_TIMEOUT,
    )
    if not chain.registry_configured:
        logger.warning("USERNAME_REGISTRY_ADDRESS not set, username lookups use the cache only")

    cache = UsernameCache(db, registry=chain)
    store = PaymentStore(db)
    formatter = NotificationFormatter()
    directory = ChatDirectory(db)

    bot = None
    sendcash_bot = None
    scheduler = None
    if config.TELEGRAM_BOT_TOKEN:
        bot = Bot(
            token=config.TELEGRAM_BOT_TOKEN,
            default=DefaultBotProperties(parse_mode=ParseMode.HTML)
        )
        transport = TelegramTransport(bot)
        scheduler = PaymentScheduler(
            store,
            formatter,
            transport,
            chat_resolver=directory.chat_for_address,
            chain=chain,
            interval=config.SCHEDULER_INTERVAL_SECONDS,
            pending_after=config.PENDING_REMINDER_AFTER_SECONDS,
            remind_every=config.REMINDER_REPEAT_SECONDS,
            batch_limit=config.SCHEDULER_BATCH_LIMIT,
        )
        sendcash_bot = SendCashBot(bot, directory, cache, store, formatter, config.APP_URL)
    else:
        logger.warning("TELEGRAM_BOT_TOKEN not set, bot and payment notifications disabled")

    api = APIServer(cache, store, config.APP_URL, chain=chain, scheduler=scheduler, port=config.PORT)

    try:
        await api.start()

        if sendcash_bot is None:
            # API only; serve until interrupted
            await asyncio.Event().wait()
            return

        scheduler.start()
        logger.info("")
        logger.info("Available Commands:")
        logger.info("  /start - Register for payment alerts")
        logger.info("  /link - Link a wallet or @username")
        logger.info("  /whois - Look up a username")
        logger.info("  /history - Recent transactions")
        logger.info("  /receipt - Shareable receipt")
        logger.info("=" * 60)

        # Run bot (this blocks)
        await sendcash_bot.start_polling()

    finally:
        logger.info("Shutting down...")
        if scheduler is not None:
            await scheduler.stop(timeout=30)
        await api.stop()
        if bot is not None:
            await bot.session.close()
        await db.close()
        logger.info("Goodbye!")


def cli():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()
