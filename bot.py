"""
SendCash Telegram bot commands.

Thin handlers over the cache, the payment store and the chat directory.
Each command has a plain coroutine that returns the reply text (handle_*)
and an aiogram wrapper (cmd_*) that reads the message and answers.
"""

import html
import logging

from aiogram import Bot, Dispatcher
from aiogram.filters import Command
from aiogram.types import Message, BotCommand, MenuButtonCommands

from chat_directory import ChatDirectory
from errors import NotFound, SendCashError, ValidationError
from models import is_tx_hash
from notifications import NotificationFormatter
from payment_store import PaymentStore
from username_cache import UsernameCache

logger = logging.getLogger(__name__)

HISTORY_SHOWN = 10

HELP_TEXT = (
    "💸 <b>SendCash Bot</b>\n\n"
    "<b>Commands:</b>\n"
    "🔗 /link &lt;@username|address&gt; - Get payment alerts for a wallet\n"
    "🔎 /whois &lt;@username&gt; - Look up a wallet address\n"
    "📜 /history - Your recent transactions\n"
    "🧾 /receipt &lt;tx hash&gt; - Shareable receipt\n"
    "❓ /help - Show this help"
)


class SendCashBot:

    def __init__(
        self,
        bot: Bot,
        directory: ChatDirectory,
        cache: UsernameCache,
        store: PaymentStore,
        formatter: NotificationFormatter,
        app_url: str,
    ):
        self.bot = bot
        self.dp = Dispatcher()
        self.directory = directory
        self.cache = cache
        self.store = store
        self.formatter = formatter
        self.app_url = app_url

        self.setup_handlers()

    def setup_handlers(self):
        self.dp.message.register(self.cmd_start, Command("start"))
        self.dp.message.register(self.cmd_help, Command("help"))
        self.dp.message.register(self.cmd_link, Command("link"))
        self.dp.message.register(self.cmd_whois, Command("whois"))
        self.dp.message.register(self.cmd_history, Command("history"))
        self.dp.message.register(self.cmd_receipt, Command("receipt"))

    async def setup_bot_commands(self):
        """Set up the bot menu button with commands"""
        commands = [
            BotCommand(command="start", description="🚀 Start SendCash"),
            BotCommand(command="link", description="🔗 Link your wallet"),
            BotCommand(command="whois", description="🔎 Look up a username"),
            BotCommand(command="history", description="📜 Recent transactions"),
            BotCommand(command="receipt", description="🧾 Payment receipt"),
            BotCommand(command="help", description="❓ Show help"),
        ]
        await self.bot.set_my_commands(commands)
        await self.bot.set_chat_menu_button(menu_button=MenuButtonCommands())
        logger.info("Bot menu commands set up successfully")

    @staticmethod
    def command_arg(message: Message) -> str:
        parts = (message.text or "").split(maxsplit=1)
        return parts[1].strip() if len(parts) > 1 else ""

    async def reply(self, message: Message, handler, *args):
        try:
            text = await handler(*args)
        except (NotFound, ValidationError) as e:
            text = f"❌ {html.escape(e.message)}"
        except SendCashError as e:
            logger.error(f"Command failed for {message.from_user.id}: {e}")
            text = "⚠️ Something went wrong. Please try again later."
        await message.answer(text)

    # Command logic

    async def handle_start(self, user_id: int) -> str:
        user = await self.directory.register_chat(user_id)
        text = "👋 <b>Welcome to SendCash!</b>\n\nSend stablecoins to anyone by @username.\n\n"
        if user.wallet_address:
            text += f"🔗 Linked wallet: <code>{user.wallet_address}</code>\n\n"
        else:
            text += "Link your wallet with /link to get payment alerts.\n\n"
        return text + HELP_TEXT

    async def handle_link(self, user_id: int, arg: str) -> str:
        if not arg:
            return (
                "🔗 <b>Link a wallet</b>\n\n"
                "Usage:\n/link @username\n/link 0xYourAddress"
            )
        record = await self.cache.resolve_address(arg) if arg.startswith("0x") else await self.cache.resolve(arg)
        if record is None:
            # Unregistered address: link it without a username
            user = await self.directory.link_wallet(user_id, arg)
            return f"✅ Linked <code>{user.wallet_address}</code>\n\nYou'll be notified about incoming payments."

        await self.directory.link_wallet(user_id, record.address, record.username)
        return (
            f"✅ Linked @{html.escape(record.username)}\n"
            f"<code>{record.address}</code>\n\n"
            f"You'll be notified about incoming payments."
        )

    async def handle_whois(self, arg: str) -> str:
        if not arg:
            return "Usage: /whois @username"
        record = await self.cache.resolve(arg)
        premium = " ⭐" if record.is_premium else ""
        return f"👤 @{html.escape(record.username)}{premium}\n<code>{record.address}</code>"

    async def handle_history(self, user_id: int) -> str:
        user = await self.directory.get_user(user_id)
        if not user or not user.wallet_address:
            return "🔗 Link a wallet first with /link"
        history = await self.store.list_by_address(user.wallet_address)
        return self.formatter.format_history(history, limit=HISTORY_SHOWN)

    async def handle_receipt(self, arg: str) -> str:
        if not is_tx_hash(arg):
            return "Usage: /receipt 0x&lt;transaction hash&gt;"
        receipt, payment = await self.store.create_receipt(arg, self.app_url)
        return self.formatter.format_receipt(receipt, payment)

    # aiogram wrappers

    async def cmd_start(self, message: Message):
        await self.reply(message, self.handle_start, message.from_user.id)
        logger.info(f"User {message.from_user.id} started the bot")

    async def cmd_help(self, message: Message):
        await message.answer(HELP_TEXT)

    async def cmd_link(self, message: Message):
        await self.reply(message, self.handle_link, message.from_user.id, self.command_arg(message))

    async def cmd_whois(self, message: Message):
        await self.reply(message, self.handle_whois, self.command_arg(message))

    async def cmd_history(self, message: Message):
        await self.reply(message, self.handle_history, message.from_user.id)

    async def cmd_receipt(self, message: Message):
        await self.reply(message, self.handle_receipt, self.command_arg(message))

    async def start_polling(self):
        await self.setup_bot_commands()
        logger.info("Starting Telegram polling...")
        await self.dp.start_polling(self.bot, allowed_updates=["message"], handle_signals=False)
