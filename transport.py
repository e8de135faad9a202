"""
Bot Transport

Delivers a formatted message to a Telegram chat. Built once at startup and
handed to the scheduler and the bot handlers.
"""

import logging

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError, TelegramForbiddenError

from errors import ExternalServiceError

logger = logging.getLogger(__name__)


class BotTransport:
    """Anything with `async send_message(chat_id, text)`."""

    async def send_message(self, chat_id: int, text: str) -> None:
        raise NotImplementedError


class TelegramTransport(BotTransport):

    def __init__(self, bot: Bot):
        self.bot = bot

    async def send_message(self, chat_id: int, text: str) -> None:
        try:
            await self.bot.send_message(chat_id, text)
        except TelegramForbiddenError as e:
            # User blocked the bot
            logger.info(f"Chat {chat_id} blocked the bot: {e}")
            raise ExternalServiceError(f"Chat {chat_id} unreachable: {e}") from e
        except TelegramAPIError as e:
            logger.error(f"Failed to send message to {chat_id}: {e}")
            raise ExternalServiceError(f"Telegram send failed for {chat_id}: {e}") from e
