"""
Links Telegram chats to wallet addresses (telegram_users table).

The scheduler asks it where to deliver a payment alert; the bot's /start and
/link commands fill it in.
"""

import logging
from typing import Optional

from database import Database
from models import TelegramUser, validate_address

logger = logging.getLogger(__name__)


class ChatDirectory:

    def __init__(self, db: Database):
        self.db = db

    async def register_chat(self, telegram_id: int) -> TelegramUser:
        """Insert the chat if it is new; existing links are left alone."""
        user = await self.db.get_telegram_user(telegram_id)
        if user:
            return user
        user = TelegramUser(telegram_id=telegram_id)
        await self.db.upsert_telegram_user(user)
        logger.info(f"New Telegram user {telegram_id}")
        return user

    async def link_wallet(self, telegram_id: int, address: str, username: Optional[str] = None) -> TelegramUser:
        validate_address(address)
        user = await self.db.get_telegram_user(telegram_id) or TelegramUser(telegram_id=telegram_id)
        user.wallet_address = address
        user.username = username
        await self.db.upsert_telegram_user(user)
        logger.info(f"Linked Telegram user {telegram_id} to {address}")
        return user

    async def get_user(self, telegram_id: int) -> Optional[TelegramUser]:
        return await self.db.get_telegram_user(telegram_id)

    async def chat_for_address(self, address: str) -> Optional[int]:
        if not address:
            return None
        user = await self.db.get_telegram_user_by_wallet(address)
        return user.telegram_id if user else None
