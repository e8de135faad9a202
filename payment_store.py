"""
Payment Store

Log of payments keyed by transaction hash:
- upsert() is idempotent (insert-or-replace on tx_hash)
- list_by_address() merges sent and received history, capped per direction
- scheduler queries: stale pending payments and unnotified confirmations
- receipts with a shareable link, created on demand
"""

import logging
from typing import List, Optional, Tuple

from database import Database
from errors import NotFound, ValidationError
from models import (
    PaymentRecord,
    ReceiptRecord,
    PAYMENT_STATUSES,
    now_ts,
    validate_address,
    validate_tx_hash,
)

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 50  # per direction


class PaymentStore:

    def __init__(self, db: Database, history_limit: int = HISTORY_LIMIT):
        self.db = db
        self.history_limit = history_limit

    @staticmethod
    def validate(record: PaymentRecord) -> PaymentRecord:
        validate_tx_hash(record.tx_hash)
        validate_address(record.from_address, "fromAddress")
        validate_address(record.to_address, "toAddress")
        validate_address(record.token_address, "tokenAddress")
        for name, value in (("fromUsername", record.from_username),
                            ("toUsername", record.to_username),
                            ("memo", record.memo)):
            if value is not None and not isinstance(value, str):
                raise ValidationError(f"Invalid {name}: expected a string")
        if record.status not in PAYMENT_STATUSES:
            raise ValidationError(f"Invalid status: {record.status}")
        if record.amount < 0 or record.fee < 0:
            raise ValidationError("Amount and fee must not be negative")
        if record.fee > record.amount:
            raise ValidationError("Fee cannot exceed amount")
        return record

    async def upsert(self, record: PaymentRecord) -> PaymentRecord:
        """
        Insert or replace by tx_hash.

        Repeating the call with the same payload leaves exactly one row and
        keeps the first created_at and the notification bookkeeping.
        """
        self.validate(record)
        record.tx_hash = record.tx_hash.lower()
        await self.db.upsert_payment(record)
        logger.info(f"Stored payment {record.tx_hash[:12]}... ({record.status})")
        return await self.get(record.tx_hash)

    async def get(self, tx_hash: str) -> PaymentRecord:
        """Stored payment or NotFound."""
        record = await self.find(tx_hash)
        if record is None:
            raise NotFound("Payment not found")
        return record

    async def find(self, tx_hash: str) -> Optional[PaymentRecord]:
        validate_tx_hash(tx_hash)
        return await self.db.get_payment(tx_hash.lower())

    async def list_by_address(self, address: str) -> List[Tuple[str, PaymentRecord]]:
        """
        Sent and received payments for an address, newest first.

        At most history_limit of each direction. A self-payment appears
        once as sent and once as received.
        """
        validate_address(address)
        sent = await self.db.list_payments_from(address, self.history_limit)
        received = await self.db.list_payments_to(address, self.history_limit)

        history = [("sent", record) for record in sent] + [("received", record) for record in received]
        history.sort(key=lambda item: item[1].created_at, reverse=True)
        return history

    async def set_status(self, tx_hash: str, status: str) -> bool:
        """Update the status; False when no payment has that hash."""
        if status not in PAYMENT_STATUSES:
            raise ValidationError(f"Invalid status: {status}")
        changed = await self.db.update_payment(tx_hash.lower(), status=status)
        if changed:
            logger.info(f"Payment {tx_hash[:12]}... -> {status}")
        return changed

    async def find_stale_pending(self, older_than: int, remind_every: int, limit: int, now: int = None) -> List[PaymentRecord]:
        """Pending for at least older_than seconds and not reminded in the last remind_every seconds."""
        now = now if now is not None else now_ts()
        return await self.db.list_stale_pending(
            created_before=now - older_than,
            reminded_before=now - remind_every,
            limit=limit
        )

    async def find_unnotified_confirmed(self, limit: int) -> List[PaymentRecord]:
        """Confirmed payments whose recipient was never alerted, oldest first."""
        return await self.db.list_unnotified_confirmed(limit)

    async def mark_notified(self, tx_hash: str, at: int = None) -> bool:
        """Record that the recipient alert went out (or can never go out)."""
        return await self.db.update_payment(tx_hash, notified_at=at if at is not None else now_ts())

    async def mark_reminded(self, tx_hash: str, at: int = None) -> bool:
        """Record the time of the latest sender reminder."""
        return await self.db.update_payment(tx_hash, reminded_at=at if at is not None else now_ts())

    async def create_receipt(self, tx_hash: str, app_url: str) -> Tuple[ReceiptRecord, PaymentRecord]:
        """Build (or rebuild) the shareable receipt of a stored payment."""
        payment = await self.get(tx_hash)
        receipt = ReceiptRecord(
            tx_hash=payment.tx_hash,
            share_link=f"{app_url.rstrip('/')}/receipt/{payment.tx_hash}"
        )
        await self.db.upsert_receipt(receipt)
        return receipt, payment
