"""
Payment Notifications

Turns payments into Telegram messages (HTML parse mode):
- received-payment alerts with net amount after fee
- reminders for payments still pending
- receipts and short history listings for bot commands

All amount math is integer math on the smallest token unit. Output depends
only on the inputs, so the same payment always renders the same text.
"""

import html
import logging
from typing import Dict, List, Optional, Tuple

import config
from models import PaymentEvent, PaymentRecord, ReceiptRecord, now_ts, short_address

logger = logging.getLogger(__name__)

DIVIDER = "━━━━━━━━━━━━━━━━━━━━"


class TokenTable:
    """Static token metadata keyed by contract address (case-insensitive)."""

    def __init__(self, tokens: Dict[str, Dict] = None, default_decimals: int = config.DEFAULT_TOKEN_DECIMALS):
        tokens = tokens if tokens is not None else config.TOKENS
        self.default_decimals = default_decimals
        self.by_address: Dict[str, Dict] = {}
        for symbol, token in tokens.items():
            address = token.get("address")
            if address:
                self.by_address[address.lower()] = {"symbol": token.get("symbol", symbol), **token}

    def lookup(self, token_address: str) -> Tuple[str, int]:
        """(symbol, decimals); unknown tokens are 'TOKEN' with default decimals."""
        token = self.by_address.get((token_address or "").lower())
        if not token:
            return "TOKEN", self.default_decimals
        return token["symbol"], int(token.get("decimals", self.default_decimals))


def format_units(raw: int, decimals: int, places: int = 2) -> str:
    """
    Render an integer amount of smallest units as a fixed-point string,
    rounding half up at `places` digits. 1990000 with 6 decimals -> '1.99'.
    """
    raw = int(raw)
    sign = "-" if raw < 0 else ""
    raw = abs(raw)

    scale = 10 ** decimals
    quantum = 10 ** places
    scaled, remainder = divmod(raw * quantum, scale)
    if remainder * 2 >= scale:
        scaled += 1

    whole, fraction = divmod(scaled, quantum)
    if places == 0:
        return f"{sign}{whole}"
    return f"{sign}{whole}.{fraction:0{places}d}"


class NotificationFormatter:

    def __init__(self, tokens: TokenTable = None, explorer_tx_url: str = config.EXPLORER_TX_URL):
        self.tokens = tokens or TokenTable()
        self.explorer_tx_url = explorer_tx_url

    def explorer_link(self, tx_hash: str) -> str:
        return self.explorer_tx_url.format(tx_hash=tx_hash)

    def format_token_amount(self, raw: int, token_address: str, places: int = 2) -> str:
        _, decimals = self.tokens.lookup(token_address)
        return format_units(raw, decimals, places)

    @staticmethod
    def display_name(username: Optional[str], address: str) -> str:
        if username:
            return f"@{html.escape(username.lstrip('@'))}"
        return short_address(address)

    def format_payment(self, event: PaymentEvent) -> str:
        """Alert for the recipient of a confirmed payment."""
        symbol, decimals = self.tokens.lookup(event.token_address)
        amount_after_fee = int(event.amount) - int(event.fee)

        gross = format_units(event.amount, decimals)
        fee = format_units(event.fee, decimals)
        net = format_units(amount_after_fee, decimals)

        lines = [
            "🔔 <b>NEW PAYMENT ALERT</b> 🔔",
            "",
            "💰 <b>You received a payment!</b>",
            "",
            DIVIDER,
            f"👤 <b>From:</b> {self.display_name(event.from_username, event.from_address)}",
            f"💵 <b>Amount:</b> ${gross} {symbol}",
        ]
        if event.memo:
            lines.append(f"📝 <b>Note:</b> {html.escape(event.memo)}")
        lines += [
            f"📊 <b>Fee:</b> ${fee} {symbol}",
            f"✅ <b>You received:</b> ${net} {symbol}",
            DIVIDER,
            "",
            f"🔗 <a href=\"{self.explorer_link(event.tx_hash)}\">View Transaction on Explorer</a>",
            f"📋 Hash: <code>{event.tx_hash[:16]}...</code>",
        ]
        return "\n".join(lines)

    def format_pending_reminder(self, record: PaymentRecord, now: int = None) -> str:
        """Reminder for the sender of a payment that is still not confirmed."""
        now = now if now is not None else now_ts()
        symbol, decimals = self.tokens.lookup(record.token_address)
        minutes = max(0, now - record.created_at) // 60

        return "\n".join([
            "⏳ <b>Payment still pending</b>",
            "",
            f"Your payment to {self.display_name(record.to_username, record.to_address)} "
            f"of ${format_units(record.amount, decimals)} {symbol} "
            f"has not been confirmed after {minutes} min.",
            "",
            f"🔗 <a href=\"{self.explorer_link(record.tx_hash)}\">Check it on the explorer</a>",
            f"📋 Hash: <code>{record.tx_hash[:16]}...</code>",
        ])

    def format_receipt(self, receipt: ReceiptRecord, payment: PaymentRecord) -> str:
        symbol, decimals = self.tokens.lookup(payment.token_address)
        return "\n".join([
            "🧾 <b>Payment Receipt</b>",
            "",
            f"<b>From:</b> {self.display_name(payment.from_username, payment.from_address)}",
            f"<b>To:</b> {self.display_name(payment.to_username, payment.to_address)}",
            f"<b>Amount:</b> ${format_units(payment.amount, decimals)} {symbol}",
            f"<b>Status:</b> {payment.status}",
            "",
            f"🔗 {receipt.share_link}",
        ])

    def format_history(self, history: List[Tuple[str, PaymentRecord]], limit: int = 10) -> str:
        if not history:
            return "📭 <b>No transactions yet</b>"

        lines = ["📜 <b>Recent transactions</b>", ""]
        for role, record in history[:limit]:
            symbol, decimals = self.tokens.lookup(record.token_address)
            amount = format_units(record.amount, decimals)
            if role == "sent":
                counterpart = self.display_name(record.to_username, record.to_address)
                lines.append(f"⬆️ Sent ${amount} {symbol} to {counterpart}")
            else:
                counterpart = self.display_name(record.from_username, record.from_address)
                lines.append(f"⬇️ Received ${amount} {symbol} from {counterpart}")
        return "\n".join(lines)
