"""
Records kept by the SendCash backend and the input checks that guard them.
"""

import re
import time
from dataclasses import dataclass, asdict, field
from typing import Dict, Optional

from errors import ValidationError

STATUS_PENDING = "pending"
STATUS_CONFIRMED = "confirmed"
STATUS_FAILED = "failed"
PAYMENT_STATUSES = (STATUS_PENDING, STATUS_CONFIRMED, STATUS_FAILED)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

_ADDRESS_RE = re.compile(r'^0x[0-9a-fA-F]{40}$')
_TX_HASH_RE = re.compile(r'^0x[0-9a-fA-F]{64}$')
_USERNAME_RE = re.compile(r'^[a-z0-9_]{3,32}$')
_AMOUNT_RE = re.compile(r'^[0-9]+$')


def now_ts() -> int:
    return int(time.time())


def is_address(value) -> bool:
    return isinstance(value, str) and bool(_ADDRESS_RE.match(value))


def is_tx_hash(value) -> bool:
    return isinstance(value, str) and bool(_TX_HASH_RE.match(value))


def normalize_username(raw) -> str:
    """'  @Alice ' -> 'alice'"""
    if not isinstance(raw, str):
        raise ValidationError("Username is required")
    username = raw.strip()
    if username.startswith('@'):
        username = username[1:]
    username = username.lower()
    if not username:
        raise ValidationError("Username is required")
    return username


def validate_username(raw) -> str:
    username = normalize_username(raw)
    if not _USERNAME_RE.match(username):
        raise ValidationError(
            "Username must be 3-32 characters: lowercase letters, digits or underscore"
        )
    return username


def validate_address(value, field_name: str = "address") -> str:
    if not is_address(value):
        raise ValidationError(f"Invalid {field_name}: expected 0x followed by 40 hex characters")
    return value


def validate_tx_hash(value) -> str:
    if not is_tx_hash(value):
        raise ValidationError("Invalid txHash: expected 0x followed by 64 hex characters")
    return value


def parse_amount(value, field_name: str = "amount") -> int:
    """
    Parse an on-chain amount in the token's smallest unit.

    Accepts ints and base-10 digit strings (amounts above 2**53 arrive as
    strings from JS clients). Floats are rejected so no rounding sneaks in.
    """
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {field_name}")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and _AMOUNT_RE.match(value.strip()):
        parsed = int(value.strip())
    else:
        raise ValidationError(f"Invalid {field_name}: expected a non-negative integer in the token's smallest unit")
    if parsed < 0:
        raise ValidationError(f"Invalid {field_name}: must not be negative")
    return parsed


def short_address(address: str) -> str:
    if not address or len(address) < 10:
        return address or ""
    return f"{address[:6]}...{address[-4:]}"


@dataclass
class UsernameRecord:
    username: str
    address: str
    is_premium: bool = False
    registered_at: int = field(default_factory=now_ts)

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict):
        return cls(
            username=data["username"],
            address=data["address"],
            is_premium=bool(data.get("is_premium", False)),
            registered_at=int(data.get("registered_at") or now_ts()),
        )

    def to_api(self) -> Dict:
        return {"username": self.username, "address": self.address, "isPremium": self.is_premium}


@dataclass
class PaymentRecord:
    """
    A payment keyed by its transaction hash.

    amount and fee are integers in the token's smallest unit and are never
    converted in place; see notifications.format_token_amount for display.
    """
    tx_hash: str
    from_address: str
    to_address: str
    token_address: str
    amount: int
    fee: int = 0
    from_username: Optional[str] = None
    to_username: Optional[str] = None
    status: str = STATUS_PENDING
    memo: Optional[str] = None
    created_at: int = field(default_factory=now_ts)
    notified_at: Optional[int] = None
    reminded_at: Optional[int] = None

    def to_dict(self):
        data = asdict(self)
        # Stored as strings: uint256 values overflow SQLite INTEGER
        data["amount"] = str(self.amount)
        data["fee"] = str(self.fee)
        return data

    @classmethod
    def from_dict(cls, data: Dict):
        return cls(
            tx_hash=data["tx_hash"],
            from_address=data["from_address"],
            to_address=data["to_address"],
            token_address=data["token_address"],
            amount=int(data["amount"]),
            fee=int(data.get("fee") or 0),
            from_username=data.get("from_username"),
            to_username=data.get("to_username"),
            status=data.get("status") or STATUS_PENDING,
            memo=data.get("memo"),
            created_at=int(data.get("created_at") or now_ts()),
            notified_at=data.get("notified_at"),
            reminded_at=data.get("reminded_at"),
        )


@dataclass
class ReceiptRecord:
    tx_hash: str
    share_link: str
    created_at: int = field(default_factory=now_ts)

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict):
        return cls(
            tx_hash=data["tx_hash"],
            share_link=data["share_link"],
            created_at=int(data.get("created_at") or now_ts()),
        )


@dataclass
class TelegramUser:
    telegram_id: int
    wallet_address: Optional[str] = None
    username: Optional[str] = None
    created_at: int = field(default_factory=now_ts)

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict):
        return cls(
            telegram_id=int(data["telegram_id"]),
            wallet_address=data.get("wallet_address"),
            username=data.get("username"),
            created_at=int(data.get("created_at") or now_ts()),
        )


@dataclass
class PaymentEvent:
    """A parsed SendCash PaymentSent event (or a stored payment viewed as one)."""
    tx_hash: str
    from_address: str
    to_address: str
    token_address: str
    amount: int
    fee: int
    from_username: Optional[str] = None
    to_username: Optional[str] = None
    memo: Optional[str] = None
    block_number: Optional[int] = None

    @classmethod
    def from_record(cls, record: PaymentRecord):
        return cls(
            tx_hash=record.tx_hash,
            from_address=record.from_address,
            to_address=record.to_address,
            token_address=record.token_address,
            amount=record.amount,
            fee=record.fee,
            from_username=record.from_username,
            to_username=record.to_username,
            memo=record.memo,
        )
