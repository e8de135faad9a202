"""
Test Notifications
Amount rendering and the Telegram message templates.
"""
import pytest

from models import PaymentEvent, PaymentRecord, ReceiptRecord
from notifications import NotificationFormatter, TokenTable, format_units

USDC = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"
WBTC = "0x" + "2" * 40
UNKNOWN = "0x" + "9" * 40
SENDER = "0x1234567890abcdef1234567890abcdef12345678"
RECIPIENT = "0x" + "b" * 40
TX = "0x" + "f" * 64

TOKENS = {
    "USDC": {"address": USDC, "symbol": "USDC", "decimals": 6},
    "WBTC": {"address": WBTC, "symbol": "WBTC", "decimals": 8},
    "DAI": {"address": "", "symbol": "DAI", "decimals": 18},
}


@pytest.fixture
def formatter():
    return NotificationFormatter(
        tokens=TokenTable(TOKENS),
        explorer_tx_url="https://sepolia-explorer.base.org/tx/{tx_hash}"
    )


def event(**kwargs) -> PaymentEvent:
    fields = dict(
        tx_hash=TX,
        from_address=SENDER,
        to_address=RECIPIENT,
        token_address=USDC,
        amount=2_000_000,
        fee=10_000,
        from_username="alice",
    )
    fields.update(kwargs)
    return PaymentEvent(**fields)


def test_format_units():
    assert format_units(1_990_000, 6) == "1.99"
    assert format_units(0, 6) == "0.00"
    assert format_units(5, 6) == "0.00"
    assert format_units(5_000, 6) == "0.01"      # half rounds up
    assert format_units(4_999, 6) == "0.00"
    assert format_units(123_456_789, 8) == "1.23"
    assert format_units(10 ** 18, 18) == "1.00"
    assert format_units(-1_500_000, 6) == "-1.50"
    assert format_units(1_234_567, 6, places=4) == "1.2346"
    assert format_units(42, 0) == "42.00"


def test_format_units_has_no_float_drift():
    # 0.29 and 1.15 are not representable as binary floats
    assert format_units(290_000, 6) == "0.29"
    assert format_units(1_150_000, 6) == "1.15"
    assert format_units(123_456_789_012_345_678_901_234, 18) == "123456.79"


def test_token_lookup(formatter):
    assert formatter.tokens.lookup(USDC.lower()) == ("USDC", 6)
    assert formatter.tokens.lookup(WBTC) == ("WBTC", 8)
    assert formatter.tokens.lookup(UNKNOWN) == ("TOKEN", 6)
    assert formatter.tokens.lookup(None) == ("TOKEN", 6)


def test_format_token_amount(formatter):
    assert formatter.format_token_amount(1_990_000, USDC) == "1.99"
    assert formatter.format_token_amount(150_000_000, WBTC) == "1.50"
    assert formatter.format_token_amount(1_990_000, UNKNOWN) == "1.99"


def test_display_name():
    assert NotificationFormatter.display_name("alice", SENDER) == "@alice"
    assert NotificationFormatter.display_name("@alice", SENDER) == "@alice"
    assert NotificationFormatter.display_name(None, SENDER) == "0x1234...5678"
    assert NotificationFormatter.display_name("<b>x</b>", SENDER) == "@&lt;b&gt;x&lt;/b&gt;"


def test_format_payment(formatter):
    text = formatter.format_payment(event(memo="Lunch"))

    assert "NEW PAYMENT ALERT" in text
    assert "👤 <b>From:</b> @alice" in text
    assert "💵 <b>Amount:</b> $2.00 USDC" in text
    assert "📊 <b>Fee:</b> $0.01 USDC" in text
    assert "✅ <b>You received:</b> $1.99 USDC" in text
    assert "📝 <b>Note:</b> Lunch" in text
    assert f'href="https://sepolia-explorer.base.org/tx/{TX}"' in text
    assert f"<code>{TX[:16]}...</code>" in text


def test_format_payment_without_username_or_memo(formatter):
    text = formatter.format_payment(event(from_username=None, memo=None))
    assert "👤 <b>From:</b> 0x1234...5678" in text
    assert "Note" not in text


def test_format_payment_escapes_memo(formatter):
    text = formatter.format_payment(event(memo="<script>"))
    assert "&lt;script&gt;" in text
    assert "<script>" not in text


def test_format_payment_unknown_token(formatter):
    text = formatter.format_payment(event(token_address=UNKNOWN))
    assert "$2.00 TOKEN" in text
    assert "$1.99 TOKEN" in text


def test_format_payment_is_deterministic(formatter):
    assert formatter.format_payment(event()) == formatter.format_payment(event())
    assert formatter.format_payment(event()) == NotificationFormatter(
        tokens=TokenTable(TOKENS),
        explorer_tx_url="https://sepolia-explorer.base.org/tx/{tx_hash}"
    ).format_payment(event())


def test_format_payment_from_record(formatter):
    record = PaymentRecord(
        tx_hash=TX,
        from_address=SENDER,
        to_address=RECIPIENT,
        token_address=USDC,
        amount=2_000_000,
        fee=10_000,
        from_username="alice",
    )
    assert formatter.format_payment(PaymentEvent.from_record(record)) == formatter.format_payment(event())


def test_format_pending_reminder(formatter):
    record = PaymentRecord(
        tx_hash=TX,
        from_address=SENDER,
        to_address=RECIPIENT,
        token_address=USDC,
        amount=5_000_000,
        to_username="bob",
        created_at=1_000,
    )
    text = formatter.format_pending_reminder(record, now=1_000 + 15 * 60)
    assert "Payment still pending" in text
    assert "to @bob of $5.00 USDC" in text
    assert "after 15 min" in text


def test_format_receipt(formatter):
    record = PaymentRecord(
        tx_hash=TX,
        from_address=SENDER,
        to_address=RECIPIENT,
        token_address=USDC,
        amount=2_500_000,
        from_username="alice",
        status="confirmed",
    )
    receipt = ReceiptRecord(tx_hash=TX, share_link=f"https://sendcash.app/receipt/{TX}")
    text = formatter.format_receipt(receipt, record)
    assert "<b>From:</b> @alice" in text
    assert "<b>To:</b> 0xbbbb...bbbb" in text
    assert "$2.50 USDC" in text
    assert receipt.share_link in text


def test_format_history(formatter):
    sent = PaymentRecord(tx_hash=TX, from_address=SENDER, to_address=RECIPIENT,
                         token_address=USDC, amount=1_000_000, to_username="bob")
    received = PaymentRecord(tx_hash=TX, from_address=RECIPIENT, to_address=SENDER,
                             token_address=USDC, amount=3_000_000)

    text = formatter.format_history([("sent", sent), ("received", received)])
    assert "⬆️ Sent $1.00 USDC to @bob" in text
    assert "⬇️ Received $3.00 USDC from 0xbbbb...bbbb" in text

    assert "No transactions yet" in formatter.format_history([])
    assert formatter.format_history([("sent", sent)] * 20, limit=3).count("Sent") == 3


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-v"]))
