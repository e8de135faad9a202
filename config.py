"""
Configuration for the SendCash backend.

All settings come from the environment (.env is loaded here so any module
importing config sees the same values).
"""

import os
from pathlib import Path

from dotenv import load_dotenv

env_path = Path(__file__).parent / '.env'
load_dotenv(dotenv_path=env_path)

TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "").strip()
PORT = int(os.getenv("PORT", "5000"))
APP_URL = os.getenv("APP_URL", "https://sendcash.app").rstrip('/')
LOG_FILE = os.getenv("LOG_FILE", "sendcash.log")

# Chain
BASE_RPC = os.getenv("BASE_RPC_URL", "https://sepolia.base.org")
BASE_RPC_FALLBACKS = [
    BASE_RPC,
    "https://base-sepolia-rpc.publicnode.com",
    "https://base-sepolia.gateway.tenderly.co",
    "https://base-sepolia.drpc.org",
]
RPC_TIMEOUT = float(os.getenv("RPC_TIMEOUT", "15"))

CONTRACTS = {
    "USERNAME_REGISTRY": os.getenv("USERNAME_REGISTRY_ADDRESS", ""),
    "SEND_CASH": os.getenv("SEND_CASH_ADDRESS", ""),
}

EXPLORER_TX_URL = os.getenv("EXPLORER_TX_URL", "https://sepolia-explorer.base.org/tx/{tx_hash}")

# Supported tokens (Base Sepolia). Decimals are fixed; addresses are per deployment.
TOKENS = {
    "USDC": {
        "address": os.getenv("USDC_ADDRESS", ""),
        "symbol": "USDC",
        "decimals": 6,
        "name": "USD Coin",
    },
    "USDT": {
        "address": os.getenv("USDT_ADDRESS", ""),
        "symbol": "USDT",
        "decimals": 6,
        "name": "Tether USD",
    },
    "WBTC": {
        "address": os.getenv("WBTC_ADDRESS", ""),
        "symbol": "WBTC",
        "decimals": 8,
        "name": "Wrapped Bitcoin",
    },
    "DAI": {
        "address": os.getenv("DAI_ADDRESS", ""),
        "symbol": "DAI",
        "decimals": 18,
        "name": "Dai Stablecoin",
    },
}
DEFAULT_TOKEN_DECIMALS = 6

# Storage
DATABASE_BACKEND = os.getenv("DATABASE_BACKEND", "sqlite").lower()
DATABASE_PATH = os.getenv("DATABASE_PATH", str(Path(__file__).parent / "data" / "sendcash.db"))
JSON_DATA_DIR = os.getenv("JSON_DATA_DIR", str(Path(__file__).parent / "data"))

# Scheduler
SCHEDULER_INTERVAL_SECONDS = float(os.getenv("SCHEDULER_INTERVAL_SECONDS", "60"))
PENDING_REMINDER_AFTER_SECONDS = int(os.getenv("PENDING_REMINDER_AFTER_SECONDS", "600"))
REMINDER_REPEAT_SECONDS = int(os.getenv("REMINDER_REPEAT_SECONDS", "3600"))
SCHEDULER_BATCH_LIMIT = int(os.getenv("SCHEDULER_BATCH_LIMIT", "50"))

