"""
Chain Client

Read-only access to Base (Sepolia by default):
- UsernameRegistry lookups (username <-> address)
- transaction receipts
- SendCash PaymentSent event parsing

web3's HTTP provider is blocking, so every call runs in a worker thread via
asyncio.to_thread. Endpoints are tried in order; the first one that answers
becomes the preferred endpoint for later calls.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from web3 import Web3
from web3.exceptions import TransactionNotFound
from web3.logs import DISCARD

from errors import ExternalServiceError
from models import PaymentEvent, ZERO_ADDRESS

logger = logging.getLogger(__name__)

USERNAME_REGISTRY_ABI = [
    {
        "name": "usernameToAddress",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "", "type": "string"}],
        "outputs": [{"name": "", "type": "address"}],
    },
    {
        "name": "getUsername",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "", "type": "address"}],
        "outputs": [{"name": "", "type": "string"}],
    },
    {
        "name": "premiumUsernames",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "", "type": "string"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
]

SEND_CASH_ABI = [
    {
        "name": "PaymentSent",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "from", "type": "address", "indexed": True},
            {"name": "to", "type": "address", "indexed": True},
            {"name": "token", "type": "address", "indexed": True},
            {"name": "amount", "type": "uint256", "indexed": False},
            {"name": "fee", "type": "uint256", "indexed": False},
            {"name": "fromUsername", "type": "string", "indexed": False},
            {"name": "toUsername", "type": "string", "indexed": False},
        ],
    },
]


class ChainClient:
    """Read-only RPC client with endpoint fallback."""

    def __init__(
        self,
        rpc_urls: List[str],
        registry_address: str = "",
        send_cash_address: str = "",
        timeout: float = 15.0,
    ):
        # Drop duplicates, keep order
        self.rpc_urls = list(dict.fromkeys(url for url in rpc_urls if url))
        if not self.rpc_urls:
            raise ValueError("At least one RPC URL is required")
        self.registry_address = registry_address
        self.send_cash_address = send_cash_address
        self.timeout = timeout
        self._current = 0
        self._clients: Dict[str, Web3] = {}

    @property
    def registry_configured(self) -> bool:
        return bool(self.registry_address)

    @property
    def send_cash_configured(self) -> bool:
        return bool(self.send_cash_address)

    def _web3(self, url: str) -> Web3:
        if url not in self._clients:
            self._clients[url] = Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": self.timeout}))
        return self._clients[url]

    def _call_with_fallback(self, fn: Callable[[Web3], object]):
        """Run fn against each endpoint until one succeeds (worker thread)."""
        last_error = None
        for attempt in range(len(self.rpc_urls)):
            index = (self._current + attempt) % len(self.rpc_urls)
            url = self.rpc_urls[index]
            try:
                result = fn(self._web3(url))
            except (TransactionNotFound, ExternalServiceError):
                # Not an endpoint problem; another RPC would answer the same
                raise
            except Exception as e:
                logger.warning(f"[RPC] {url} failed (attempt {attempt + 1}/{len(self.rpc_urls)}): {e}")
                last_error = e
                continue
            if index != self._current:
                logger.info(f"[RPC] Switched to fallback RPC: {url}")
                self._current = index
            return result
        raise ExternalServiceError(f"All RPC endpoints failed. Last error: {last_error}")

    async def _run(self, fn: Callable[[Web3], object]):
        return await asyncio.to_thread(self._call_with_fallback, fn)

    def _registry(self, w3: Web3):
        if not self.registry_address:
            raise ExternalServiceError("USERNAME_REGISTRY_ADDRESS not configured")
        return w3.eth.contract(
            address=Web3.to_checksum_address(self.registry_address),
            abi=USERNAME_REGISTRY_ABI
        )

    async def username_to_address(self, username: str) -> Optional[str]:
        """Registry lookup; None when the name is not registered."""
        address = await self._run(lambda w3: self._registry(w3).functions.usernameToAddress(username).call())
        if not address or address == ZERO_ADDRESS:
            return None
        return address

    async def get_username(self, address: str) -> Optional[str]:
        """Reverse registry lookup; None when the address has no name."""
        checksum = Web3.to_checksum_address(address)
        username = await self._run(lambda w3: self._registry(w3).functions.getUsername(checksum).call())
        return username or None

    async def is_premium(self, username: str) -> bool:
        return bool(await self._run(lambda w3: self._registry(w3).functions.premiumUsernames(username).call()))

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict]:
        """
        Returns {"status": "confirmed"|"failed", "blockNumber": int}, or None
        while the transaction is unknown / not yet mined.
        """
        try:
            receipt = await self._run(lambda w3: w3.eth.get_transaction_receipt(tx_hash))
        except TransactionNotFound:
            return None
        if receipt is None:
            return None
        return {
            "status": "confirmed" if receipt["status"] == 1 else "failed",
            "blockNumber": receipt["blockNumber"],
        }

    async def parse_payment_event(self, tx_hash: str) -> Optional[PaymentEvent]:
        """Decode the first PaymentSent event of a successful transaction."""
        if not self.send_cash_address:
            raise ExternalServiceError("SEND_CASH_ADDRESS not configured")

        def fetch(w3: Web3):
            receipt = w3.eth.get_transaction_receipt(tx_hash)
            if receipt is None or receipt["status"] != 1:
                return None, None
            contract = w3.eth.contract(
                address=Web3.to_checksum_address(self.send_cash_address),
                abi=SEND_CASH_ABI
            )
            events = contract.events.PaymentSent().process_receipt(receipt, errors=DISCARD)
            return receipt, events

        try:
            receipt, events = await self._run(fetch)
        except TransactionNotFound:
            return None
        if not events:
            return None

        args = events[0]["args"]
        return PaymentEvent(
            tx_hash=tx_hash,
            from_address=args["from"],
            to_address=args["to"],
            token_address=args["token"],
            amount=int(args["amount"]),
            fee=int(args["fee"]),
            from_username=args["fromUsername"] or None,
            to_username=args["toUsername"] or None,
            block_number=receipt["blockNumber"],
        )
