"""
otcx/settlement/resolver.py

Resolve a transaction hash into TransactionDetails.

Every failure (network, timeout, unknown hash, no token transfer in the
receipt) is raised as ResolutionFailure. Callers downgrade that to a
MANUAL_REVIEW verdict; nothing here decides approval.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

import aiohttp

from otcx.core.exceptions import ResolutionFailure
from otcx.core.models import TransactionDetails
from otcx.ledger.interface import TransactionLookup

logger = logging.getLogger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


class TransactionResolver(ABC):
    """Async lookup of a transfer by hash."""

    @abstractmethod
    async def resolve(self, tx_hash: str, source: Optional[str] = None) -> TransactionDetails:
        """
        Args:
            tx_hash: 0x-prefixed transaction hash
            source:  evidence source (explorer base URL) the hash came from

        Raises:
            ResolutionFailure: the transaction could not be resolved
        """


# ─────────────────────────────────────────────────────────────
# Explorer API
# ─────────────────────────────────────────────────────────────

def api_base_for(explorer_url: str) -> Optional[str]:
    """
    Etherscan-family API endpoint for an explorer's web URL, or None when
    the explorer has no known API.
    """
    host = (urlsplit(explorer_url).hostname or "").lower()
    if not host:
        return None

    if host.endswith("optimistic.etherscan.io"):
        return "https://api-optimistic.etherscan.io/api"
    if host.endswith("etherscan.io"):
        if "sepolia" in host:
            return "https://api-sepolia.etherscan.io/api"
        if "goerli" in host:
            return "https://api-goerli.etherscan.io/api"
        return "https://api.etherscan.io/api"
    if host.endswith("arbiscan.io"):
        return "https://api.arbiscan.io/api"
    if host.endswith("basescan.org"):
        return "https://api.basescan.org/api"
    if host.endswith("polygonscan.com"):
        return "https://api.polygonscan.com/api"
    return None


def decode_transfer(tx_hash: str, receipt: Dict[str, Any]) -> TransactionDetails:
    """
    Decode the first ERC-20 Transfer log of a transaction receipt.

    Topics are [signature, from, to]; addresses are the low 20 bytes of
    each 32-byte topic, data is the amount.
    """
    if str(receipt.get("status", "0x1")).lower() in ("0x0", "0"):
        raise ResolutionFailure("transaction reverted", {"tx": tx_hash})

    for log in receipt.get("logs") or []:
        topics = log.get("topics") or []
        if len(topics) != 3 or str(topics[0]).lower() != TRANSFER_TOPIC:
            continue
        try:
            return TransactionDetails(
                hash   = tx_hash,
                sender = "0x" + topics[1][26:],
                to     = "0x" + topics[2][26:],
                asset  = log["address"],
                amount = int(log.get("data") or "0x0", 16),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ResolutionFailure(
                "malformed transfer log", {"tx": tx_hash, "error": str(e)}
            ) from e

    raise ResolutionFailure("no token transfer in transaction", {"tx": tx_hash})


class ExplorerResolver(TransactionResolver):
    """
    Resolves through the explorer's Etherscan-style API
    (module=proxy, action=eth_getTransactionReceipt).

    Pass a shared aiohttp session to reuse connections; without one a
    session is opened per lookup.
    """

    def __init__(
        self,
        api_key:         str = "",
        session:         Optional[aiohttp.ClientSession] = None,
        timeout:         float = 10.0,
        default_source:  Optional[str] = None,
    ):
        self.api_key = api_key
        self.session = session
        self.timeout = timeout
        self.default_source = default_source

    async def resolve(self, tx_hash: str, source: Optional[str] = None) -> TransactionDetails:
        source = source or self.default_source
        api = api_base_for(source) if source else None
        if api is None:
            raise ResolutionFailure("no API known for evidence source", {"source": source})

        params = {
            "module": "proxy",
            "action": "eth_getTransactionReceipt",
            "txhash": tx_hash,
            "apikey": self.api_key,
        }
        payload = await self._get_json(api, params, tx_hash)

        if str(payload.get("status", "")) == "0":
            raise ResolutionFailure(
                "explorer API error",
                {"tx": tx_hash, "message": payload.get("result") or payload.get("message")},
            )
        receipt = payload.get("result")
        if not isinstance(receipt, dict):
            raise ResolutionFailure("transaction not found", {"tx": tx_hash})
        return decode_transfer(tx_hash, receipt)

    async def _get_json(self, url: str, params: Dict[str, str], tx_hash: str) -> Dict[str, Any]:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            if self.session is not None:
                return await self._fetch(self.session, url, params, timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                return await self._fetch(session, url, params, timeout)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning("explorer lookup for %s failed: %s", tx_hash, e)
            raise ResolutionFailure(
                "explorer request failed", {"tx": tx_hash, "error": type(e).__name__}
            ) from e

    @staticmethod
    async def _fetch(session, url, params, timeout) -> Dict[str, Any]:
        async with session.get(url, params=params, timeout=timeout) as response:
            response.raise_for_status()
            payload = await response.json(content_type=None)
        if not isinstance(payload, dict):
            raise ValueError("explorer returned a non-object payload")
        return payload


# ─────────────────────────────────────────────────────────────
# Ledger-backed
# ─────────────────────────────────────────────────────────────

class LedgerResolver(TransactionResolver):
    """Resolves against a ledger that records its own transfers."""

    def __init__(self, lookup: TransactionLookup):
        self.lookup = lookup

    async def resolve(self, tx_hash: str, source: Optional[str] = None) -> TransactionDetails:
        details = await self.lookup.get_transaction(tx_hash)
        if details is None:
            raise ResolutionFailure("transaction not found", {"tx": tx_hash})
        return details
