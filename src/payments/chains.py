"""Read-only blockchain access for payment verification.

One ChainClient per currency network. The mock client is a scripted ledger
for tests and disconnected development; it is only ever selected through
``chain_mode=mock`` and never substituted when a real provider fails.
"""

import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

import httpx

from src.config import Config, config
from src.errors import CoreError, ErrorKind
from src.logging_utils import get_logger
from src.models import Currency, TransactionInfo, TransactionOutput
from src.payments.currencies import get_policy

logger = get_logger(__name__)

# ERC-20 transfer(address,uint256)
ERC20_TRANSFER_SELECTOR = "0xa9059cbb"


def _scale(raw: int, decimals: int) -> Decimal:
    return Decimal(raw).scaleb(-decimals)


class ChainClient(ABC):
    """Read-only view of one blockchain network."""

    @abstractmethod
    async def get_transaction(self, tx_hash: str) -> TransactionInfo:
        """Look up a transaction; ``exists`` is False when the node does not know it."""

    @abstractmethod
    async def get_confirmations(self, tx_hash: str) -> int:
        """Blocks mined on top of (and including) the transaction's block; 0 if unmined."""

    async def close(self) -> None:
        """Release network resources."""


class EvmRpcChainClient(ChainClient):
    """JSON-RPC client for EVM networks (native coin or one ERC-20 token)."""

    def __init__(
        self,
        rpc_url: str,
        decimals: int = 18,
        token_address: Optional[str] = None,
        timeout: float = 8.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the client.

        Args:
            rpc_url: JSON-RPC endpoint.
            decimals: Precision of the settled asset.
            token_address: ERC-20 contract; None settles the native coin.
            timeout: Per-request timeout in seconds.
            http_client: Optional preconfigured client (tests inject a MockTransport).
        """
        self.rpc_url = rpc_url
        self.decimals = decimals
        self.token_address = token_address.lower() if token_address else None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)

    async def close(self) -> None:
        await self._http.aclose()

    async def _rpc(self, method: str, params: list) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = await self._http.post(self.rpc_url, json=payload)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"RPC {method} failed: {e}")
            raise CoreError(ErrorKind.UNAVAILABLE, f"Chain RPC unavailable: {method}") from e

        if body.get("error"):
            logger.warning(f"RPC {method} returned error: {body['error']}")
            raise CoreError(ErrorKind.UNAVAILABLE, f"Chain RPC error on {method}", {"rpc_error": body["error"]})
        return body.get("result")

    def _outputs(self, tx: dict) -> list[TransactionOutput]:
        to = (tx.get("to") or "").lower()
        if self.token_address is None:
            return [TransactionOutput(to=to, value=_scale(int(tx.get("value") or "0x0", 16), self.decimals))]

        data = tx.get("input") or tx.get("data") or ""
        if to != self.token_address or not data.startswith(ERC20_TRANSFER_SELECTOR) or len(data) < 138:
            return []
        recipient = "0x" + data[34:74]
        amount = int(data[74:138], 16)
        return [TransactionOutput(to=recipient.lower(), value=_scale(amount, self.decimals))]

    async def get_transaction(self, tx_hash: str) -> TransactionInfo:
        tx = await self._rpc("eth_getTransactionByHash", [tx_hash])
        if not tx:
            return TransactionInfo(tx_hash=tx_hash, exists=False)

        block_number = tx.get("blockNumber")
        return TransactionInfo(
            tx_hash=tx_hash,
            exists=True,
            pending=block_number is None,
            outputs=self._outputs(tx),
            block_number=int(block_number, 16) if block_number else None,
        )

    async def get_confirmations(self, tx_hash: str) -> int:
        receipt = await self._rpc("eth_getTransactionReceipt", [tx_hash])
        if not receipt or not receipt.get("blockNumber"):
            return 0
        if receipt.get("status") == "0x0":
            logger.info(f"Transaction {tx_hash} reverted; counting 0 confirmations")
            return 0

        head = int(await self._rpc("eth_blockNumber", []), 16)
        return max(0, head - int(receipt["blockNumber"], 16) + 1)


class EsploraChainClient(ChainClient):
    """Bitcoin access through an Esplora-compatible REST API."""

    def __init__(
        self,
        base_url: str,
        decimals: int = 8,
        timeout: float = 8.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.decimals = decimals
        self._http = http_client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def close(self) -> None:
        await self._http.aclose()

    async def _get(self, path: str) -> Optional[httpx.Response]:
        try:
            response = await self._http.get(f"{self.base_url}{path}")
        except httpx.HTTPError as e:
            logger.warning(f"Esplora GET {path} failed: {e}")
            raise CoreError(ErrorKind.UNAVAILABLE, "Bitcoin API unavailable") from e

        if response.status_code in (400, 404):
            return None
        if response.status_code >= 400:
            logger.warning(f"Esplora GET {path} returned {response.status_code}")
            raise CoreError(ErrorKind.UNAVAILABLE, f"Bitcoin API returned {response.status_code}")
        return response

    async def get_transaction(self, tx_hash: str) -> TransactionInfo:
        response = await self._get(f"/tx/{tx_hash}")
        if response is None:
            return TransactionInfo(tx_hash=tx_hash, exists=False)

        tx = response.json()
        status = tx.get("status") or {}
        outputs = [
            TransactionOutput(to=vout["scriptpubkey_address"], value=_scale(vout["value"], self.decimals))
            for vout in tx.get("vout", [])
            if vout.get("scriptpubkey_address")
        ]
        return TransactionInfo(
            tx_hash=tx_hash,
            exists=True,
            pending=not status.get("confirmed", False),
            outputs=outputs,
            block_number=status.get("block_height"),
        )

    async def get_confirmations(self, tx_hash: str) -> int:
        info = await self.get_transaction(tx_hash)
        if not info.exists or info.pending or info.block_number is None:
            return 0

        response = await self._get("/blocks/tip/height")
        if response is None:
            raise CoreError(ErrorKind.UNAVAILABLE, "Bitcoin API returned no tip height")
        tip = int(response.text.strip())
        return max(0, tip - info.block_number + 1)


@dataclass
class _ScriptedTransaction:
    outputs: list[TransactionOutput]
    confirmations: int = 0
    present: bool = True


class MockChainClient(ChainClient):
    """Scripted in-memory ledger for tests and offline development."""

    def __init__(self, network: str = "mock"):
        self.network = network
        self._txs: dict[str, _ScriptedTransaction] = {}
        self._unavailable = False
        self.calls = 0

    def add_transaction(self, tx_hash: str, to: str, value: Decimal, confirmations: int = 0) -> None:
        self._txs[tx_hash] = _ScriptedTransaction(
            outputs=[TransactionOutput(to=to, value=Decimal(value))],
            confirmations=confirmations,
        )
        logger.debug(f"[MOCK {self.network}] added {tx_hash} -> {to} ({value})")

    def set_confirmations(self, tx_hash: str, confirmations: int) -> None:
        tx = self._txs[tx_hash]
        tx.confirmations = confirmations
        tx.present = True

    def drop_transaction(self, tx_hash: str) -> None:
        """Simulate the transaction disappearing from the canonical chain."""
        tx = self._txs[tx_hash]
        tx.present = False
        tx.confirmations = 0

    def set_unavailable(self, unavailable: bool = True) -> None:
        self._unavailable = unavailable

    def _check(self) -> None:
        self.calls += 1
        if self._unavailable:
            raise CoreError(ErrorKind.UNAVAILABLE, f"Mock {self.network} node offline")

    async def get_transaction(self, tx_hash: str) -> TransactionInfo:
        self._check()
        tx = self._txs.get(tx_hash)
        if tx is None or not tx.present:
            return TransactionInfo(tx_hash=tx_hash, exists=False)
        return TransactionInfo(
            tx_hash=tx_hash,
            exists=True,
            pending=tx.confirmations == 0,
            outputs=list(tx.outputs),
        )

    async def get_confirmations(self, tx_hash: str) -> int:
        self._check()
        tx = self._txs.get(tx_hash)
        if tx is None or not tx.present:
            return 0
        return tx.confirmations


def build_chain_clients(cfg: Optional[Config] = None) -> dict[Currency, ChainClient]:
    """Resolve one ChainClient per enabled currency from ``chain_mode``.

    Args:
        cfg: Configuration. Defaults to the global config.

    Returns:
        Mapping of currency to its client.
    """
    cfg = cfg or config
    clients: dict[Currency, ChainClient] = {}

    for code in cfg.enabled_currencies:
        currency = Currency(code)
        policy = get_policy(currency)

        if cfg.chain_mode == "mock":
            clients[currency] = MockChainClient(network=policy.network)
        elif currency is Currency.BTC:
            clients[currency] = EsploraChainClient(
                cfg.bitcoin_api_url,
                decimals=policy.decimals,
                timeout=cfg.external_call_timeout_seconds,
            )
        else:
            rpc_url = cfg.ethereum_rpc_url if currency is Currency.ETH else cfg.polygon_rpc_url
            clients[currency] = EvmRpcChainClient(
                rpc_url,
                decimals=policy.decimals,
                token_address=cfg.usdc_token_address if policy.token_contract else None,
                timeout=cfg.external_call_timeout_seconds,
            )

    logger.info(f"Chain clients ready ({cfg.chain_mode}): {', '.join(c.value for c in clients)}")
    return clients
