"""Shared fakes for x402guard tests."""

import threading
from typing import Any, Dict, List, Optional

import pytest

from x402guard.chain import ActionExecutor, ChainActionDispatcher, TransferExecutor
from x402guard.chain.gateway import ChainGateway
from x402guard.chain.models import (
    Balance,
    ChainActionResult,
    GasEstimate,
    GasPrice,
    TransactionReceipt,
)
from x402guard.chain.units import format_native, to_gwei
from x402guard.errors import UpstreamUnavailableError


# Well-known local development accounts
AGENT_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
AGENT_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
USER = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
OTHER_USER = "0x90F79bf6EB2c4f870365E785982E1f101E93b906"
RECIPIENT = "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC"
OTHER_RECIPIENT = "0x15d34AAf54267DB7D7c367839AAf71A00a2C6A65"
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

GAS_LIMIT = 21000
GAS_PRICE_WEI = 5 * 10**9
TX_HASH = "0x" + "ab" * 32


class FakeChainGateway(ChainGateway):
    """In-memory chain: every transaction is mined one block after it is sent."""

    def __init__(self, balance_wei: int = 10 * 10**18, gas_price_wei: int = GAS_PRICE_WEI):
        self.balance_wei = balance_wei
        self.gas_price_wei = gas_price_wei
        self.unavailable = False
        self.reverts = False
        self.receipts_unavailable = False
        self.block_number = 100
        self.sent: List[Dict[str, Any]] = []
        self.estimates: List[Dict[str, Any]] = []
        self._receipts: Dict[str, TransactionReceipt] = {}

    def _check_available(self) -> None:
        if self.unavailable:
            raise UpstreamUnavailableError("RPC unavailable")

    def estimate_gas(self, transaction: Dict[str, Any]) -> GasEstimate:
        self._check_available()
        self.estimates.append(dict(transaction))
        cost = GAS_LIMIT * self.gas_price_wei
        return GasEstimate(
            gas_limit=GAS_LIMIT,
            gas_price_wei=self.gas_price_wei,
            gas_price_gwei=str(to_gwei(self.gas_price_wei)),
            estimated_cost_wei=cost,
            estimated_cost_native=format_native(cost),
        )

    def get_gas_price(self) -> GasPrice:
        self._check_available()
        return GasPrice(wei=self.gas_price_wei, gwei=str(to_gwei(self.gas_price_wei)))

    def get_balance(self, address: str) -> Balance:
        self._check_available()
        if not self.validate_address(address):
            raise ValueError(f"Invalid wallet address format: {address}")
        return Balance(address=address, balance_wei=self.balance_wei, balance_native=format_native(self.balance_wei))

    def get_block_number(self) -> int:
        self._check_available()
        return self.block_number

    def get_transaction_receipt(self, tx_hash: str) -> Optional[TransactionReceipt]:
        self._check_available()
        if self.receipts_unavailable:
            raise UpstreamUnavailableError("Receipt query unavailable")
        return self._receipts.get(tx_hash)

    def send_transaction(self, transaction: Dict[str, Any]) -> str:
        self._check_available()
        self.sent.append(dict(transaction))
        tx_hash = "0x" + f"{len(self.sent):064x}"
        self._receipts[tx_hash] = TransactionReceipt(
            tx_hash=tx_hash,
            block_number=self.block_number,
            status="failed" if self.reverts else "success",
            gas_used=GAS_LIMIT,
        )
        self.block_number += 1
        return tx_hash


class RecordingExecutor(ActionExecutor):
    """
    Executor that records its calls and optionally blocks until released.

    With `broadcasts=True` it reports TX_HASH through the broadcast hook
    before blocking or raising `error`.
    """

    def __init__(
        self,
        gateway: ChainGateway,
        block: bool = False,
        error: Optional[Exception] = None,
        broadcasts: bool = False,
    ):
        super().__init__(gateway)
        self.calls: List[Dict[str, Any]] = []
        self.release = threading.Event()
        if not block:
            self.release.set()
        self.error = error
        self.broadcasts = broadcasts

    def execute(self, params: Dict[str, Any], on_broadcast=None) -> ChainActionResult:
        self.calls.append(dict(params))
        if self.broadcasts and on_broadcast is not None:
            on_broadcast(TX_HASH)
        self.release.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return ChainActionResult(tx_hash=TX_HASH, status="success", gas_used=GAS_LIMIT)


def make_dispatcher(gateway: ChainGateway) -> ChainActionDispatcher:
    """Dispatcher with the real transfer executor over a fake gateway."""
    return ChainActionDispatcher({"transfer": TransferExecutor(gateway)})


@pytest.fixture
def gateway() -> FakeChainGateway:
    return FakeChainGateway()
