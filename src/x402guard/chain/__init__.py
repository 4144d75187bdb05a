"""Chain module - gateway, units and action dispatch."""

from x402guard.chain.dispatcher import (
    ActionExecutor,
    ChainActionDispatcher,
    ContractCallExecutor,
    SwapExecutor,
    TransferExecutor,
)
from x402guard.chain.gateway import ChainGateway, Web3ChainGateway
from x402guard.chain.models import (
    Balance,
    ChainActionResult,
    GasEstimate,
    GasPrice,
    TransactionReceipt,
)

__all__ = [
    "ActionExecutor",
    "ChainActionDispatcher",
    "ContractCallExecutor",
    "SwapExecutor",
    "TransferExecutor",
    "ChainGateway",
    "Web3ChainGateway",
    "Balance",
    "ChainActionResult",
    "GasEstimate",
    "GasPrice",
    "TransactionReceipt",
]
