"""
Chain Action Dispatcher

Routes a verified payment to the executor for its action kind. Executors
broadcast through the chain gateway and wait for one confirmation.
"""

import logging
import time
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from eth_abi import encode as abi_encode
from eth_utils import to_checksum_address
from web3 import Web3

from x402guard.chain.gateway import NODE_ANSWERS, ChainGateway, Web3ChainGateway
from x402guard.chain.models import ChainActionResult
from x402guard.chain.units import to_smallest_unit
from x402guard.config import Settings, settings as default_settings
from x402guard.errors import (
    ChainExecutionError,
    ConfigurationError,
    ConfirmationTimeoutError,
    UpstreamUnavailableError,
    ValidationError,
)


logger = logging.getLogger(__name__)


ERC20_TRANSFER_SELECTOR = Web3.keccak(text="transfer(address,uint256)")[:4]

UNISWAP_V2_ROUTER_ABI: List[Dict[str, Any]] = [
    {
        "name": "getAmountsOut",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "amountIn", "type": "uint256"},
            {"name": "path", "type": "address[]"},
        ],
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
    },
    {
        "name": "swapExactETHForTokens",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            {"name": "amountOutMin", "type": "uint256"},
            {"name": "path", "type": "address[]"},
            {"name": "to", "type": "address"},
            {"name": "deadline", "type": "uint256"},
        ],
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
    },
]


BroadcastHook = Callable[[str], None]


class ActionExecutor(ABC):
    """Executes one kind of chain action."""

    def __init__(
        self,
        gateway: ChainGateway,
        confirmations: int = 1,
        poll_interval: float = 3.0,
        max_attempts: int = 30,
    ):
        self.gateway = gateway
        self.confirmations = confirmations
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts

    @abstractmethod
    def execute(self, params: Dict[str, Any], on_broadcast: Optional[BroadcastHook] = None) -> ChainActionResult:
        """Broadcast the action and return its outcome."""

    def _sender(self) -> str:
        account = getattr(self.gateway, "account", None)
        if account is None:
            raise ConfigurationError("No signer key configured for sending transactions")
        return account.address

    def _broadcast_and_confirm(
        self,
        tx: Dict[str, Any],
        details: Dict[str, Any],
        on_broadcast: Optional[BroadcastHook] = None,
    ) -> ChainActionResult:
        """
        Send and wait for the receipt.

        Once a hash exists, any failure to observe the receipt is reported as
        ConfirmationTimeoutError: the transfer may have happened and must not
        be retried blindly.
        """
        tx_hash = self.gateway.send_transaction(tx)
        if on_broadcast is not None:
            on_broadcast(tx_hash)

        try:
            receipt = self.gateway.wait_for_confirmation(
                tx_hash,
                confirmations=self.confirmations,
                poll_interval=self.poll_interval,
                max_attempts=self.max_attempts,
            )
        except ConfirmationTimeoutError:
            raise
        except (UpstreamUnavailableError,) + NODE_ANSWERS as e:
            logger.error(f"Lost track of {tx_hash} after broadcast: {e}")
            raise ConfirmationTimeoutError(tx_hash, f"Receipt for {tx_hash} unavailable: {e}")

        if receipt.status != "success":
            raise ChainExecutionError(f"Transaction {tx_hash} reverted")

        return ChainActionResult(
            tx_hash=tx_hash,
            status=receipt.status,
            gas_used=receipt.gas_used,
            details=details,
        )


class TransferExecutor(ActionExecutor):
    """Native-asset or ERC-20 transfer."""

    def execute(self, params: Dict[str, Any], on_broadcast: Optional[BroadcastHook] = None) -> ChainActionResult:
        recipient = params["recipient"]
        token = params.get("token")

        if not token:
            tx = {"to": recipient, "value": to_smallest_unit(params["amount"])}
            return self._broadcast_and_confirm(tx, {"kind": "native"}, on_broadcast)

        # ERC-20 amounts scale by the token's own decimals
        decimals = int(params.get("token_decimals", 18))
        units = int(Decimal(params["amount"]).scaleb(decimals))
        data = ERC20_TRANSFER_SELECTOR + abi_encode(
            ["address", "uint256"],
            [to_checksum_address(recipient), units],
        )
        tx = {"to": token, "value": 0, "data": Web3.to_hex(data)}
        return self._broadcast_and_confirm(tx, {"kind": "erc20", "token": token, "units": units}, on_broadcast)


class ContractCallExecutor(ActionExecutor):
    """State-changing contract method call built from an ABI."""

    def execute(self, params: Dict[str, Any], on_broadcast: Optional[BroadcastHook] = None) -> ChainActionResult:
        for key in ("contract_address", "method", "abi"):
            if not params.get(key):
                raise ValidationError(f"Contract call requires '{key}'")

        contract = self.gateway.w3.eth.contract(
            address=to_checksum_address(params["contract_address"]),
            abi=params["abi"],
        )
        value = to_smallest_unit(params.get("value") or "0")
        function = contract.functions[params["method"]](*params.get("params", []))
        tx = function.build_transaction({"from": self._sender(), "value": value})

        return self._broadcast_and_confirm(
            {"to": tx["to"], "data": tx["data"], "value": value},
            {"contract": params["contract_address"], "method": params["method"]},
            on_broadcast,
        )


class SwapExecutor(ActionExecutor):
    """Native-to-token swap through a UniswapV2-style router."""

    def __init__(
        self,
        gateway: Web3ChainGateway,
        router_address: str,
        wrapped_native_address: str,
        native_symbol: str = "BNB",
        deadline_seconds: int = 600,
        **polling: Any,
    ):
        super().__init__(gateway, **polling)
        self.router_address = to_checksum_address(router_address)
        self.wrapped_native_address = to_checksum_address(wrapped_native_address)
        self.native_symbol = native_symbol
        self.deadline_seconds = deadline_seconds

    def execute(self, params: Dict[str, Any], on_broadcast: Optional[BroadcastHook] = None) -> ChainActionResult:
        from_token = params.get("from_token") or self.native_symbol
        to_token = params.get("to_token")
        if from_token.upper() != self.native_symbol.upper():
            raise ValidationError(f"Only {self.native_symbol}-to-token swaps are supported")
        if not to_token:
            raise ValidationError("Swap requires 'to_token'")

        sender = self._sender()
        amount_in = to_smallest_unit(params["amount"])
        slippage = Decimal(str(params.get("slippage", "0.5")))
        path = [self.wrapped_native_address, to_checksum_address(to_token)]

        router = self.gateway.w3.eth.contract(address=self.router_address, abi=UNISWAP_V2_ROUTER_ABI)
        amounts = router.functions.getAmountsOut(amount_in, path).call()
        amount_out_min = int(Decimal(amounts[-1]) * (Decimal(100) - slippage) / Decimal(100))

        deadline = int(time.time()) + self.deadline_seconds
        function = router.functions.swapExactETHForTokens(
            amount_out_min, path, sender, deadline,
        )
        tx = function.build_transaction({"from": sender, "value": amount_in})

        return self._broadcast_and_confirm(
            {"to": tx["to"], "data": tx["data"], "value": amount_in},
            {"path": path, "amount_out_min": amount_out_min},
            on_broadcast,
        )


class ChainActionDispatcher:
    """Registry of executors keyed by action tag."""

    def __init__(self, executors: Optional[Dict[str, ActionExecutor]] = None):
        self.executors: Dict[str, ActionExecutor] = dict(executors or {})

    @classmethod
    def from_gateway(cls, gateway: Web3ChainGateway, settings: Optional[Settings] = None) -> "ChainActionDispatcher":
        """Build the standard executors for a web3 gateway."""
        settings = settings or default_settings
        polling = {
            "poll_interval": settings.confirmation_poll_interval_seconds,
            "max_attempts": settings.confirmation_max_attempts,
        }
        budget = settings.confirmation_poll_interval_seconds * settings.confirmation_max_attempts
        if budget >= settings.execution_timeout_seconds:
            logger.warning(
                f"Confirmation polling ({budget:.0f}s) outlasts the execution timeout "
                f"({settings.execution_timeout_seconds:.0f}s); late outcomes are recorded as unknown"
            )

        dispatcher = cls({
            "transfer": TransferExecutor(gateway, **polling),
            "call": ContractCallExecutor(gateway, **polling),
        })

        if settings.swap_router_address and settings.wrapped_native_address:
            dispatcher.register("swap", SwapExecutor(
                gateway,
                settings.swap_router_address,
                settings.wrapped_native_address,
                native_symbol=settings.native_symbol,
                **polling,
            ))
        else:
            logger.info("No swap router configured; swap actions are unavailable")

        return dispatcher

    def register(self, action: str, executor: ActionExecutor) -> None:
        self.executors[action.lower()] = executor

    def supports(self, action: str) -> bool:
        return action.lower() in self.executors

    def execute(
        self,
        action: str,
        params: Dict[str, Any],
        on_broadcast: Optional[BroadcastHook] = None,
    ) -> ChainActionResult:
        """
        Dispatch an action.

        `on_broadcast` is called with the tx hash as soon as the node accepts
        the transaction, before the receipt is awaited.

        Raises:
            ValidationError: Unsupported action
            ChainExecutionError: The action was rejected or reverted
            ConfirmationTimeoutError: Broadcast, but the outcome is unknown
        """
        executor = self.executors.get(action.lower())
        if executor is None:
            raise ValidationError(f"Unsupported action: {action}")

        logger.info(f"Dispatching {action} action")
        return executor.execute(params, on_broadcast=on_broadcast)
