"""
Chain Gateway

Address validation, gas quotes, balances, broadcast and receipt polling.
The policy engine only consumes gas quotes, balances and the address-format
check; broadcast is used by the action executors.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

from eth_account import Account
from eth_utils import is_address, is_checksum_address, remove_0x_prefix, to_checksum_address
from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3RPCError

from x402guard.chain.models import Balance, GasEstimate, GasPrice, TransactionReceipt
from x402guard.chain.units import format_native, to_gwei
from x402guard.config import settings as default_settings
from x402guard.errors import (
    ChainExecutionError,
    ConfigurationError,
    ConfirmationTimeoutError,
    UpstreamUnavailableError,
)


logger = logging.getLogger(__name__)

# Errors where the node answered (revert, rejection, unknown tx); never retried
NODE_ANSWERS = (ContractLogicError, Web3RPCError, ValueError, TransactionNotFound)
NODE_REJECTIONS = (ContractLogicError, Web3RPCError, ValueError)


class ChainGateway(ABC):
    """Abstract chain access used by the payment core."""

    def validate_address(self, address: Any) -> bool:
        """Check EVM address format (single-case hex or a valid checksum)."""
        if not isinstance(address, str) or not is_address(address):
            return False

        body = remove_0x_prefix(address)
        if body == body.lower() or body == body.upper():
            return True
        return is_checksum_address(address)

    @abstractmethod
    def estimate_gas(self, transaction: Dict[str, Any]) -> GasEstimate:
        """Quote gas for a transaction dict (from, to, value, data)."""

    @abstractmethod
    def get_gas_price(self) -> GasPrice:
        """Current gas price."""

    @abstractmethod
    def get_balance(self, address: str) -> Balance:
        """Balance of an address."""

    @abstractmethod
    def get_block_number(self) -> int:
        """Latest block number."""

    @abstractmethod
    def get_transaction_receipt(self, tx_hash: str) -> Optional[TransactionReceipt]:
        """Receipt for a mined transaction, None while pending."""

    @abstractmethod
    def send_transaction(self, transaction: Dict[str, Any]) -> str:
        """Sign with the agent account, broadcast, return the tx hash."""

    def wait_for_confirmation(
        self,
        tx_hash: str,
        confirmations: int = 1,
        poll_interval: float = 3.0,
        max_attempts: int = 60,
    ) -> TransactionReceipt:
        """
        Poll until a transaction has `confirmations` blocks on top of it.

        Raises:
            ConfirmationTimeoutError: If not confirmed within max_attempts polls.
                The transaction may still land; treat the status as unknown.
        """
        logger.info(f"Waiting for {confirmations} confirmation(s) for tx: {tx_hash}")

        for attempt in range(max_attempts):
            receipt = self.get_transaction_receipt(tx_hash)
            if receipt is not None:
                confirmation_count = self.get_block_number() - receipt.block_number
                if confirmation_count >= confirmations:
                    logger.info(f"Transaction {tx_hash} confirmed ({confirmation_count} confirmations)")
                    return receipt.model_copy(update={"confirmations": confirmation_count})

            if attempt < max_attempts - 1:
                time.sleep(poll_interval)

        raise ConfirmationTimeoutError(tx_hash)


class Web3ChainGateway(ChainGateway):
    """
    Chain gateway over a JSON-RPC endpoint.

    Every RPC call is retried with exponential backoff. Transport failures
    that survive the retries surface as UpstreamUnavailableError; they are
    never reported as a zero balance or a successful quote.
    """

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        chain_id: Optional[int] = None,
        private_key: Optional[str] = None,
        web3: Optional[Web3] = None,
        max_retries: Optional[int] = None,
        retry_base_delay_ms: Optional[int] = None,
        retry_max_delay_ms: int = 5000,
    ):
        """
        Initialize the gateway.

        Args:
            rpc_url: JSON-RPC endpoint (default: from config)
            chain_id: Chain id used when signing (default: from config)
            private_key: Agent key used by send_transaction
            web3: Pre-built Web3 instance (tests inject a mock)
            max_retries: Retry attempts per RPC call
            retry_base_delay_ms: Base delay for exponential backoff
        """
        self.rpc_url = rpc_url or default_settings.rpc_url
        self.chain_id = chain_id if chain_id is not None else default_settings.chain_id
        self.w3 = web3 or Web3(Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": 10}))
        self.max_retries = max_retries if max_retries is not None else default_settings.rpc_max_retries
        self.retry_base_delay_ms = (
            retry_base_delay_ms if retry_base_delay_ms is not None
            else default_settings.rpc_retry_base_delay_ms
        )
        self.retry_max_delay_ms = retry_max_delay_ms

        self.account = Account.from_key(private_key) if private_key else None
        if self.account:
            logger.info(f"Wallet loaded: {self.account.address}")

    def _call(self, description: str, fn: Callable[..., Any], *args: Any) -> Any:
        """Run an RPC call with exponential backoff on transport errors."""
        retry_count = 0
        last_error: Optional[Exception] = None

        while retry_count <= self.max_retries:
            try:
                return fn(*args)
            except NODE_ANSWERS:
                # The node answered; retrying will not change the answer
                raise
            except Exception as e:
                last_error = e
                retry_count += 1
                logger.warning(f"{description} failed (attempt {retry_count}): {e}")

                if retry_count <= self.max_retries:
                    delay_ms = min(
                        self.retry_base_delay_ms * (2 ** (retry_count - 1)),
                        self.retry_max_delay_ms,
                    )
                    time.sleep(delay_ms / 1000)

        logger.error(f"{description} unavailable after {retry_count} attempts: {last_error}")
        raise UpstreamUnavailableError(f"{description} unavailable: {last_error}")

    def get_gas_price(self) -> GasPrice:
        wei = int(self._call("Gas price", lambda: self.w3.eth.gas_price))
        return GasPrice(wei=wei, gwei=str(to_gwei(wei)))

    def estimate_gas(self, transaction: Dict[str, Any]) -> GasEstimate:
        tx = self._normalize_tx(transaction)
        try:
            gas_limit = int(self._call("Gas estimation", self.w3.eth.estimate_gas, tx))
        except NODE_REJECTIONS as e:
            logger.error(f"Gas estimation error: {e}")
            raise ChainExecutionError(f"Cannot estimate gas for this transaction: {e}")

        gas_price = self.get_gas_price()
        cost_wei = gas_limit * gas_price.wei

        logger.info(f"Gas estimate: {gas_limit} units, cost: {format_native(cost_wei)}")

        return GasEstimate(
            gas_limit=gas_limit,
            gas_price_wei=gas_price.wei,
            gas_price_gwei=gas_price.gwei,
            estimated_cost_wei=cost_wei,
            estimated_cost_native=format_native(cost_wei),
        )

    def get_balance(self, address: str) -> Balance:
        if not self.validate_address(address):
            raise ValueError(f"Invalid wallet address format: {address}")

        wei = int(self._call("Balance query", self.w3.eth.get_balance, to_checksum_address(address)))
        return Balance(address=address, balance_wei=wei, balance_native=format_native(wei))

    def get_block_number(self) -> int:
        return int(self._call("Block number", lambda: self.w3.eth.block_number))

    def get_transaction_receipt(self, tx_hash: str) -> Optional[TransactionReceipt]:
        try:
            receipt = self._call("Receipt query", self.w3.eth.get_transaction_receipt, tx_hash)
        except TransactionNotFound:
            return None

        if receipt is None or receipt.get("blockNumber") is None:
            return None

        return TransactionReceipt(
            tx_hash=tx_hash,
            block_number=int(receipt["blockNumber"]),
            status="success" if receipt.get("status") == 1 else "failed",
            gas_used=int(receipt.get("gasUsed", 0)),
            from_address=receipt.get("from"),
            to_address=receipt.get("to"),
            contract_address=receipt.get("contractAddress"),
        )

    def send_transaction(self, transaction: Dict[str, Any]) -> str:
        if self.account is None:
            raise ConfigurationError("No signer key configured for sending transactions")

        tx = self._normalize_tx({"from": self.account.address, **transaction})
        tx.setdefault("chainId", self.chain_id)
        if "nonce" not in tx:
            tx["nonce"] = int(self._call(
                "Nonce query", self.w3.eth.get_transaction_count, self.account.address, "pending",
            ))
        if "gasPrice" not in tx and "maxFeePerGas" not in tx:
            tx["gasPrice"] = self.get_gas_price().wei

        if "gas" not in tx:
            tx["gas"] = self.estimate_gas(tx).gas_limit

        try:
            signed = self.account.sign_transaction(tx)
        except ValueError as e:
            raise ChainExecutionError(f"Cannot sign transaction: {e}")

        try:
            tx_hash = self._call("Broadcast", self.w3.eth.send_raw_transaction, signed.raw_transaction)
        except NODE_REJECTIONS as e:
            logger.error(f"Transaction rejected by node: {e}")
            raise ChainExecutionError(f"Transaction rejected: {e}")
        except UpstreamUnavailableError as e:
            # The node may have accepted the raw transaction before the link failed
            local_hash = Web3.to_hex(signed.hash)
            logger.error(f"Broadcast of {local_hash} not acknowledged: {e}")
            raise ConfirmationTimeoutError(local_hash, f"Broadcast of {local_hash} not acknowledged; status unknown")

        hex_hash = Web3.to_hex(tx_hash)
        logger.info(f"Transaction broadcast: {hex_hash}")
        return hex_hash

    @staticmethod
    def _normalize_tx(transaction: Dict[str, Any]) -> Dict[str, Any]:
        """Checksum address fields and drop empty ones."""
        tx = {k: v for k, v in transaction.items() if v is not None}
        for key in ("from", "to"):
            if key in tx:
                tx[key] = to_checksum_address(tx[key])
        if "value" in tx:
            tx["value"] = int(tx["value"])
        return tx
