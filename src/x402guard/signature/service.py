"""
Signature Service

Binds payment intents to signatures from the agent signer.

Each payload type has its own canonical message: keccak256 over the
Solidity packed encoding of its fields in a fixed order. The 32-byte hash
is signed as an EIP-191 personal message, which keeps signatures
byte-compatible with web3 `encodePacked` + `accounts.sign`.
"""

import json
import logging
import secrets
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from eth_account import Account
from eth_account.messages import encode_defunct, encode_typed_data
from eth_utils import to_checksum_address
from pydantic import BaseModel
from web3 import Web3

from x402guard.config import Settings, settings as default_settings
from x402guard.errors import ConfigurationError, SignatureError, ValidationError
from x402guard.schema.intent_schema import DEFAULT_INTENT_TTL_SECONDS
from x402guard.signature.models import (
    BatchAction,
    ContractCallPayload,
    DecodedSignature,
    MultiActionPayload,
    PaymentPayload,
    SignedPayload,
    TypedDataSignature,
)


logger = logging.getLogger(__name__)


PAYMENT_TYPES = ["address", "address", "string", "string", "address", "uint256", "uint256", "uint256"]
MULTI_ACTION_TYPES = ["address", "string", "uint256", "uint256", "uint256"]
CONTRACT_CALL_TYPES = ["address", "address", "string", "string", "uint256", "uint256", "uint256"]

EIP712_DOMAIN_NAME = "AgentOS"
EIP712_DOMAIN_VERSION = "1"

EIP712_PAYMENT_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
    ],
    "Payment": [
        {"name": "user", "type": "address"},
        {"name": "agent", "type": "address"},
        {"name": "action", "type": "string"},
        {"name": "amount", "type": "string"},
        {"name": "recipient", "type": "address"},
        {"name": "nonce", "type": "uint256"},
        {"name": "timestamp", "type": "uint256"},
        {"name": "expires", "type": "uint256"},
    ],
}

# Non-payment payloads draw a random nonce below this bound
RANDOM_NONCE_BOUND = 1_000_000

PayloadLike = Union[Mapping[str, Any], BaseModel]


def _as_dict(data: PayloadLike) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        return data.model_dump()
    return dict(data)


class SignatureService:
    """
    Signs and verifies payment, multi-action and contract-call payloads.

    The expected signer for verification is the service's own agent key.
    """

    def __init__(
        self,
        private_key: Optional[str] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize the service.

        Args:
            private_key: Agent signing key (default: from config)
            settings: Settings (chain id for EIP-712, intent TTL)
            clock: Unix-time source

        Raises:
            ConfigurationError: If no signing key is available
        """
        self.settings = settings or default_settings
        key = private_key or self.settings.signer_private_key
        if not key:
            raise ConfigurationError("A signer private key is required")

        self._account = Account.from_key(key)
        self._clock = clock or time.time
        self.ttl_seconds = self.settings.intent_ttl_seconds or DEFAULT_INTENT_TTL_SECONDS

        logger.info(f"Signature Service initialized for signer {self._account.address}")

    @property
    def signer_address(self) -> str:
        return self._account.address

    def _now(self) -> int:
        return int(self._clock())

    # ------------------------------------------------------------------
    # Canonical messages
    # ------------------------------------------------------------------

    def payment_message_hash(self, payload: PaymentPayload) -> bytes:
        return Web3.solidity_keccak(PAYMENT_TYPES, [
            to_checksum_address(payload.user),
            to_checksum_address(payload.agent),
            payload.action,
            payload.amount,
            to_checksum_address(payload.recipient),
            payload.nonce,
            payload.timestamp,
            payload.expires,
        ])

    def multi_action_message_hash(self, payload: MultiActionPayload) -> bytes:
        actions = "|".join(
            f"{a.type}:{a.target}:{a.value}:{a.data}" for a in payload.actions
        )
        return Web3.solidity_keccak(MULTI_ACTION_TYPES, [
            to_checksum_address(payload.agent),
            actions,
            payload.nonce,
            payload.timestamp,
            payload.expires,
        ])

    def contract_call_message_hash(self, payload: ContractCallPayload) -> bytes:
        params_json = json.dumps(payload.params, separators=(",", ":"), ensure_ascii=False)
        return Web3.solidity_keccak(CONTRACT_CALL_TYPES, [
            to_checksum_address(payload.agent),
            to_checksum_address(payload.contract),
            payload.method,
            params_json,
            payload.nonce,
            payload.timestamp,
            payload.expires,
        ])

    def _sign_hash(self, message_hash: bytes) -> str:
        signed = Account.sign_message(encode_defunct(primitive=message_hash), private_key=self._account.key)
        return Web3.to_hex(signed.signature)

    def _recovers_signer(self, message_hash: bytes, signature: str) -> bool:
        recovered = Account.recover_message(encode_defunct(primitive=message_hash), signature=signature)
        is_valid = recovered.lower() == self._account.address.lower()
        logger.info(f"Signature verified: valid={is_valid}, recovered={recovered}")
        return is_valid

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def build_payment_payload(self, payment_details: PayloadLike) -> PaymentPayload:
        """Canonical payload, defaulting agent, timestamp and expires."""
        details = _as_dict(payment_details)
        now = self._now()
        return PaymentPayload(
            user=details["user"],
            agent=details.get("agent") or self._account.address,
            action=details["action"],
            amount=str(details["amount"]),
            recipient=details["recipient"],
            nonce=details["nonce"],
            timestamp=details.get("timestamp") or now,
            expires=details.get("expires") or now + self.ttl_seconds,
        )

    def generate_payment_signature(self, payment_details: PayloadLike) -> SignedPayload:
        """
        Sign a payment intent.

        Raises:
            SignatureError: If the payload cannot be built or signed
        """
        try:
            payload = self.build_payment_payload(payment_details)
            message_hash = self.payment_message_hash(payload)
            signature = self._sign_hash(message_hash)
        except (KeyError, ValueError, TypeError) as e:
            logger.error(f"Generate payment signature error: {e}")
            raise SignatureError(f"Failed to generate payment signature: {e}")

        logger.info(f"Payment signature generated for {payload.user} ({payload.action})")

        return SignedPayload(
            signature=signature,
            payload=payload.model_dump(),
            message_hash=Web3.to_hex(message_hash),
        )

    def verify_signature(self, signature: str, payment_details: PayloadLike) -> bool:
        """True iff `signature` is the agent's over the exact payment payload. Never raises."""
        try:
            payload = self.build_payment_payload(payment_details)
            return self._recovers_signer(self.payment_message_hash(payload), signature)
        except Exception as e:
            logger.error(f"Verify signature error: {e}")
            return False

    def verify_expiration(self, payload: PayloadLike) -> bool:
        """Strict: a payload expiring exactly now is expired."""
        expires = _as_dict(payload).get("expires")
        if expires is None:
            return False
        return int(expires) > self._now()

    def verify_nonce(self, user_id: str, nonce: int) -> bool:
        """
        Structural check only (nonce > 0).

        Consumed nonces are tracked by PaymentService, not here.
        """
        return isinstance(nonce, int) and nonce > 0

    # ------------------------------------------------------------------
    # Multi-action and contract calls
    # ------------------------------------------------------------------

    def _fresh_window(self) -> Dict[str, int]:
        now = self._now()
        return {
            "nonce": secrets.randbelow(RANDOM_NONCE_BOUND - 1) + 1,
            "timestamp": now,
            "expires": now + self.ttl_seconds,
        }

    def create_single_tx_signature(self, actions: List[PayloadLike]) -> SignedPayload:
        """Sign several actions as one batch."""
        if not actions:
            raise ValidationError("At least one action is required")

        try:
            payload = MultiActionPayload(
                agent=self._account.address,
                actions=[BatchAction(**_as_dict(a)) for a in actions],
                **self._fresh_window(),
            )
        except ValueError as e:
            raise ValidationError(f"Invalid action: {e}")

        message_hash = self.multi_action_message_hash(payload)
        signature = self._sign_hash(message_hash)

        logger.info(f"Multi-action signature created for {len(actions)} action(s)")

        return SignedPayload(
            signature=signature,
            payload=payload.model_dump(),
            message_hash=Web3.to_hex(message_hash),
        )

    def verify_multi_action_signature(self, signature: str, payload: PayloadLike) -> bool:
        try:
            parsed = MultiActionPayload.model_validate(_as_dict(payload))
            return self._recovers_signer(self.multi_action_message_hash(parsed), signature)
        except Exception as e:
            logger.error(f"Verify multi-action signature error: {e}")
            return False

    def sign_contract_call(self, contract_address: str, method: str, params: Optional[List[Any]] = None) -> SignedPayload:
        """
        Sign a contract method call.

        Raises:
            SignatureError: If the contract address is malformed
        """
        payload = ContractCallPayload(
            agent=self._account.address,
            contract=contract_address,
            method=method,
            params=list(params or []),
            **self._fresh_window(),
        )
        try:
            message_hash = self.contract_call_message_hash(payload)
        except ValueError as e:
            logger.error(f"Sign contract call error: {e}")
            raise SignatureError(f"Failed to sign contract call: {e}")

        signature = self._sign_hash(message_hash)

        logger.info(f"Contract call signed: {contract_address}.{method}")

        return SignedPayload(
            signature=signature,
            payload=payload.model_dump(),
            message_hash=Web3.to_hex(message_hash),
        )

    def verify_contract_call_signature(self, signature: str, payload: PayloadLike) -> bool:
        try:
            parsed = ContractCallPayload.model_validate(_as_dict(payload))
            return self._recovers_signer(self.contract_call_message_hash(parsed), signature)
        except Exception as e:
            logger.error(f"Verify contract call signature error: {e}")
            return False

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def decode_signature(self, signature: str) -> DecodedSignature:
        """Split a 65-byte hex signature into r, s, v."""
        text = signature if signature.startswith("0x") else f"0x{signature}"
        if len(text) != 132:
            raise ValidationError(f"Signature must be 65 bytes, got {(len(text) - 2) // 2}")

        try:
            v = int(text[130:132], 16)
        except ValueError:
            raise ValidationError("Signature is not hex encoded")

        return DecodedSignature(r=text[:66], s=f"0x{text[66:130]}", v=v)

    def create_typed_data_signature(
        self,
        data: PayloadLike,
        domain: str = EIP712_DOMAIN_NAME,
    ) -> TypedDataSignature:
        """
        EIP-712 signature over a Payment struct.

        Raises:
            SignatureError: If the data does not fit the Payment struct
        """
        payload = self.build_payment_payload(data)
        typed_data = {
            "types": EIP712_PAYMENT_TYPES,
            "primaryType": "Payment",
            "domain": {
                "name": domain,
                "version": EIP712_DOMAIN_VERSION,
                "chainId": self.settings.chain_id,
            },
            "message": payload.model_dump(),
        }

        try:
            signable = encode_typed_data(full_message=typed_data)
            signed = Account.sign_message(signable, private_key=self._account.key)
        except (ValueError, TypeError) as e:
            logger.error(f"Create EIP-712 signature error: {e}")
            raise SignatureError(f"Failed to create EIP-712 signature: {e}")

        logger.info("EIP-712 signature created")
        return TypedDataSignature(signature=Web3.to_hex(signed.signature), typed_data=typed_data)

    def verify_typed_data_signature(self, signature: str, typed_data: Dict[str, Any]) -> bool:
        try:
            recovered = Account.recover_message(encode_typed_data(full_message=typed_data), signature=signature)
        except Exception as e:
            logger.error(f"Verify EIP-712 signature error: {e}")
            return False
        return recovered.lower() == self._account.address.lower()
