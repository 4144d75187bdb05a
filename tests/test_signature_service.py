"""Tests for the Signature Service."""

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from x402guard.config import Settings
from x402guard.errors import ConfigurationError, SignatureError, ValidationError
from x402guard.signature import SignatureService

from conftest import AGENT_ADDRESS, AGENT_KEY, RECIPIENT, USER


NOW = 1760000000

OTHER_KEY = "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"


def payment_details(**overrides):
    details = {
        "user": USER,
        "agent": AGENT_ADDRESS,
        "action": "transfer",
        "amount": "0.05",
        "recipient": RECIPIENT,
        "nonce": 7,
        "timestamp": NOW,
        "expires": NOW + 3600,
    }
    details.update(overrides)
    return details


class TestPaymentSignatures:
    """Signing and verifying payment payloads."""

    def setup_method(self):
        self.service = SignatureService(private_key=AGENT_KEY, clock=lambda: NOW + 10)

    def test_signer_address(self):
        assert self.service.signer_address == AGENT_ADDRESS

    def test_missing_key_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            SignatureService(settings=Settings(signer_private_key=None))

    def test_sign_and_verify(self):
        signed = self.service.generate_payment_signature(payment_details())

        assert signed.signature.startswith("0x")
        assert len(signed.signature) == 132
        assert self.service.verify_signature(signed.signature, payment_details()) is True

    def test_message_matches_packed_encoding(self):
        """Signatures are over keccak256(encodePacked(...)) as a personal message."""
        expected_hash = Web3.solidity_keccak(
            ["address", "address", "string", "string", "address", "uint256", "uint256", "uint256"],
            [USER, AGENT_ADDRESS, "transfer", "0.05", RECIPIENT, 7, NOW, NOW + 3600],
        )

        signed = self.service.generate_payment_signature(payment_details())

        assert signed.message_hash == Web3.to_hex(expected_hash)
        recovered = Account.recover_message(encode_defunct(primitive=expected_hash), signature=signed.signature)
        assert recovered == AGENT_ADDRESS

    def test_lowercase_addresses_sign_the_same_message(self):
        signed = self.service.generate_payment_signature(payment_details())
        lowered = payment_details(user=USER.lower(), recipient=RECIPIENT.lower())

        assert self.service.verify_signature(signed.signature, lowered) is True

    @pytest.mark.parametrize("field,value", [
        ("amount", "0.06"),
        ("recipient", "0x90F79bf6EB2c4f870365E785982E1f101E93b906"),
        ("nonce", 8),
        ("expires", NOW + 7200),
        ("action", "swap"),
    ])
    def test_any_field_change_invalidates(self, field, value):
        signed = self.service.generate_payment_signature(payment_details())

        assert self.service.verify_signature(signed.signature, payment_details(**{field: value})) is False

    def test_signature_from_other_key_rejected(self):
        other = SignatureService(private_key=OTHER_KEY, clock=lambda: NOW)
        signed = other.generate_payment_signature(payment_details())

        assert self.service.verify_signature(signed.signature, payment_details()) is False

    def test_verify_never_raises(self):
        assert self.service.verify_signature("0xnothex", payment_details()) is False
        assert self.service.verify_signature("0x" + "00" * 65, {"amount": "1"}) is False

    def test_generate_missing_field_raises_signature_error(self):
        details = payment_details()
        del details["user"]

        with pytest.raises(SignatureError):
            self.service.generate_payment_signature(details)

    def test_defaults_agent_and_window(self):
        details = payment_details()
        for key in ("agent", "timestamp", "expires"):
            del details[key]

        signed = self.service.generate_payment_signature(details)

        assert signed.payload["agent"] == AGENT_ADDRESS
        assert signed.payload["timestamp"] == NOW + 10
        assert signed.payload["expires"] == NOW + 10 + 3600

    def test_verify_expiration(self):
        assert self.service.verify_expiration(payment_details()) is True
        assert self.service.verify_expiration(payment_details(expires=NOW - 1)) is False

    def test_expiring_exactly_now_is_expired(self):
        assert self.service.verify_expiration(payment_details(expires=NOW + 10)) is False

    def test_verify_nonce(self):
        assert self.service.verify_nonce(USER, 1) is True
        assert self.service.verify_nonce(USER, 0) is False
        assert self.service.verify_nonce(USER, -5) is False


class TestMultiActionAndContractCalls:
    """Batch and contract-call signatures."""

    def setup_method(self):
        self.service = SignatureService(private_key=AGENT_KEY, clock=lambda: NOW)

    def test_multi_action_roundtrip(self):
        actions = [
            {"type": "transfer", "target": RECIPIENT, "value": "0.01"},
            {"type": "call", "target": USER, "data": "0xa9059cbb"},
        ]

        signed = self.service.create_single_tx_signature(actions)

        assert signed.payload["agent"] == AGENT_ADDRESS
        assert 1 <= signed.payload["nonce"] < 1_000_000
        assert signed.payload["expires"] == NOW + 3600
        assert self.service.verify_multi_action_signature(signed.signature, signed.payload) is True

    def test_multi_action_tamper_detected(self):
        signed = self.service.create_single_tx_signature([{"type": "transfer", "target": RECIPIENT}])
        tampered = dict(signed.payload)
        tampered["actions"] = [{"type": "transfer", "target": USER}]

        assert self.service.verify_multi_action_signature(signed.signature, tampered) is False

    def test_empty_action_list_rejected(self):
        with pytest.raises(ValidationError):
            self.service.create_single_tx_signature([])

    def test_contract_call_roundtrip(self):
        signed = self.service.sign_contract_call(RECIPIENT, "approve", [USER, 1000])

        assert signed.payload["method"] == "approve"
        assert signed.payload["params"] == [USER, 1000]
        assert self.service.verify_contract_call_signature(signed.signature, signed.payload) is True

    def test_contract_call_params_are_signed(self):
        signed = self.service.sign_contract_call(RECIPIENT, "approve", [USER, 1000])
        tampered = {**signed.payload, "params": [USER, 1001]}

        assert self.service.verify_contract_call_signature(signed.signature, tampered) is False

    def test_contract_call_bad_address(self):
        with pytest.raises(SignatureError):
            self.service.sign_contract_call("0x1234", "approve", [])

    def test_payload_kinds_never_cross_verify(self):
        payment = self.service.generate_payment_signature(payment_details())
        batch = self.service.create_single_tx_signature([{"type": "transfer", "target": RECIPIENT}])
        call = self.service.sign_contract_call(RECIPIENT, "approve", [USER, 1000])

        assert self.service.verify_multi_action_signature(payment.signature, payment.payload) is False
        assert self.service.verify_contract_call_signature(payment.signature, payment.payload) is False
        assert self.service.verify_signature(batch.signature, batch.payload) is False
        assert self.service.verify_contract_call_signature(batch.signature, batch.payload) is False
        assert self.service.verify_signature(call.signature, call.payload) is False
        assert self.service.verify_multi_action_signature(call.signature, call.payload) is False

    def test_signature_bound_to_its_own_message_layout(self):
        batch = self.service.create_single_tx_signature([{"type": "transfer", "target": RECIPIENT}])
        call = self.service.sign_contract_call(RECIPIENT, "approve", [])

        # Each signature only recovers the agent against its own payload
        assert self.service.verify_multi_action_signature(call.signature, batch.payload) is False
        assert self.service.verify_contract_call_signature(batch.signature, call.payload) is False


class TestSignatureHelpers:
    """Decoding and EIP-712 signatures."""

    def setup_method(self):
        self.service = SignatureService(
            private_key=AGENT_KEY,
            settings=Settings(signer_private_key=AGENT_KEY, chain_id=97),
            clock=lambda: NOW,
        )

    def test_decode_signature(self):
        signed = self.service.generate_payment_signature(payment_details())

        decoded = self.service.decode_signature(signed.signature)

        assert decoded.r == signed.signature[:66]
        assert decoded.s == "0x" + signed.signature[66:130]
        assert decoded.v in (27, 28)

    def test_decode_rejects_wrong_length(self):
        with pytest.raises(ValidationError):
            self.service.decode_signature("0x1234")

    def test_typed_data_roundtrip(self):
        result = self.service.create_typed_data_signature(payment_details())

        assert result.typed_data["domain"] == {"name": "AgentOS", "version": "1", "chainId": 97}
        assert result.typed_data["primaryType"] == "Payment"
        assert self.service.verify_typed_data_signature(result.signature, result.typed_data) is True

    def test_typed_data_tamper_detected(self):
        result = self.service.create_typed_data_signature(payment_details())
        typed_data = {**result.typed_data, "message": {**result.typed_data["message"], "amount": "9"}}

        assert self.service.verify_typed_data_signature(result.signature, typed_data) is False
