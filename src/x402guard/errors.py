"""Exception taxonomy for the payment engine."""

from typing import Any, Dict, List, Optional


class X402Error(Exception):
    """Base error. Always carries a human-readable message."""

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        self.message = message
        self.errors = errors or []
        super().__init__(self.message)


class ValidationError(X402Error):
    """Malformed input rejected before any state mutation."""


class AddressFormatError(ValidationError):
    """One or more addresses failed the chain address-format check."""

    def __init__(self, address: str):
        self.address = address
        super().__init__(
            f"Invalid address: {address}",
            errors=[{"field": "address", "value": address}],
        )


class PolicyViolationError(X402Error):
    """Payment blocked by the user's spend policy."""

    def __init__(self, violations: List[str]):
        self.violations = list(violations)
        super().__init__(f"Policy violation: {', '.join(self.violations)}")


class PaymentRejectedError(X402Error):
    """Signature, expiry or replay check failed."""

    def __init__(self, message: str, duplicate: bool = False):
        self.duplicate = duplicate
        super().__init__(message)


class SignatureError(X402Error):
    """A payload could not be signed."""


class StorageError(X402Error):
    """The ledger store rejected or could not complete an operation."""


class UpstreamUnavailableError(X402Error):
    """The chain RPC could not be reached after retries."""


class ConfirmationTimeoutError(UpstreamUnavailableError):
    """A transaction was not confirmed in time. Its status is unknown."""

    def __init__(self, tx_hash: str, message: Optional[str] = None):
        self.tx_hash = tx_hash
        super().__init__(message or f"Timed out waiting for confirmation of {tx_hash}")


class ChainExecutionError(X402Error):
    """The chain action was dispatched and failed."""


class ConfigurationError(X402Error):
    """Required configuration is missing or invalid."""
