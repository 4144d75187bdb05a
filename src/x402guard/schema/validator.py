"""
Schema Validator

Parses raw request payloads into `PaymentIntent` objects. Nothing that fails
here reaches the policy engine or the signer.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from x402guard.errors import ValidationError
from x402guard.schema.intent_schema import PaymentIntent


logger = logging.getLogger(__name__)

RawIntent = Union[str, bytes, Dict[str, Any]]


def describe_intent(payload: Dict[str, Any]) -> str:
    """Short `user/nonce` label for log lines and error messages."""
    user = payload.get("user") or "?"
    nonce = payload.get("nonce")
    return f"{user}/nonce {nonce}" if nonce is not None else str(user)


class SchemaValidator:
    """Strict parsing of payment intents from JSON or dicts."""

    def validate(self, data: RawIntent) -> PaymentIntent:
        """
        Parse a payment intent.

        Field errors carry the dotted field path, the pydantic error type,
        a message and the rejected value, so a client can point at the
        offending input.

        Raises:
            ValidationError: PARSE_ERROR for undecodable input,
                VALIDATION_ERROR for schema violations
        """
        payload = self._load(data)

        try:
            intent = PaymentIntent.model_validate(payload)
        except PydanticValidationError as e:
            label = describe_intent(payload)
            errors = self._field_errors(e)
            logger.warning(f"Payment intent {label} rejected on {[err['field'] for err in errors]}")
            raise ValidationError(
                message=f"VALIDATION_ERROR: Invalid payment intent for {label}",
                errors=errors,
            )

        logger.debug(f"Payment intent {describe_intent(payload)} accepted")
        return intent

    def validate_safe(self, data: RawIntent) -> Tuple[Optional[PaymentIntent], Optional[ValidationError]]:
        """(intent, None) on success, (None, error) on failure."""
        try:
            return self.validate(data), None
        except ValidationError as e:
            return None, e

    @staticmethod
    def _load(data: RawIntent) -> Dict[str, Any]:
        if isinstance(data, dict):
            return data

        try:
            payload = json.loads(data)
        except (TypeError, ValueError) as e:
            logger.error(f"Undecodable payment intent: {e}")
            raise ValidationError(
                message="PARSE_ERROR: Payment intent is not valid JSON",
                errors=[{"type": "json_decode", "msg": str(e)}],
            )

        if not isinstance(payload, dict):
            raise ValidationError(
                message="PARSE_ERROR: Payment intent must be a JSON object",
                errors=[{"type": "json_type", "msg": f"got {type(payload).__name__}"}],
            )
        return payload

    @staticmethod
    def _field_errors(error: PydanticValidationError) -> List[Dict[str, Any]]:
        return [
            {
                "field": ".".join(str(loc) for loc in item["loc"]) or "intent",
                "type": item["type"],
                "msg": item["msg"],
                "value": item.get("input"),
            }
            for item in error.errors()
        ]
