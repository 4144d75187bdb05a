"""Native-unit / smallest-unit conversion.

All limit and spend arithmetic happens on integers in the smallest unit
(wei). Decimal strings only exist at the edges.
"""

from decimal import Decimal, InvalidOperation, localcontext
from typing import Union

from eth_utils import from_wei, to_wei

from x402guard.errors import ValidationError


NATIVE_UNIT = "ether"

AmountLike = Union[str, int, Decimal]


def to_smallest_unit(amount: AmountLike) -> int:
    """
    Convert a native-unit amount ("0.1") to the smallest unit (10**17).

    Raises:
        ValidationError: If the amount is malformed, negative or finer than 1 wei
    """
    if isinstance(amount, float):
        raise ValidationError(f"Malformed amount: {amount!r} (floats are not accepted)")

    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation:
        raise ValidationError(f"Malformed amount: {amount!r}")

    if not value.is_finite() or value < 0:
        raise ValidationError(f"Malformed amount: {amount!r}")

    try:
        wei = to_wei(value, NATIVE_UNIT)
    except ValueError as e:
        raise ValidationError(f"Amount out of range: {amount!r} ({e})")

    with localcontext() as ctx:
        ctx.prec = 999
        exact = value.scaleb(18)
    if Decimal(wei) != exact:
        raise ValidationError(f"Amount {amount!r} is finer than the smallest unit")

    return wei


def to_native_unit(value: Union[int, str]) -> Decimal:
    """Convert a smallest-unit integer (or its string form) to a native-unit Decimal."""
    wei = int(value)
    if wei == 0:
        return Decimal(0)
    if wei < 0:
        return -Decimal(from_wei(-wei, NATIVE_UNIT))
    return Decimal(from_wei(wei, NATIVE_UNIT))


def format_native(value: Union[int, str]) -> str:
    """Smallest-unit value as a plain native-unit decimal string ("0.1", "1")."""
    native = to_native_unit(value)
    if native == 0:
        return "0"
    return format(native.normalize(), "f")


def to_gwei(wei: Union[int, str]) -> Decimal:
    """Smallest-unit gas price to gwei."""
    value = int(wei)
    if value == 0:
        return Decimal(0)
    return Decimal(from_wei(value, "gwei"))
