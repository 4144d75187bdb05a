"""Chain gateway data models."""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class GasPrice(BaseModel):
    """Current network gas price."""

    wei: int = Field(ge=0)
    gwei: str = Field(description="Gas price in gwei, decimal string")


class GasEstimate(BaseModel):
    """Gas quote for a transaction."""

    gas_limit: int = Field(ge=0)
    gas_price_wei: int = Field(ge=0)
    gas_price_gwei: str = Field(description="Gas price in gwei, decimal string")
    estimated_cost_wei: int = Field(ge=0, description="gas_limit * gas_price")
    estimated_cost_native: str = Field(description="Estimated cost in native unit")


class Balance(BaseModel):
    """Balance of an address."""

    address: str
    balance_wei: int = Field(ge=0)
    balance_native: str


class TransactionReceipt(BaseModel):
    """Confirmed (or reverted) transaction."""

    tx_hash: str
    block_number: int
    confirmations: int = 0
    status: str = Field(description="success or failed")
    gas_used: int = 0
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    contract_address: Optional[str] = None


class ChainActionResult(BaseModel):
    """Outcome of a dispatched chain action."""

    tx_hash: str
    status: str = Field(description="success, failed or pending")
    gas_used: Optional[int] = None
    details: Dict[str, Any] = Field(default_factory=dict)
