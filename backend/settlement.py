"""
Settlement of portfolio operations.

The executor is where a real deployment would batch the trades into a
smart-account user operation and wait for confirmation. The simulated
executor sleeps for a bounded time and returns a random reference.
"""

import os
import secrets
import time
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Callable, Dict, List, Optional

from errors import InvalidAmountError

USDC_DECIMALS = 6
USDC_BASE = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
USDC_BASE_SEPOLIA = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"

SETTLEMENT_DELAY_SCALE = float(os.getenv("SETTLEMENT_DELAY_SCALE", "1.0"))
SETTLEMENT_DELAYS = {
    "rebalance": 2.0,
    "deposit": 2.0,
    "withdraw": 1.5,
    "disable": 2.5,
}

SETTLEMENT_COMPLETED = "completed"
SETTLEMENT_FAILED = "failed"


def get_usdc_address(chain_id: int) -> str:
    """USDC contract for the chain (Base mainnet, otherwise Base Sepolia)."""
    if chain_id == 8453:
        return USDC_BASE
    return USDC_BASE_SEPOLIA


def to_base_units(amount, decimals: int) -> str:
    """
    Convert a token amount to its integer base-unit string, truncating
    anything below the token's precision.

    Raises:
        InvalidAmountError: If amount is not a finite non-negative number or
            does not fit the decimal context
    """
    text = amount.strip() if isinstance(amount, str) else str(amount)
    try:
        value = Decimal(text)
    except InvalidOperation as e:
        raise InvalidAmountError(amount, "Invalid amount") from e
    if not value.is_finite() or value < 0:
        raise InvalidAmountError(amount)

    try:
        quantized = value.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_DOWN)
    except InvalidOperation as e:
        raise InvalidAmountError(amount, "Amount too large") from e
    return str(int(quantized.scaleb(decimals)))


def usdc_to_base_units(amount: float) -> str:
    """USD amount -> USDC base units (6 decimals)."""
    return to_base_units(amount, USDC_DECIMALS)


@dataclass
class SettlementRequest:
    kind: str
    portfolio_id: str
    settlement_address: str
    trades: List[dict] = field(default_factory=list)
    amount_usd: float = 0.0
    token_address: Optional[str] = None
    amount_base_units: Optional[str] = None
    recipient: Optional[str] = None
    reference: Optional[str] = None


@dataclass
class SettlementResult:
    reference: str
    status: str
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == SETTLEMENT_COMPLETED


class SettlementExecutor:
    """Interface: execute a settlement request and report its outcome."""

    def execute(self, request: SettlementRequest) -> SettlementResult:
        raise NotImplementedError


class SimulatedSettlementExecutor(SettlementExecutor):
    """Bounded sleep in place of on-chain confirmation; random tx reference."""

    def __init__(
        self,
        delays: Optional[Dict[str, float]] = None,
        scale: float = SETTLEMENT_DELAY_SCALE,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.delays = SETTLEMENT_DELAYS if delays is None else delays
        self.scale = scale
        self.sleep = sleep

    def execute(self, request: SettlementRequest) -> SettlementResult:
        delay = self.delays.get(request.kind, 0.0) * self.scale
        if delay > 0:
            self.sleep(delay)

        reference = "0x" + secrets.token_hex(32)
        details = f"{len(request.trades)} trades"
        if request.amount_base_units is not None:
            details += f", {request.amount_base_units} base units"
        print(f"[Settlement] {request.kind} for portfolio {request.portfolio_id} settled ({details}): {reference}")
        return SettlementResult(reference=reference, status=SETTLEMENT_COMPLETED)
