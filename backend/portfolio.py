"""
Portfolio valuation and holdings transforms.

Everything here is pure: functions take a portfolio (and prices) and return a
new portfolio plus the notional trades that would produce it. Persistence,
ledger entries and settlement are the caller's job.
"""

import copy
import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List

from db import Asset, Portfolio
from errors import InsufficientBalanceError, InvalidAmountError, InvalidWeightsError
from price_service import PriceQuote

# ── Constants ─────────────────────────────────────────────────────────────

WEIGHT_TOTAL = 100.0
WEIGHT_TOLERANCE = 0.01


# ── Data classes ──────────────────────────────────────────────────────────

@dataclass
class Trade:
    asset: str
    action: str  # "buy" | "sell"
    amount: float
    usd_value: float

    def to_dict(self) -> dict:
        return {
            "asset": self.asset,
            "action": self.action,
            "amount": self.amount,
            "usdValue": self.usd_value,
        }


@dataclass
class TransformResult:
    portfolio: Portfolio
    trades: List[Trade] = field(default_factory=list)


# ── Formatting ────────────────────────────────────────────────────────────

def fmt_usd(value: float) -> str:
    return f"${value:,.2f}"


def fmt_pct(value: float) -> str:
    return f"{value:.2f}%"


# ── Validation ────────────────────────────────────────────────────────────

def validate_weights(weights: Iterable[float]) -> float:
    """
    Check each weight is within 0-100 and the total is 100 (±0.01).

    Returns:
        Total weight

    Raises:
        InvalidWeightsError
    """
    weights = list(weights)
    if not weights:
        raise InvalidWeightsError(0.0, "At least one asset is required")
    for weight in weights:
        if not math.isfinite(weight) or weight < 0 or weight > WEIGHT_TOTAL:
            raise InvalidWeightsError(sum(weights), f"Asset weight must be between 0 and 100 (got {weight})")
    total = sum(weights)
    if abs(total - WEIGHT_TOTAL) > WEIGHT_TOLERANCE:
        raise InvalidWeightsError(total)
    return total


# ── Valuation ─────────────────────────────────────────────────────────────

def summarize(assets: List[Asset]) -> tuple[float, float, float]:
    """(total value, total 24h USD change, 24h change percentage) of assets."""
    total_value = 0.0
    total_change = 0.0
    for asset in assets:
        total_value += asset.current_value
        total_change += asset.current_value * (asset.change_24h / 100)
    pct = (total_change / total_value) * 100 if total_value > 0 else 0.0
    return total_value, total_change, pct


def valuate(portfolio: Portfolio, prices: Dict[str, PriceQuote]) -> Portfolio:
    """Recompute per-asset and total values from holdings and current prices."""
    result = copy.deepcopy(portfolio)

    for asset in result.assets:
        quote = prices.get(asset.symbol)
        if quote is None:
            asset.current_value = 0.0
            asset.price_usd = 0.0
            asset.change_24h = 0.0
            continue
        asset.price_usd = quote.price_usd
        asset.change_24h = quote.change_24h
        asset.current_value = asset.amount * quote.price_usd

    result.total_value, result.change_24h, result.change_24h_percentage = summarize(result.assets)
    return result


def aggregate_stats(portfolios: List[Portfolio]) -> dict:
    """Totals across an owner's (already valuated) portfolios."""
    total_value = sum(p.total_value for p in portfolios)
    total_change = sum(p.change_24h for p in portfolios)
    pct = (total_change / total_value) * 100 if total_value > 0 else 0.0
    return {
        "totalValue": total_value,
        "change24h": total_change,
        "change24hPercentage": pct,
        "activeCount": sum(1 for p in portfolios if p.is_active),
        "totalCount": len(portfolios),
    }


# ── Transforms ────────────────────────────────────────────────────────────

def allocate(assets: List[Asset], total_value: float) -> None:
    """Set each asset to its target share of total_value at its current price."""
    for asset in assets:
        target_value = total_value * (asset.weight / 100)
        asset.current_value = target_value
        asset.amount = target_value / asset.price_usd if asset.price_usd > 0 else 0.0


def rebalance(portfolio: Portfolio) -> TransformResult:
    """Move every asset to its target weight, keeping total value."""
    result = copy.deepcopy(portfolio)
    allocate(result.assets, result.total_value)
    _, result.change_24h, result.change_24h_percentage = summarize(result.assets)

    trades = [
        Trade(asset.symbol, "buy", asset.amount, asset.current_value)
        for asset in result.assets
        if asset.current_value > 0
    ]
    return TransformResult(result, trades)


def deposit(portfolio: Portfolio, amount: float) -> TransformResult:
    """Add amount USD to the basket and allocate by weight."""
    if not math.isfinite(amount) or amount <= 0:
        raise InvalidAmountError(amount)

    result = copy.deepcopy(portfolio)
    previous = {asset.symbol: asset.amount for asset in result.assets}

    result.total_value = portfolio.total_value + amount
    allocate(result.assets, result.total_value)
    _, result.change_24h, result.change_24h_percentage = summarize(result.assets)

    trades = []
    for asset in result.assets:
        bought = asset.amount - previous.get(asset.symbol, 0.0)
        if bought > 0:
            trades.append(Trade(asset.symbol, "buy", bought, bought * asset.price_usd))
    return TransformResult(result, trades)


def withdraw(portfolio: Portfolio, amount: float) -> TransformResult:
    """Shrink every asset by the same ratio so that amount USD leaves the basket."""
    if not math.isfinite(amount) or amount <= 0:
        raise InvalidAmountError(amount)
    if amount > portfolio.total_value:
        raise InsufficientBalanceError(amount, portfolio.total_value)

    ratio = amount / portfolio.total_value
    keep = 1 - ratio

    result = copy.deepcopy(portfolio)
    trades = []
    for asset in result.assets:
        sold = asset.amount * ratio
        if sold > 0:
            trades.append(Trade(asset.symbol, "sell", sold, asset.current_value * ratio))
        asset.amount *= keep
        asset.current_value *= keep

    result.total_value = portfolio.total_value - amount
    result.change_24h = portfolio.change_24h * keep
    return TransformResult(result, trades)


def disable(portfolio: Portfolio) -> TransformResult:
    """Liquidate everything and deactivate the portfolio."""
    trades = [
        Trade(asset.symbol, "sell", asset.amount, asset.current_value)
        for asset in portfolio.assets
        if asset.amount > 0
    ]

    result = copy.deepcopy(portfolio)
    for asset in result.assets:
        asset.amount = 0.0
        asset.current_value = 0.0
    result.total_value = 0.0
    result.change_24h = 0.0
    result.change_24h_percentage = 0.0
    result.is_active = False
    return TransformResult(result, trades)


# ── Serialization ─────────────────────────────────────────────────────────

def asset_to_dict(asset: Asset) -> dict:
    return {
        "symbol": asset.symbol,
        "name": asset.name,
        "address": asset.address,
        "weight": asset.weight,
        "amount": asset.amount,
        "currentValue": asset.current_value,
        "priceUSD": asset.price_usd,
        "change24h": asset.change_24h,
    }


def portfolio_to_dict(portfolio: Portfolio) -> dict:
    return {
        "id": portfolio.id,
        "name": portfolio.name,
        "userAddress": portfolio.owner_address,
        "smartAccountAddress": portfolio.settlement_address,
        "isActive": portfolio.is_active,
        "totalValue": portfolio.total_value,
        "change24h": portfolio.change_24h,
        "change24hPercentage": portfolio.change_24h_percentage,
        "createdAt": portfolio.created_at,
        "updatedAt": portfolio.updated_at,
        "assets": [asset_to_dict(a) for a in portfolio.assets],
    }
