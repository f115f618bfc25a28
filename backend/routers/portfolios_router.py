from typing import List, Optional

from fastapi import APIRouter, Query
from pydantic import BaseModel

from ledger import transaction_to_dict
from portfolio import portfolio_to_dict
from portfolio_service import MutationOutcome, PortfolioService


class AssetAllocationRequest(BaseModel):
    symbol: str
    contractAddress: str
    weight: float
    name: Optional[str] = None


class CreatePortfolioRequest(BaseModel):
    name: str
    ownerAddress: str
    assets: List[AssetAllocationRequest]


class RebalanceRequest(BaseModel):
    txHash: Optional[str] = None


class DepositRequest(BaseModel):
    amount: float
    txHash: Optional[str] = None


class WithdrawRequest(BaseModel):
    amount: float
    recipient: str


def _mutation_response(message: str, outcome: MutationOutcome) -> dict:
    return {
        "success": True,
        "message": message,
        "txHash": outcome.tx_hash,
        "trades": [t.to_dict() for t in outcome.trades],
        "portfolio": portfolio_to_dict(outcome.portfolio),
        **outcome.extra,
    }


def create_portfolios_router(*, service: PortfolioService) -> APIRouter:
    router = APIRouter()

    @router.post("/api/portfolios")
    def create_portfolio(body: CreatePortfolioRequest):
        """Create a portfolio with target weights and zero holdings."""
        portfolio = service.create_portfolio(
            body.ownerAddress,
            body.name,
            [
                {
                    "symbol": a.symbol,
                    "address": a.contractAddress,
                    "weight": a.weight,
                    "name": a.name,
                }
                for a in body.assets
            ],
        )
        return {"success": True, "portfolio": portfolio_to_dict(portfolio)}

    @router.get("/api/portfolios")
    def list_portfolios(address: str = Query(..., min_length=1)):
        """List owner's portfolios at current prices, with totals."""
        listing = service.list_portfolios(address)
        return {
            "success": True,
            "portfolios": [portfolio_to_dict(p) for p in listing["portfolios"]],
            "stats": listing["stats"],
        }

    @router.get("/api/portfolios/{portfolio_id}")
    def get_portfolio(portfolio_id: str):
        return {"success": True, "portfolio": portfolio_to_dict(service.get_portfolio(portfolio_id))}

    @router.get("/api/portfolios/{portfolio_id}/transactions")
    def get_transactions(portfolio_id: str):
        transactions = service.list_transactions(portfolio_id)
        return {"success": True, "transactions": [transaction_to_dict(t) for t in transactions]}

    @router.post("/api/portfolios/{portfolio_id}/rebalance")
    def rebalance_portfolio(portfolio_id: str, body: Optional[RebalanceRequest] = None):
        """Re-target holdings to weights (after an on-chain deposit, pass its txHash)."""
        tx_hash = body.txHash if body else None
        outcome = service.rebalance(portfolio_id, tx_hash=tx_hash)
        return _mutation_response("Portfolio rebalanced successfully", outcome)

    @router.post("/api/portfolios/{portfolio_id}/deposit")
    def deposit_to_portfolio(portfolio_id: str, body: DepositRequest):
        outcome = service.deposit(portfolio_id, body.amount, tx_hash=body.txHash)
        return {
            **_mutation_response("Deposit successful", outcome),
            "amount": body.amount,
        }

    @router.post("/api/portfolios/{portfolio_id}/withdraw")
    def withdraw_from_portfolio(portfolio_id: str, body: WithdrawRequest):
        """Withdraw USD value proportionally from every asset to recipient."""
        outcome = service.withdraw(portfolio_id, body.amount, body.recipient)
        return _mutation_response("Withdrawal successful", outcome)

    @router.post("/api/portfolios/{portfolio_id}/disable")
    def disable_portfolio(portfolio_id: str):
        """Liquidate all holdings to USDC and deactivate the portfolio."""
        outcome = service.disable(portfolio_id)
        return _mutation_response("Portfolio disabled successfully", outcome)

    return router
