"""
Portfolio operations: creation, listing and the mutating pipeline.

Every mutation (rebalance, deposit, withdraw, disable) runs the same steps:

1. load the portfolio and valuate it at current prices
2. apply a pure transform and build the settlement request (validation
   errors surface here, before any write)
3. open a pending ledger entry
4. persist the new holdings and totals
5. settle, then finalize the ledger entry as completed or failed

A persistence failure in step 4 leaves the ledger entry pending.
"""

from dataclasses import dataclass, field
from typing import Callable, List, Optional

import portfolio as engine
from addresses import format_address, generate_address, normalize_address, validate_address
from db import Asset, Database, Portfolio, Transaction
from errors import (
    InvalidInputError,
    PersistenceError,
    PortfolioInactiveError,
    PortfolioNotFoundError,
    SettlementFailedError,
)
from ledger import STATUS_COMPLETED, STATUS_FAILED, TransactionLedger
from locks import KeyedLock
from price_service import PriceService
from settlement import (
    SettlementExecutor,
    SettlementRequest,
    get_usdc_address,
    usdc_to_base_units,
)
from wallets import WalletIdentityMapper


@dataclass
class MutationOutcome:
    transaction_id: str
    tx_hash: str
    trades: List[engine.Trade]
    portfolio: Portfolio
    previous_value: float = 0.0
    extra: dict = field(default_factory=dict)


class PortfolioService:
    def __init__(
        self,
        db: Database,
        price_service: PriceService,
        ledger: TransactionLedger,
        settlement: SettlementExecutor,
        wallet_mapper: WalletIdentityMapper,
        chain_id: int = 8453,
    ):
        self.db = db
        self.price_service = price_service
        self.ledger = ledger
        self.settlement = settlement
        self.wallet_mapper = wallet_mapper
        self.chain_id = chain_id
        self._portfolio_locks = KeyedLock()

    # ── Reads ─────────────────────────────────────────────────────────────

    def _load(self, portfolio_id: str) -> Portfolio:
        portfolio = self.db.get_portfolio(portfolio_id)
        if portfolio is None:
            raise PortfolioNotFoundError(portfolio_id)
        return portfolio

    def valuate(self, portfolio: Portfolio) -> Portfolio:
        prices = self.price_service.get_batch_prices(a.symbol for a in portfolio.assets)
        return engine.valuate(portfolio, prices)

    def get_portfolio(self, portfolio_id: str) -> Portfolio:
        return self.valuate(self._load(portfolio_id))

    def list_portfolios(self, owner_address: str) -> dict:
        """Valuated portfolios of owner plus aggregate stats."""
        owner = normalize_address(owner_address)
        portfolios = [self.valuate(p) for p in self.db.get_portfolios_by_owner(owner)]
        stats = engine.aggregate_stats(portfolios)
        print(f"[Portfolio] {len(portfolios)} portfolios for {format_address(owner)}, "
              f"total {engine.fmt_usd(stats['totalValue'])}")
        return {"portfolios": portfolios, "stats": stats}

    def list_transactions(self, portfolio_id: str) -> List[Transaction]:
        self._load(portfolio_id)
        return self.ledger.list_for_portfolio(portfolio_id)

    # ── Creation ──────────────────────────────────────────────────────────

    def create_portfolio(self, owner_address: str, name: str, assets: List[dict]) -> Portfolio:
        """
        Create a portfolio with zero holdings.

        Args:
            owner_address: Owner's primary wallet address
            name: Display name
            assets: [{"symbol", "address", "weight", "name"?}]

        Raises:
            InvalidInputError subclasses for bad name/address/weights
        """
        name = (name or "").strip()
        if not name:
            raise InvalidInputError("Portfolio name is required")

        owner = normalize_address(owner_address)
        engine.validate_weights(a.get("weight", 0) for a in assets)

        rows = []
        seen = set()
        for item in assets:
            symbol = (item.get("symbol") or "").strip().upper()
            if not symbol:
                raise InvalidInputError("Asset symbol is required")
            if symbol in seen:
                raise InvalidInputError(f"Duplicate asset symbol: {symbol}")
            seen.add(symbol)
            rows.append(Asset(
                symbol=symbol,
                name=item.get("name") or symbol,
                address=validate_address(item.get("address") or ""),
                weight=float(item["weight"]),
            ))

        self.wallet_mapper.get_or_create(owner)

        settlement_address = generate_address()
        created = self.db.insert_portfolio(owner, name, settlement_address)
        try:
            self.db.insert_assets(created.id, rows)
        except PersistenceError:
            print(f"[Portfolio] Asset insert failed, rolling back portfolio {created.id}")
            self.db.delete_portfolio(created.id)
            raise

        print(f"[Portfolio] Created '{name}' ({created.id}) for {format_address(owner)} "
              f"with {len(rows)} assets, smart account {format_address(settlement_address)}")
        return self._load(created.id)

    # ── Mutations ─────────────────────────────────────────────────────────

    def _persist(self, portfolio: Portfolio) -> None:
        self.db.update_assets(portfolio.id, portfolio.assets)
        self.db.update_portfolio_value(
            portfolio.id,
            portfolio.total_value,
            portfolio.change_24h,
            portfolio.change_24h_percentage,
        )
        if not portfolio.is_active:
            self.db.disable_portfolio(portfolio.id)

    def _mutate(
        self,
        portfolio_id: str,
        kind: str,
        transform: Callable[[Portfolio], engine.TransformResult],
        ledger_amount: Callable[[Portfolio], float],
        build_request: Optional[Callable[[Portfolio, engine.TransformResult], SettlementRequest]] = None,
        allow_inactive: bool = False,
        tx_hash: Optional[str] = None,
    ) -> MutationOutcome:
        with self._portfolio_locks.hold(portfolio_id):
            current = self.valuate(self._load(portfolio_id))
            if not current.is_active and not allow_inactive:
                raise PortfolioInactiveError(portfolio_id)

            result = transform(current)
            amount = ledger_amount(current)

            # Built before any write: base-unit conversion can still reject the amount
            if build_request is not None:
                request = build_request(current, result)
            else:
                request = SettlementRequest(kind=kind, portfolio_id=portfolio_id,
                                            settlement_address=current.settlement_address)
            request.trades = [t.to_dict() for t in result.trades]
            request.reference = tx_hash

            transaction_id = self.ledger.create(portfolio_id, current.owner_address, kind, amount, tx_hash)

            try:
                self._persist(result.portfolio)
            except PersistenceError:
                print(f"[Ledger] Transaction {transaction_id} ({kind}) left pending: "
                      f"persistence failed mid-operation for portfolio {portfolio_id}")
                raise

            try:
                settled = self.settlement.execute(request)
            except Exception as e:
                self.ledger.finalize(transaction_id, STATUS_FAILED, error_message=str(e))
                raise SettlementFailedError(kind, str(e)) from e

            if not settled.ok:
                self.ledger.finalize(transaction_id, STATUS_FAILED, settled.reference, settled.error)
                raise SettlementFailedError(kind, settled.error or settled.status)

            self.ledger.finalize(transaction_id, STATUS_COMPLETED, settled.reference)
            updated = self._load(portfolio_id)

        print(f"[Portfolio] {kind} done for {portfolio_id}: {len(result.trades)} trades, "
              f"value {engine.fmt_usd(current.total_value)} -> {engine.fmt_usd(updated.total_value)}")
        return MutationOutcome(
            transaction_id=transaction_id,
            tx_hash=settled.reference,
            trades=result.trades,
            portfolio=updated,
            previous_value=current.total_value,
        )

    def rebalance(self, portfolio_id: str, tx_hash: Optional[str] = None) -> MutationOutcome:
        """Re-target holdings to weights. tx_hash references a preceding on-chain deposit."""
        return self._mutate(
            portfolio_id,
            "rebalance",
            engine.rebalance,
            ledger_amount=lambda p: p.total_value,
            tx_hash=tx_hash,
        )

    def deposit(self, portfolio_id: str, amount: float, tx_hash: Optional[str] = None) -> MutationOutcome:
        def build_request(current: Portfolio, result: engine.TransformResult) -> SettlementRequest:
            return SettlementRequest(
                kind="deposit",
                portfolio_id=portfolio_id,
                settlement_address=current.settlement_address,
                amount_usd=amount,
                token_address=get_usdc_address(self.chain_id),
                amount_base_units=usdc_to_base_units(amount),
            )

        return self._mutate(
            portfolio_id,
            "deposit",
            lambda p: engine.deposit(p, amount),
            ledger_amount=lambda p: amount,
            build_request=build_request,
            tx_hash=tx_hash,
        )

    def withdraw(self, portfolio_id: str, amount: float, recipient: str) -> MutationOutcome:
        recipient = validate_address(recipient)

        def build_request(current: Portfolio, result: engine.TransformResult) -> SettlementRequest:
            return SettlementRequest(
                kind="withdraw",
                portfolio_id=portfolio_id,
                settlement_address=current.settlement_address,
                amount_usd=amount,
                token_address=get_usdc_address(self.chain_id),
                amount_base_units=usdc_to_base_units(amount),
                recipient=recipient,
            )

        outcome = self._mutate(
            portfolio_id,
            "withdraw",
            lambda p: engine.withdraw(p, amount),
            ledger_amount=lambda p: amount,
            build_request=build_request,
        )
        outcome.extra = {"amount": amount, "recipient": recipient}
        return outcome

    def disable(self, portfolio_id: str) -> MutationOutcome:
        outcome = self._mutate(
            portfolio_id,
            "disable",
            engine.disable,
            ledger_amount=lambda p: p.total_value,
            allow_inactive=True,
        )
        outcome.extra = {"usdcBalance": outcome.previous_value}
        return outcome
