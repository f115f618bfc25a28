"""
Database models and storage using a JSON document.

Holds portfolios, their assets, ledger transactions and user -> sub-wallet
mappings. Every write is saved to disk before the call returns.
"""

import copy
import json
import os
import threading
import uuid
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

from errors import PersistenceError, PortfolioNotFoundError

# Path relative to project root
PROJECT_ROOT = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR") or PROJECT_ROOT / "data")
DB_PATH = DATA_DIR / "vault.json"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Asset:
    """One weighted position inside a portfolio."""
    symbol: str
    name: str
    address: str
    weight: float
    amount: float = 0.0
    current_value: float = 0.0
    price_usd: float = 0.0
    change_24h: float = 0.0


@dataclass
class Portfolio:
    """Weighted basket owned by one user address."""
    id: str
    name: str
    owner_address: str
    settlement_address: str
    is_active: bool = True
    total_value: float = 0.0
    change_24h: float = 0.0
    change_24h_percentage: float = 0.0
    created_at: str = ""
    updated_at: str = ""
    assets: List[Asset] = field(default_factory=list)


@dataclass
class Transaction:
    """Ledger entry for one mutating portfolio operation."""
    id: str
    portfolio_id: str
    user_address: str
    type: str
    amount: float
    status: str
    tx_hash: Optional[str] = None
    error_message: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""


@dataclass
class UserWalletMapping:
    """Primary user address -> custodial sub-wallet."""
    user_address: str
    sub_wallet_address: str
    sub_wallet_id: str
    created_at: str
    last_used: str


def _portfolio_from_dict(data: dict) -> Portfolio:
    data = dict(data)
    data.pop("assets", None)
    return Portfolio(**data)


class Database:
    """JSON-based store for portfolios, assets, transactions and wallet mappings."""

    def __init__(self, path: Path = DB_PATH):
        self.path = Path(path)
        self.portfolios: Dict[str, Portfolio] = {}
        self.assets: Dict[str, List[Asset]] = {}
        self.transactions: Dict[str, Transaction] = {}
        self.wallets: Dict[str, UserWalletMapping] = {}
        self._lock = threading.RLock()

    def load(self):
        """Load database from JSON file."""
        if not self.path.exists():
            return

        with self._lock:
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, ValueError) as e:
                print(f"[DB] Error loading database: {e}")
                return

            self.portfolios = {p["id"]: _portfolio_from_dict(p) for p in data.get("portfolios", [])}
            self.assets = {
                portfolio_id: [Asset(**a) for a in assets]
                for portfolio_id, assets in data.get("assets", {}).items()
            }
            self.transactions = {t["id"]: Transaction(**t) for t in data.get("transactions", [])}
            self.wallets = {w["user_address"]: UserWalletMapping(**w) for w in data.get("wallets", [])}

    def save(self):
        """Save database to JSON file (write to temp file, then replace)."""
        with self._lock:
            data = {
                "portfolios": [asdict(p) for p in self.portfolios.values()],
                "assets": {pid: [asdict(a) for a in assets] for pid, assets in self.assets.items()},
                "transactions": [asdict(t) for t in self.transactions.values()],
                "wallets": [asdict(w) for w in self.wallets.values()],
            }
            tmp_path = self.path.with_suffix(".json.tmp")
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(tmp_path, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2, ensure_ascii=False)
                os.replace(tmp_path, self.path)
            except OSError as e:
                print(f"[DB] Error saving database: {e}")
                raise PersistenceError("save database", str(e)) from e

    def _save_or_restore(self, restore: Callable[[], None]):
        """Save; if that fails, put the in-memory state back with restore() and re-raise."""
        try:
            self.save()
        except PersistenceError:
            restore()
            raise

    # Rollback helpers (called with the lock held)
    def _restore_assets(self, portfolio_id: str, assets: Optional[List[Asset]]):
        if assets is None:
            self.assets.pop(portfolio_id, None)
        else:
            self.assets[portfolio_id] = assets

    def _restore_portfolio(self, portfolio: Portfolio, assets: Optional[List[Asset]] = None):
        self.portfolios[portfolio.id] = portfolio
        if assets is not None:
            self.assets[portfolio.id] = assets

    def _restore_transaction(self, transaction_id: str, transaction: Optional[Transaction]):
        if transaction is None:
            self.transactions.pop(transaction_id, None)
        else:
            self.transactions[transaction_id] = transaction

    # Portfolio operations
    def insert_portfolio(self, owner_address: str, name: str, settlement_address: str) -> Portfolio:
        """Create portfolio row without assets."""
        now = utc_now_iso()
        portfolio = Portfolio(
            id=str(uuid.uuid4()),
            name=name,
            owner_address=owner_address.lower(),
            settlement_address=settlement_address,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self.portfolios[portfolio.id] = portfolio
            self._save_or_restore(lambda: self.portfolios.pop(portfolio.id, None))
        return copy.deepcopy(portfolio)

    def insert_assets(self, portfolio_id: str, assets: List[Asset]) -> None:
        """Attach asset rows to an existing portfolio."""
        with self._lock:
            if portfolio_id not in self.portfolios:
                raise PortfolioNotFoundError(portfolio_id)
            previous = self.assets.get(portfolio_id)
            self.assets[portfolio_id] = [copy.deepcopy(a) for a in assets]
            self._save_or_restore(lambda: self._restore_assets(portfolio_id, previous))

    def delete_portfolio(self, portfolio_id: str) -> bool:
        """Remove portfolio and its assets. Returns False if it did not exist."""
        with self._lock:
            removed = self.portfolios.pop(portfolio_id, None)
            removed_assets = self.assets.pop(portfolio_id, None)
            if removed is None:
                return False

            def restore():
                self.portfolios[portfolio_id] = removed
                self._restore_assets(portfolio_id, removed_assets)

            self._save_or_restore(restore)
            return True

    def get_portfolio(self, portfolio_id: str) -> Optional[Portfolio]:
        """Get portfolio with its assets (detached copy)."""
        with self._lock:
            portfolio = self.portfolios.get(portfolio_id)
            if portfolio is None:
                return None
            result = copy.deepcopy(portfolio)
            result.assets = copy.deepcopy(self.assets.get(portfolio_id, []))
            return result

    def get_portfolios_by_owner(self, owner_address: str) -> List[Portfolio]:
        """All portfolios of an owner, newest first."""
        owner = owner_address.lower()
        with self._lock:
            ids = [p.id for p in self.portfolios.values() if p.owner_address == owner]
            portfolios = [self.get_portfolio(pid) for pid in ids]
        portfolios.sort(key=lambda p: p.created_at, reverse=True)
        return portfolios

    def update_assets(self, portfolio_id: str, assets: List[Asset]) -> None:
        """Overwrite holdings/valuation fields of each asset, matched by symbol."""
        with self._lock:
            stored = self.assets.get(portfolio_id)
            if stored is None:
                raise PortfolioNotFoundError(portfolio_id)
            previous_assets = copy.deepcopy(stored)
            previous_portfolio = copy.deepcopy(self.portfolios[portfolio_id])
            by_symbol = {a.symbol: a for a in assets}
            for asset in stored:
                update = by_symbol.get(asset.symbol)
                if update is None:
                    continue
                asset.amount = update.amount
                asset.current_value = update.current_value
                asset.price_usd = update.price_usd
                asset.change_24h = update.change_24h
            self.portfolios[portfolio_id].updated_at = utc_now_iso()
            self._save_or_restore(lambda: self._restore_portfolio(previous_portfolio, previous_assets))

    def update_portfolio_value(
        self,
        portfolio_id: str,
        total_value: float,
        change_24h: float,
        change_24h_percentage: float,
    ) -> None:
        """Store derived portfolio totals."""
        with self._lock:
            portfolio = self.portfolios.get(portfolio_id)
            if portfolio is None:
                raise PortfolioNotFoundError(portfolio_id)
            previous = copy.deepcopy(portfolio)
            portfolio.total_value = total_value
            portfolio.change_24h = change_24h
            portfolio.change_24h_percentage = change_24h_percentage
            portfolio.updated_at = utc_now_iso()
            self._save_or_restore(lambda: self._restore_portfolio(previous))

    def disable_portfolio(self, portfolio_id: str) -> None:
        """Mark portfolio inactive."""
        with self._lock:
            portfolio = self.portfolios.get(portfolio_id)
            if portfolio is None:
                raise PortfolioNotFoundError(portfolio_id)
            previous = copy.deepcopy(portfolio)
            portfolio.is_active = False
            portfolio.updated_at = utc_now_iso()
            self._save_or_restore(lambda: self._restore_portfolio(previous))

    # Transaction operations
    def insert_transaction(self, transaction: Transaction) -> Transaction:
        with self._lock:
            previous = self.transactions.get(transaction.id)
            self.transactions[transaction.id] = copy.deepcopy(transaction)
            self._save_or_restore(lambda: self._restore_transaction(transaction.id, previous))
        return transaction

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        with self._lock:
            transaction = self.transactions.get(transaction_id)
            return copy.deepcopy(transaction) if transaction else None

    def update_transaction(self, transaction: Transaction) -> None:
        with self._lock:
            previous = self.transactions.get(transaction.id)
            self.transactions[transaction.id] = copy.deepcopy(transaction)
            self._save_or_restore(lambda: self._restore_transaction(transaction.id, previous))

    def get_transactions(self, portfolio_id: Optional[str] = None, status: Optional[str] = None) -> List[Transaction]:
        """Filter transactions by portfolio and/or status, newest first."""
        with self._lock:
            result = [
                copy.deepcopy(t) for t in self.transactions.values()
                if (portfolio_id is None or t.portfolio_id == portfolio_id)
                and (status is None or t.status == status)
            ]
        result.sort(key=lambda t: t.created_at, reverse=True)
        return result

    # Wallet mapping operations
    def get_wallet(self, user_address: str) -> Optional[UserWalletMapping]:
        with self._lock:
            mapping = self.wallets.get(user_address.lower())
            return copy.deepcopy(mapping) if mapping else None

    def insert_wallet_if_absent(self, mapping: UserWalletMapping) -> tuple[UserWalletMapping, bool]:
        """
        Store mapping unless one exists for the same user address.

        Returns:
            (stored mapping, True if this call created it)
        """
        key = mapping.user_address.lower()
        with self._lock:
            existing = self.wallets.get(key)
            if existing is not None:
                return copy.deepcopy(existing), False
            self.wallets[key] = copy.deepcopy(mapping)
            self._save_or_restore(lambda: self.wallets.pop(key, None))
            return copy.deepcopy(mapping), True

    def touch_wallet(self, user_address: str) -> Optional[UserWalletMapping]:
        """Update last_used of a mapping."""
        with self._lock:
            mapping = self.wallets.get(user_address.lower())
            if mapping is None:
                return None
            previous_last_used = mapping.last_used
            mapping.last_used = utc_now_iso()
            self._save_or_restore(lambda: setattr(mapping, "last_used", previous_last_used))
            return copy.deepcopy(mapping)

    def get_all_wallets(self) -> List[UserWalletMapping]:
        with self._lock:
            return [copy.deepcopy(w) for w in self.wallets.values()]


# Global database instance
_db_instance: Optional[Database] = None


def get_database() -> Database:
    """Get global database instance (singleton)."""
    global _db_instance
    if _db_instance is None:
        _db_instance = Database()
        _db_instance.load()
    return _db_instance


def init_db(db: Optional[Database] = None):
    """Initialize database (create file if doesn't exist)."""
    db = db or get_database()
    db.path.parent.mkdir(parents=True, exist_ok=True)
    db.save()
    print(f"[DB] Database initialized at {db.path}")
