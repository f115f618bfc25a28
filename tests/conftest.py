import pytest
from eth_account import Account
from eth_account.messages import encode_typed_data

from auth import build_terms_typed_data
from db import Database
from ledger import TransactionLedger
from portfolio_service import PortfolioService
from price_service import PriceService, StaticPriceFetcher
from settlement import SimulatedSettlementExecutor
from wallets import WalletIdentityMapper

OWNER = "0x1111111111111111111111111111111111111111"
ETH_CONTRACT = "0x4200000000000000000000000000000000000006"
USDC_CONTRACT = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
RECIPIENT = "0x2222222222222222222222222222222222222222"

FIXED_NOW = 1_700_000_000


class FixedClock:
    def __init__(self, now: float = FIXED_NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "vault.json")
    database.load()
    return database


@pytest.fixture
def fetcher():
    return StaticPriceFetcher({"ETH": (2000.0, 5.0), "USDC": (1.0, 0.0), "BTC": (40000.0, -2.0)})


@pytest.fixture
def price_service(fetcher):
    return PriceService(fetcher=fetcher, use_cache=False)


@pytest.fixture
def settlement():
    return SimulatedSettlementExecutor(scale=0.0)


@pytest.fixture
def wallet_mapper(db):
    return WalletIdentityMapper(db)


@pytest.fixture
def ledger(db):
    return TransactionLedger(db)


@pytest.fixture
def service(db, price_service, ledger, settlement, wallet_mapper):
    return PortfolioService(db, price_service, ledger, settlement, wallet_mapper)


def eth_usdc_assets(eth_weight: float = 60, usdc_weight: float = 40) -> list:
    return [
        {"symbol": "ETH", "address": ETH_CONTRACT, "weight": eth_weight, "name": "Ethereum"},
        {"symbol": "USDC", "address": USDC_CONTRACT, "weight": usdc_weight, "name": "USD Coin"},
    ]


def sign_terms(account, timestamp: int, chain_id: int = 8453, domain_name: str = "Vaultify") -> str:
    """Sign the terms typed data the way a wallet would."""
    typed_data = build_terms_typed_data(account.address, timestamp, domain_name, chain_id)
    signed = Account.sign_message(encode_typed_data(full_message=typed_data), account.key)
    return "0x" + bytes(signed.signature).hex()


def set_holdings(db: Database, portfolio_id: str, amounts: dict) -> None:
    """Give a portfolio holdings directly (as an on-chain deposit would)."""
    portfolio = db.get_portfolio(portfolio_id)
    for asset in portfolio.assets:
        asset.amount = amounts.get(asset.symbol, 0.0)
    db.update_assets(portfolio_id, portfolio.assets)


@pytest.fixture
def funded_portfolio(service, db):
    """ETH 60 / USDC 40 holding 1 ETH and 1000 USDC (3000 USD at 2000/1)."""
    portfolio = service.create_portfolio(OWNER, "Blue chips", eth_usdc_assets())
    set_holdings(db, portfolio.id, {"ETH": 1.0, "USDC": 1000.0})
    return portfolio
