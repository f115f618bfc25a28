import pytest

from conftest import OWNER, RECIPIENT, USDC_CONTRACT, eth_usdc_assets, set_holdings
from errors import (
    InsufficientBalanceError,
    InvalidAddressError,
    InvalidAmountError,
    InvalidInputError,
    InvalidWeightsError,
    PersistenceError,
    PortfolioInactiveError,
    PortfolioNotFoundError,
    SettlementFailedError,
)
from ledger import STATUS_COMPLETED, STATUS_FAILED, STATUS_PENDING
from portfolio_service import PortfolioService
from settlement import SettlementExecutor, SettlementResult, SimulatedSettlementExecutor


class RecordingSettlement(SimulatedSettlementExecutor):
    def __init__(self):
        super().__init__(scale=0.0)
        self.requests = []

    def execute(self, request):
        self.requests.append(request)
        return super().execute(request)


class RaisingSettlement(SettlementExecutor):
    def execute(self, request):
        raise TimeoutError("bundler timed out")


class RejectingSettlement(SettlementExecutor):
    def execute(self, request):
        return SettlementResult(reference="0xdead", status="failed", error="user operation reverted")


@pytest.fixture
def recording():
    return RecordingSettlement()


@pytest.fixture
def recorded_service(db, price_service, ledger, recording, wallet_mapper):
    return PortfolioService(db, price_service, ledger, recording, wallet_mapper)


def holdings(portfolio) -> dict:
    return {a.symbol: a.amount for a in portfolio.assets}


class TestCreatePortfolio:
    def test_creates_with_zero_holdings(self, service, db, wallet_mapper):
        portfolio = service.create_portfolio(OWNER.upper().replace("0X", "0x"), "  Blue chips ", eth_usdc_assets())

        assert portfolio.name == "Blue chips"
        assert portfolio.owner_address == OWNER
        assert portfolio.is_active
        assert portfolio.total_value == 0.0
        assert [a.symbol for a in portfolio.assets] == ["ETH", "USDC"]
        assert all(a.amount == 0.0 for a in portfolio.assets)
        assert portfolio.assets[1].address == USDC_CONTRACT
        assert portfolio.settlement_address.startswith("0x")
        assert wallet_mapper.get_sub_wallet_address(OWNER) is not None

    def test_symbols_upper_cased_and_name_defaults(self, service):
        assets = [{"symbol": "eth", "address": USDC_CONTRACT, "weight": 100}]
        portfolio = service.create_portfolio(OWNER, "Solo", assets)
        assert portfolio.assets[0].symbol == "ETH"
        assert portfolio.assets[0].name == "ETH"

    def test_settlement_addresses_differ(self, service):
        first = service.create_portfolio(OWNER, "A", eth_usdc_assets())
        second = service.create_portfolio(OWNER, "B", eth_usdc_assets())
        assert first.settlement_address != second.settlement_address

    @pytest.mark.parametrize("eth, usdc", [(60, 39.98), (70, 40), (50, 0)])
    def test_bad_weights_store_nothing(self, service, db, eth, usdc):
        with pytest.raises(InvalidWeightsError):
            service.create_portfolio(OWNER, "Bad", eth_usdc_assets(eth, usdc))
        assert db.get_portfolios_by_owner(OWNER) == []

    def test_duplicate_symbol(self, service):
        assets = eth_usdc_assets()
        assets[1]["symbol"] = "eth"
        with pytest.raises(InvalidInputError):
            service.create_portfolio(OWNER, "Dup", assets)

    def test_bad_contract_address(self, service, db):
        assets = eth_usdc_assets()
        assets[0]["address"] = "0x42"
        with pytest.raises(InvalidAddressError):
            service.create_portfolio(OWNER, "Bad", assets)
        assert db.get_portfolios_by_owner(OWNER) == []

    def test_bad_owner(self, service):
        with pytest.raises(InvalidAddressError):
            service.create_portfolio("0xnope", "Bad", eth_usdc_assets())

    def test_empty_name(self, service):
        with pytest.raises(InvalidInputError):
            service.create_portfolio(OWNER, "   ", eth_usdc_assets())

    def test_asset_insert_failure_rolls_back(self, service, db, monkeypatch):
        def broken_insert(portfolio_id, assets):
            raise PersistenceError("insert assets", "disk full")

        monkeypatch.setattr(db, "insert_assets", broken_insert)
        with pytest.raises(PersistenceError):
            service.create_portfolio(OWNER, "Doomed", eth_usdc_assets())
        assert db.get_portfolios_by_owner(OWNER) == []

    def test_portfolio_save_failure_leaves_no_portfolio(self, service, db, monkeypatch):
        original_save = db.save

        def save_failing_once_portfolios_exist():
            if db.portfolios:
                raise PersistenceError("save database", "disk full")
            original_save()

        monkeypatch.setattr(db, "save", save_failing_once_portfolios_exist)
        with pytest.raises(PersistenceError):
            service.create_portfolio(OWNER, "Doomed", eth_usdc_assets())
        assert db.get_portfolios_by_owner(OWNER) == []
        assert db.assets == {}


class TestReads:
    def test_get_valuates(self, service, funded_portfolio):
        portfolio = service.get_portfolio(funded_portfolio.id)
        assert portfolio.total_value == pytest.approx(3000.0)
        assert portfolio.change_24h == pytest.approx(100.0)

    def test_get_missing(self, service):
        with pytest.raises(PortfolioNotFoundError):
            service.get_portfolio("missing")

    def test_list_with_stats(self, service, funded_portfolio):
        service.create_portfolio(OWNER, "Empty", eth_usdc_assets())
        listing = service.list_portfolios(OWNER)
        assert [p.name for p in listing["portfolios"]] == ["Empty", "Blue chips"]
        assert listing["stats"]["totalValue"] == pytest.approx(3000.0)
        assert listing["stats"]["totalCount"] == 2
        assert listing["stats"]["activeCount"] == 2

    def test_list_other_owner_empty(self, service, funded_portfolio):
        listing = service.list_portfolios(RECIPIENT)
        assert listing["portfolios"] == []
        assert listing["stats"]["totalCount"] == 0

    def test_transactions_of_missing_portfolio(self, service):
        with pytest.raises(PortfolioNotFoundError):
            service.list_transactions("missing")


class TestRebalance:
    def test_worked_example(self, service, funded_portfolio, ledger):
        outcome = service.rebalance(funded_portfolio.id)

        assert holdings(outcome.portfolio) == {"ETH": pytest.approx(0.9), "USDC": pytest.approx(1200.0)}
        assert service.get_portfolio(funded_portfolio.id).total_value == pytest.approx(3000.0)

        transaction = ledger.get(outcome.transaction_id)
        assert transaction.status == STATUS_COMPLETED
        assert transaction.type == "rebalance"
        assert transaction.amount == pytest.approx(3000.0)
        assert transaction.tx_hash == outcome.tx_hash

    def test_outcome_matches_stored_state(self, service, funded_portfolio, db):
        outcome = service.rebalance(funded_portfolio.id)
        assert outcome.portfolio == db.get_portfolio(funded_portfolio.id)
        assert outcome.portfolio.total_value == pytest.approx(3000.0)

    def test_weights_hold_after_price_move(self, service, funded_portfolio, fetcher):
        fetcher.set_price("ETH", 2500.0)
        outcome = service.rebalance(funded_portfolio.id)
        portfolio = service.get_portfolio(outcome.portfolio.id)
        for asset in portfolio.assets:
            assert asset.current_value / portfolio.total_value == pytest.approx(asset.weight / 100)

    def test_missing(self, service):
        with pytest.raises(PortfolioNotFoundError):
            service.rebalance("missing")


class TestDeposit:
    def test_deposit(self, recorded_service, funded_portfolio, recording, ledger):
        outcome = recorded_service.deposit(funded_portfolio.id, 1000.0, tx_hash="0xfeed")

        assert outcome.portfolio.total_value == pytest.approx(4000.0)
        assert holdings(outcome.portfolio) == {"ETH": pytest.approx(1.2), "USDC": pytest.approx(1600.0)}

        request = recording.requests[-1]
        assert request.kind == "deposit"
        assert request.amount_base_units == "1000000000"
        assert request.token_address == USDC_CONTRACT
        assert request.reference == "0xfeed"
        assert [t["action"] for t in request.trades] == ["buy", "buy"]

        assert ledger.get(outcome.transaction_id).amount == 1000.0

    def test_invalid_amount_opens_no_entry(self, service, funded_portfolio, ledger):
        with pytest.raises(InvalidAmountError):
            service.deposit(funded_portfolio.id, 0)
        assert ledger.list_for_portfolio(funded_portfolio.id) == []

    def test_unconvertible_amount_changes_nothing(self, service, funded_portfolio, ledger, db):
        with pytest.raises(InvalidAmountError):
            service.deposit(funded_portfolio.id, 1e23)
        assert ledger.list_for_portfolio(funded_portfolio.id) == []
        stored = db.get_portfolio(funded_portfolio.id)
        assert holdings(stored) == {"ETH": 1.0, "USDC": 1000.0}
        assert stored.total_value == 0.0


class TestWithdraw:
    def test_withdraw(self, recorded_service, funded_portfolio, recording):
        outcome = recorded_service.withdraw(funded_portfolio.id, 600.0, RECIPIENT)

        assert outcome.portfolio.total_value == pytest.approx(2400.0)
        assert holdings(outcome.portfolio) == {"ETH": pytest.approx(0.8), "USDC": pytest.approx(800.0)}
        assert outcome.extra == {"amount": 600.0, "recipient": RECIPIENT}
        assert recording.requests[-1].recipient == RECIPIENT
        assert recording.requests[-1].amount_base_units == "600000000"

    def test_more_than_total_changes_nothing(self, service, funded_portfolio, ledger, db):
        with pytest.raises(InsufficientBalanceError):
            service.withdraw(funded_portfolio.id, 3000.5, RECIPIENT)
        assert ledger.list_for_portfolio(funded_portfolio.id) == []
        assert holdings(db.get_portfolio(funded_portfolio.id)) == {"ETH": 1.0, "USDC": 1000.0}

    def test_bad_recipient(self, service, funded_portfolio, ledger):
        with pytest.raises(InvalidAddressError):
            service.withdraw(funded_portfolio.id, 10.0, "0x123")
        assert ledger.list_for_portfolio(funded_portfolio.id) == []


class TestDisable:
    def test_disable(self, service, funded_portfolio):
        outcome = service.disable(funded_portfolio.id)
        portfolio = service.get_portfolio(funded_portfolio.id)

        assert outcome.extra == {"usdcBalance": pytest.approx(3000.0)}
        assert portfolio.is_active is False
        assert portfolio.total_value == 0.0
        assert all(a.amount == 0.0 for a in portfolio.assets)

    def test_disable_twice(self, service, funded_portfolio, ledger):
        service.disable(funded_portfolio.id)
        outcome = service.disable(funded_portfolio.id)
        assert outcome.portfolio.is_active is False
        assert outcome.extra == {"usdcBalance": 0.0}
        assert len(ledger.list_for_portfolio(funded_portfolio.id)) == 2

    def test_inactive_rejects_other_mutations(self, service, funded_portfolio):
        service.disable(funded_portfolio.id)
        with pytest.raises(PortfolioInactiveError):
            service.rebalance(funded_portfolio.id)
        with pytest.raises(PortfolioInactiveError):
            service.deposit(funded_portfolio.id, 10.0)
        with pytest.raises(PortfolioInactiveError):
            service.withdraw(funded_portfolio.id, 10.0, RECIPIENT)


class TestFailures:
    def test_persistence_failure_leaves_entry_pending(self, service, funded_portfolio, db, ledger, monkeypatch):
        def broken_update(portfolio_id, assets):
            raise PersistenceError("update assets", "disk full")

        monkeypatch.setattr(db, "update_assets", broken_update)
        with pytest.raises(PersistenceError):
            service.rebalance(funded_portfolio.id)

        pending = ledger.list_pending()
        assert [(t.portfolio_id, t.status) for t in pending] == [(funded_portfolio.id, STATUS_PENDING)]

    def test_settlement_exception_fails_entry(self, db, price_service, ledger, wallet_mapper, funded_portfolio):
        service = PortfolioService(db, price_service, ledger, RaisingSettlement(), wallet_mapper)
        with pytest.raises(SettlementFailedError) as exc_info:
            service.rebalance(funded_portfolio.id)
        assert exc_info.value.status_code == 502

        [transaction] = ledger.list_for_portfolio(funded_portfolio.id)
        assert transaction.status == STATUS_FAILED
        assert "bundler timed out" in transaction.error_message

    def test_settlement_rejection_fails_entry(self, db, price_service, ledger, wallet_mapper, funded_portfolio):
        service = PortfolioService(db, price_service, ledger, RejectingSettlement(), wallet_mapper)
        with pytest.raises(SettlementFailedError):
            service.deposit(funded_portfolio.id, 50.0)

        [transaction] = ledger.list_for_portfolio(funded_portfolio.id)
        assert transaction.status == STATUS_FAILED
        assert transaction.tx_hash == "0xdead"
        assert transaction.error_message == "user operation reverted"


def test_missing_prices_value_at_zero(service, db, fetcher):
    portfolio = service.create_portfolio(OWNER, "Exotic", [
        {"symbol": "XYZ", "address": USDC_CONTRACT, "weight": 100},
    ])
    set_holdings(db, portfolio.id, {"XYZ": 5.0})
    assert service.get_portfolio(portfolio.id).total_value == 0.0
