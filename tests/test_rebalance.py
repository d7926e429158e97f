"""
Rebalance Scheduler Tests
Tests for per-portfolio rebalance transactions, reporting and alerts
"""

import pytest
from datetime import datetime
from decimal import Decimal
from unittest.mock import patch

from core.database.database_manager import DatabaseConfig, DatabaseManager
from core.database.ledger_service import LedgerService
from core.database.trading_models import Portfolio, PositionSpec, TradeSide, TradingMode
from core.database.trading_service import TradingService
from core.interfaces import LoggingAlertSink
from core.rebalance import RebalanceScheduler
from core.risk.capital_bucket import Phase
from core.risk.exceptions import LedgerWriteError


NOW = datetime(2026, 3, 2, 16, 0)


@pytest.fixture
def db_manager():
    """In-memory database shared by every session of the test"""
    manager = DatabaseManager(DatabaseConfig(database_url="sqlite:///:memory:"))
    manager.initialize()
    yield manager
    manager.close_all_connections()


@pytest.fixture
def sink():
    return LoggingAlertSink()


@pytest.fixture
def scheduler(db_manager, sink):
    return RebalanceScheduler(db_manager.get_session, sink)


def create_portfolio(db_manager, name, capital, mode=TradingMode.PAPER):
    with db_manager.get_session() as session:
        return TradingService(session).create_portfolio(name, mode, Decimal(capital), rebalance=False).id


def test_run_commits_allocation(db_manager, scheduler, sink):
    """Test a single run splits capital, records it and alerts"""
    portfolio_id = create_portfolio(db_manager, 'Growth', '350000')

    allocation = scheduler.run(portfolio_id, NOW)

    assert allocation.phase == Phase.GROWTH
    assert allocation.swing_amount == Decimal('245000.00')
    assert allocation.long_term_amount == Decimal('70000.00')
    assert allocation.cash_amount == Decimal('35000.00')

    with db_manager.get_session() as session:
        portfolio = session.get(Portfolio, portfolio_id)
        assert portfolio.swing_capital == Decimal('245000.00')
        assert portfolio.last_rebalanced_at == NOW
        assert portfolio.bucket.phase == Phase.GROWTH
        audit = LedgerService(session).entries_for(portfolio_id, reason='capital_rebalance')
        assert len(audit) == 1
        assert audit[0].details.long_term_amount == Decimal('70000.00')

    assert [e.event_type for e in sink.events] == ['capital_rebalance']
    assert sink.events[0].metadata['phase'] == 'growth'


def test_infeasible_rebalance_alerts(db_manager, scheduler, sink):
    """Test committed exposure above the base is capped and flagged"""
    portfolio_id = create_portfolio(db_manager, 'Overcommitted', '100000')
    with db_manager.get_session() as session:
        TradingService(session).open_position(portfolio_id, PositionSpec(
            symbol='RELIANCE', side=TradeSide.LONG, entry_price=Decimal('100'),
            quantity=1500, stop_loss=Decimal('95')), at=NOW)

    allocation = scheduler.run(portfolio_id, NOW)

    assert not allocation.is_feasible
    assert allocation.infeasible.shortfall == Decimal('50000.00')
    assert allocation.infeasible.swing_floor == Decimal('150000.00')
    assert allocation.swing_amount == Decimal('100000.00')
    assert allocation.cash_amount == Decimal('0.00')
    assert [e.event_type for e in sink.events] == ['capital_rebalance', 'rebalance_infeasible']
    assert sink.events[1].severity == 'WARNING'
    assert sink.events[1].metadata['shortfall'] == '50000.00'


def test_unknown_portfolio(scheduler):
    """Test running against a missing portfolio raises"""
    with pytest.raises(ValueError, match="not found"):
        scheduler.run(999, NOW)


def test_run_all_reports_each_portfolio(db_manager, scheduler):
    """Test every active portfolio is rebalanced independently"""
    early = create_portfolio(db_manager, 'Early', '100000')
    mature = create_portfolio(db_manager, 'Mature', '600000', mode=TradingMode.LIVE)

    report = scheduler.run_all(NOW)

    assert report.ok
    assert set(report.allocations) == {early, mature}
    assert report.allocations[early].phase == Phase.EARLY
    assert report.allocations[mature].phase == Phase.MATURE
    assert report.allocations[mature].long_term_amount == Decimal('180000.00')


def test_run_all_skips_inactive(db_manager, scheduler):
    """Test deactivated portfolios are left alone"""
    active = create_portfolio(db_manager, 'Active', '100000')
    inactive = create_portfolio(db_manager, 'Dormant', '100000')
    with db_manager.get_session() as session:
        session.get(Portfolio, inactive).is_active = False

    report = scheduler.run_all(NOW)
    assert list(report.allocations) == [active]


def test_run_all_isolates_failures(db_manager, scheduler, sink):
    """Test a failed portfolio is reported and alerted while the rest commit"""
    first = create_portfolio(db_manager, 'First', '100000')
    second = create_portfolio(db_manager, 'Second', '100000')

    original = LedgerService.record

    def fail_for_first(self, portfolio, *args, **kwargs):
        if portfolio.id == first:
            raise LedgerWriteError("ledger unavailable")
        return original(self, portfolio, *args, **kwargs)

    with patch.object(LedgerService, 'record', fail_for_first):
        report = scheduler.run_all(NOW)

    assert not report.ok
    assert report.failures == {first: 'ledger unavailable'}
    assert list(report.allocations) == [second]
    assert [e.event_type for e in sink.events] == ['rebalance_failed', 'capital_rebalance']
    assert sink.events[0].severity == 'CRITICAL'

    with db_manager.get_session() as session:
        # nothing from the failed run was committed
        assert session.get(Portfolio, first).last_rebalanced_at is None
        assert session.get(Portfolio, first).swing_capital == Decimal('0')
        assert session.get(Portfolio, second).last_rebalanced_at == NOW
