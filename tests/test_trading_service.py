"""
Trading Service Tests
Tests for portfolio lifecycle, capital accounting, position operations,
snapshots and optimistic concurrency
"""

import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from core.database.database_manager import DatabaseConfig, DatabaseManager
from core.database.ledger_service import LedgerService
from core.database.models import Base
from core.database.trading_models import (
    LedgerEntryType, Position, PositionSpec, PositionStatus, PortfolioSnapshot,
    TradeSide, TradingMode
)
from core.database.trading_service import TradingService
from core.risk.capital_bucket import Phase
from core.risk.exceptions import (
    ConcurrentModificationError, InvalidAllocation, InvalidPositionState
)
from core.risk.exits import ExitAction, ExitReason


NOW = datetime(2026, 3, 2, 10, 0)


# Test database setup
@pytest.fixture(scope="function")
def test_session():
    """Create test database session with all models"""
    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(engine)

    TestingSessionLocal = sessionmaker(bind=engine)
    session = TestingSessionLocal()

    yield session
    session.close()


@pytest.fixture
def trading_service(test_session):
    """Create trading service instance"""
    return TradingService(test_session)


@pytest.fixture
def sample_portfolio(trading_service):
    """Create a 200k paper portfolio"""
    return trading_service.create_portfolio('Swing Desk', TradingMode.PAPER, Decimal('200000'))


def infy_spec(**overrides) -> PositionSpec:
    values = dict(symbol='INFY', side=TradeSide.LONG, entry_price=Decimal('100'),
                  quantity=10, stop_loss=Decimal('95'))
    values.update(overrides)
    return PositionSpec(**values)


# ==================== Portfolio Management ====================

def test_create_portfolio(sample_portfolio):
    """Test a new portfolio is funded, bucketed and configured"""
    portfolio = sample_portfolio

    assert portfolio.id is not None
    assert portfolio.mode == TradingMode.PAPER
    assert portfolio.initial_capital == Decimal('200000')
    assert portfolio.total_equity == Decimal('200000')
    assert portfolio.swing_capital == Decimal('160000')
    assert portfolio.long_term_capital == Decimal('0')
    assert portfolio.available_cash == Decimal('40000')
    assert portfolio.peak_equity == Decimal('200000')
    assert portfolio.bucket.phase == Phase.EARLY
    assert portfolio.bucket.swing_pct == Decimal('80')
    assert portfolio.risk_config.risk_per_trade_pct == Decimal('1.0')
    assert portfolio.last_rebalanced_at is not None


def test_create_portfolio_with_overrides(trading_service):
    """Test risk overrides and a skipped initial rebalance"""
    portfolio = trading_service.create_portfolio(
        'Cash Only', TradingMode.LIVE, 50000, rebalance=False,
        risk_per_trade_pct=0.5, max_open_positions=3)

    assert portfolio.available_cash == Decimal('50000')
    assert portfolio.swing_capital == Decimal('0')
    assert portfolio.risk_config.risk_per_trade_pct == Decimal('0.5')
    assert portfolio.risk_config.max_open_positions == 3


def test_portfolio_name_unique_per_mode(trading_service, sample_portfolio):
    """Test duplicate (name, mode) pairs are rejected"""
    with pytest.raises(ValueError, match="already exists"):
        trading_service.create_portfolio('Swing Desk', TradingMode.PAPER, 1000)

    live = trading_service.create_portfolio('Swing Desk', TradingMode.LIVE, 1000)
    assert live.id != sample_portfolio.id


def test_portfolio_lookups(trading_service, sample_portfolio):
    """Test portfolio lookup helpers"""
    assert trading_service.get_portfolio(sample_portfolio.id).name == 'Swing Desk'
    assert trading_service.get_portfolio_by_name('Swing Desk').id == sample_portfolio.id
    assert trading_service.get_portfolio_by_name('Swing Desk', TradingMode.LIVE) is None
    assert [p.id for p in trading_service.get_active_portfolios()] == [sample_portfolio.id]


def test_deposit_and_withdraw(trading_service, sample_portfolio):
    """Test cash movements update equity and the ledger"""
    portfolio = trading_service.deposit(sample_portfolio.id, Decimal('10000'))
    assert portfolio.available_cash == Decimal('50000')
    assert portfolio.total_equity == Decimal('210000')

    portfolio = trading_service.withdraw(sample_portfolio.id, 5000)
    assert portfolio.available_cash == Decimal('45000')
    assert portfolio.total_equity == Decimal('205000')

    with pytest.raises(InvalidAllocation, match="exceeds available cash"):
        trading_service.withdraw(sample_portfolio.id, Decimal('45000.01'))
    assert trading_service.get_portfolio(sample_portfolio.id).available_cash == Decimal('45000')

    assert trading_service.ledger.balance(sample_portfolio.id) == Decimal('205000')


# ==================== Capital Allocation ====================

def test_rebalance_into_growth_phase(trading_service, sample_portfolio):
    """Test crossing the first threshold moves the portfolio into the growth split"""
    trading_service.deposit(sample_portfolio.id, Decimal('150000'))
    allocation = trading_service.rebalance_portfolio(sample_portfolio.id, at=NOW)

    assert allocation.phase == Phase.GROWTH
    portfolio = trading_service.get_portfolio(sample_portfolio.id)
    assert portfolio.swing_capital == Decimal('245000')
    assert portfolio.long_term_capital == Decimal('70000')
    assert portfolio.available_cash == Decimal('35000')
    assert portfolio.total_equity == Decimal('350000')
    assert portfolio.bucket.phase == Phase.GROWTH
    assert portfolio.bucket.long_term_pct == Decimal('20')
    assert portfolio.last_rebalanced_at == NOW


def test_rebalance_keeps_committed_exposure(trading_service, sample_portfolio):
    """Test the swing bucket never drops below open exposure"""
    trading_service.open_position(sample_portfolio.id, infy_spec(entry_price=1000, quantity=150,
                                                                 stop_loss=950))
    trading_service.withdraw(sample_portfolio.id, Decimal('40000'))

    allocation = trading_service.rebalance_portfolio(sample_portfolio.id)

    # base 160000 -> target swing 128000, raised to the 150000 committed
    assert allocation.swing_amount == Decimal('150000.00')
    assert allocation.cash_amount == Decimal('10000.00')
    assert allocation.is_feasible


def test_infeasible_rebalance_preserves_equity(trading_service, sample_portfolio):
    """Test a rebalance over-committed by open exposure partitions equity without adding to it"""
    position = trading_service.open_position(
        sample_portfolio.id, infy_spec(entry_price=1000, quantity=240, stop_loss=950))

    allocation = trading_service.rebalance_portfolio(sample_portfolio.id, at=NOW)

    assert not allocation.is_feasible
    assert allocation.infeasible.shortfall == Decimal('40000.00')
    portfolio = trading_service.get_portfolio(sample_portfolio.id)
    assert portfolio.swing_capital == Decimal('200000.00')
    assert portfolio.available_cash == Decimal('0.00')
    assert portfolio.total_equity == Decimal('200000.00')
    assert portfolio.peak_equity == Decimal('200000.00')
    assert portfolio.bucket.swing_pct == Decimal('100')
    assert portfolio.available_swing_capital == Decimal('0')

    trading_service.close_position(position.id, Decimal('1000'), at=NOW)
    portfolio = trading_service.get_portfolio(sample_portfolio.id)
    assert portfolio.total_equity == Decimal('200000.00')
    assert portfolio.realized_pnl == Decimal('0.00')
    assert trading_service.ledger.balance(sample_portfolio.id) == portfolio.total_equity

    assert trading_service.rebalance_portfolio(sample_portfolio.id).is_feasible
    portfolio = trading_service.get_portfolio(sample_portfolio.id)
    assert portfolio.swing_capital == Decimal('160000.00')
    assert portfolio.available_cash == Decimal('40000.00')


def test_rebalance_records_audit_entry(trading_service, sample_portfolio):
    """Test each rebalance writes a typed capital_rebalance ledger entry"""
    trading_service.rebalance_portfolio(sample_portfolio.id)
    entries = trading_service.ledger.entries_for(sample_portfolio.id, reason='capital_rebalance')

    assert len(entries) == 2
    details = entries[-1].details
    assert details.phase == 'early'
    assert details.swing_amount == Decimal('160000.00')
    assert details.cash_pct == Decimal('20')
    assert details.infeasible is False


# ==================== Position Management ====================

def test_open_position_debits_ledger(trading_service, sample_portfolio):
    """Test opening a position commits swing capital and debits its cost"""
    position = trading_service.open_position(sample_portfolio.id, infy_spec(), at=NOW)

    assert position.id is not None
    assert position.portfolio_id == sample_portfolio.id
    assert position.trading_mode == TradingMode.PAPER
    assert position.opened_at == NOW

    entries = trading_service.ledger.entries_for(sample_portfolio.id, reason='position_opened')
    assert len(entries) == 1
    assert entries[0].entry_type == LedgerEntryType.DEBIT
    assert entries[0].amount == Decimal('1000.00')
    assert entries[0].position_id == position.id

    portfolio = trading_service.get_portfolio(sample_portfolio.id)
    assert portfolio.total_swing_exposure == Decimal('1000.00')
    assert portfolio.available_swing_capital == Decimal('159000.00')
    assert [p.id for p in trading_service.get_active_positions(sample_portfolio.id)] == [position.id]


def test_open_invalid_position_writes_nothing(trading_service, sample_portfolio, test_session):
    """Test an invalid spec leaves no position and no ledger entry"""
    with pytest.raises(InvalidPositionState):
        trading_service.open_position(sample_portfolio.id, infy_spec(stop_loss=Decimal('105')))

    assert test_session.query(Position).count() == 0
    assert trading_service.ledger.entries_for(sample_portfolio.id, reason='position_opened') == []


def test_open_position_unknown_portfolio(trading_service):
    """Test opening against a missing portfolio"""
    with pytest.raises(ValueError, match="not found"):
        trading_service.open_position(404, infy_spec())


def test_tick_with_stop_exit_books_pnl(trading_service, sample_portfolio):
    """Test a stop-out through the service moves P&L into the bucket and the ledger"""
    position = trading_service.open_position(
        sample_portfolio.id, infy_spec(atr=2, atr_trailing_multiplier=2), at=NOW)

    decision = trading_service.tick_position(position.id, 110, at=NOW)
    assert decision.action == ExitAction.NONE
    assert trading_service.get_position(position.id).stop_loss == Decimal('106')

    decision = trading_service.tick_position(position.id, 105, at=NOW)
    assert decision.reason == ExitReason.STOP_HIT

    position = trading_service.get_position(position.id)
    assert position.status == PositionStatus.CLOSED
    assert position.realized_pnl == Decimal('50')

    portfolio = trading_service.get_portfolio(sample_portfolio.id)
    assert portfolio.realized_pnl == Decimal('50')
    assert portfolio.swing_capital == Decimal('160050')
    assert portfolio.total_equity == Decimal('200050')
    assert portfolio.unrealized_pnl == Decimal('0')

    closed = trading_service.ledger.entries_for(sample_portfolio.id, reason='position_closed')
    assert len(closed) == 1
    assert closed[0].entry_type == LedgerEntryType.CREDIT
    assert closed[0].amount == Decimal('1050.00')
    assert closed[0].details.exit_reason == 'stop_hit'
    assert closed[0].details.pnl == Decimal('50.00')
    assert trading_service.ledger.balance(sample_portfolio.id) == Decimal('200050')


def test_manual_close_at_loss(trading_service, sample_portfolio):
    """Test a losing manual close reduces the swing bucket"""
    position = trading_service.open_position(sample_portfolio.id, infy_spec())
    position = trading_service.close_position(position.id, Decimal('96'))

    assert position.exit_reason == 'manual'
    assert position.realized_pnl == Decimal('-40')

    portfolio = trading_service.get_portfolio(sample_portfolio.id)
    assert portfolio.swing_capital == Decimal('159960')
    assert portfolio.total_equity == Decimal('199960')
    assert trading_service.get_closed_positions(sample_portfolio.id)[0].id == position.id


def test_partial_close_then_breakeven_refused(trading_service, sample_portfolio):
    """Test partial closes book partial_exit entries and block breakeven"""
    position = trading_service.open_position(sample_portfolio.id, infy_spec())
    position = trading_service.partial_close_position(position.id, 4, Decimal('104'))

    assert position.status == PositionStatus.PARTIALLY_CLOSED
    assert position.quantity == 6
    entries = trading_service.ledger.entries_for(sample_portfolio.id, reason='partial_exit')
    assert entries[0].amount == Decimal('416.00')
    assert entries[0].details.quantity == 4

    with pytest.raises(InvalidPositionState):
        trading_service.move_to_breakeven(position.id)
    assert trading_service.get_position(position.id).breakeven_stop is None


def test_move_to_breakeven(trading_service, sample_portfolio):
    """Test breakeven through the service"""
    position = trading_service.open_position(sample_portfolio.id, infy_spec())
    position = trading_service.move_to_breakeven(position.id)

    assert position.stop_loss == Decimal('100')
    assert position.initial_stop_loss == Decimal('95')


def test_tick_closed_position_is_noop(trading_service, sample_portfolio):
    """Test ticking a closed position changes nothing"""
    position = trading_service.open_position(sample_portfolio.id, infy_spec())
    trading_service.close_position(position.id, 101)

    decision = trading_service.tick_position(position.id, 90)
    assert decision.action == ExitAction.NONE
    assert trading_service.get_position(position.id).current_price == Decimal('101')
    assert len(trading_service.ledger.entries_for(sample_portfolio.id, reason='position_closed')) == 1


def test_refresh_equity_tracks_drawdown(trading_service, sample_portfolio):
    """Test unrealized P&L flows into equity and a lifetime drawdown"""
    position = trading_service.open_position(sample_portfolio.id, infy_spec())

    trading_service.tick_position(position.id, 105)
    portfolio = trading_service.refresh_portfolio_equity(sample_portfolio.id)
    assert portfolio.unrealized_pnl == Decimal('50')
    assert portfolio.total_equity == Decimal('200050')
    assert portfolio.peak_equity == Decimal('200050')

    trading_service.tick_position(position.id, 97)
    portfolio = trading_service.refresh_portfolio_equity(sample_portfolio.id)
    assert portfolio.total_equity == Decimal('199970')
    assert portfolio.current_drawdown == Decimal('0.04')
    assert portfolio.max_drawdown == Decimal('0.04')

    trading_service.tick_position(position.id, 105)
    portfolio = trading_service.refresh_portfolio_equity(sample_portfolio.id)
    assert portfolio.current_drawdown == Decimal('0')
    assert portfolio.max_drawdown == Decimal('0.04')


# ==================== Snapshots ====================

def test_save_portfolio_snapshot(trading_service, sample_portfolio, test_session):
    """Test daily snapshots are created once per day and updated in place"""
    winner = trading_service.open_position(sample_portfolio.id, infy_spec(), at=NOW)
    loser = trading_service.open_position(sample_portfolio.id, infy_spec(symbol='TCS'), at=NOW)
    trading_service.open_position(sample_portfolio.id, infy_spec(symbol='HDFC'), at=NOW)
    trading_service.close_position(winner.id, 110, at=NOW)
    trading_service.close_position(loser.id, 98, at=NOW)

    snapshot = trading_service.save_portfolio_snapshot(sample_portfolio.id, NOW.date())
    assert snapshot.opening_capital == Decimal('200000')
    assert snapshot.total_equity == Decimal('200080')
    assert snapshot.day_realized_pnl == Decimal('80')
    assert snapshot.swing_exposure == Decimal('1000')
    assert snapshot.win_rate == Decimal('50')
    assert snapshot.open_positions_count == 1
    assert snapshot.closed_positions_count == 2

    trading_service.save_portfolio_snapshot(sample_portfolio.id, NOW.date())
    assert test_session.query(PortfolioSnapshot).count() == 1

    next_day = trading_service.save_portfolio_snapshot(sample_portfolio.id, NOW.date() + timedelta(days=1))
    assert next_day.opening_capital == Decimal('200080')
    assert next_day.day_realized_pnl == Decimal('0')


# ==================== Optimistic Concurrency ====================

@pytest.fixture
def file_db(tmp_path):
    """File-backed database so two sessions use separate connections"""
    manager = DatabaseManager(DatabaseConfig(database_url=f"sqlite:///{tmp_path / 'concurrency.db'}"))
    manager.initialize()
    yield manager
    manager.close_all_connections()


@pytest.fixture
def open_position_id(file_db):
    with file_db.get_session() as session:
        service = TradingService(session)
        portfolio = service.create_portfolio('Concurrent', TradingMode.PAPER, Decimal('100000'))
        position = service.open_position(portfolio.id, infy_spec(), at=NOW)
        return position.id


def interfere_on_flush(session_a, session_b, position_id, times):
    """Commit a competing tick from session_b before session_a's next `times` flushes"""
    prices = iter([Decimal('101'), Decimal('102'), Decimal('103'), Decimal('101')] * 3)
    calls = {'count': 0}

    @event.listens_for(session_a, 'before_flush')
    def competing_write(session, flush_context, instances):
        if calls['count'] >= times:
            return
        calls['count'] += 1
        other = session_b.get(Position, position_id, populate_existing=True)
        other.tick(next(prices))
        session_b.commit()

    return calls


def test_stale_write_is_retried(file_db, open_position_id):
    """Test a version conflict is retried against the fresh row and then succeeds"""
    session_a = file_db.SessionLocal()
    session_b = file_db.SessionLocal()
    try:
        calls = interfere_on_flush(session_a, session_b, open_position_id, times=1)
        decision = TradingService(session_a, retry_limit=3).tick_position(open_position_id, Decimal('104'))

        assert calls['count'] == 1
        assert decision.action == ExitAction.NONE
    finally:
        session_a.close()
        session_b.close()

    with file_db.get_session() as session:
        position = session.get(Position, open_position_id)
        assert position.current_price == Decimal('104')
        assert position.highest_price == Decimal('104')
        # open, competing tick, retried tick
        assert position.version_id == 3


def test_persistent_conflict_raises(file_db, open_position_id):
    """Test ConcurrentModificationError once every retry conflicted"""
    session_a = file_db.SessionLocal()
    session_b = file_db.SessionLocal()
    try:
        calls = interfere_on_flush(session_a, session_b, open_position_id, times=10)
        with pytest.raises(ConcurrentModificationError):
            TradingService(session_a, retry_limit=3).tick_position(open_position_id, Decimal('104'))
        assert calls['count'] == 3
    finally:
        session_a.close()
        session_b.close()

    with file_db.get_session() as session:
        assert session.get(Position, open_position_id).current_price != Decimal('104')


def test_ledger_balance_matches_after_round_trip(file_db, open_position_id):
    """Test the ledger balance after open and close equals deposit plus realized P&L"""
    with file_db.get_session() as session:
        service = TradingService(session)
        position = service.close_position(open_position_id, Decimal('103'))
        assert LedgerService(session).balance(position.portfolio_id) == Decimal('100030')
