"""
Entry Execution Tests
Tests for the gate -> broker -> position flow and broker failure handling
"""

import pytest
from datetime import datetime
from decimal import Decimal
from unittest.mock import patch

from core.database.database_manager import DatabaseConfig, DatabaseManager
from core.database.ledger_service import LedgerService
from core.database.trading_models import Order, OrderStatus, Position, TradeSide
from core.database.trading_service import TradingService
from core.execution import EntryExecutor, ExecutionStatus
from core.interfaces import BrokerAck, BrokerError, LoggingAlertSink, OrderSubmitter
from core.risk.exceptions import ConcurrentModificationError, InvalidPositionState
from core.risk.risk_gate import OrderIntent, RiskGateConfig


NOW = datetime(2026, 3, 2, 9, 30)


class ScriptedSubmitter(OrderSubmitter):
    """Replays broker outcomes in order: a BrokerAck or an exception to raise"""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.submitted = []

    def submit(self, order):
        self.submitted.append(order.client_order_id)
        outcome = self.outcomes.pop(0) if self.outcomes else BrokerAck(True, f"BRK-{len(self.submitted)}")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def db_manager():
    """In-memory database shared by every session of the test"""
    manager = DatabaseManager(DatabaseConfig(database_url="sqlite:///:memory:"))
    manager.initialize()
    yield manager
    manager.close_all_connections()


@pytest.fixture
def portfolio_id(db_manager):
    with db_manager.get_session() as session:
        return TradingService(session).create_portfolio('Execution Test',
                                                        initial_capital=Decimal('200000')).id


@pytest.fixture
def sink():
    return LoggingAlertSink()


def make_executor(db_manager, submitter, sink=None, **kwargs):
    return EntryExecutor(db_manager.get_session, submitter, sink,
                         RiskGateConfig(window_minutes=60, min_orders=2,
                                        failure_threshold_pct=Decimal('50')), **kwargs)


def make_intent(portfolio_id, key='1', **overrides) -> OrderIntent:
    values = dict(client_order_id=f"SD-exec-{key}", portfolio_id=portfolio_id, symbol='TCS',
                  side=TradeSide.LONG, quantity=40, entry_price=Decimal('250'),
                  stop_loss=Decimal('240'), take_profit=Decimal('280'))
    values.update(overrides)
    return OrderIntent(**values)


# ==================== Happy Path ====================

def test_execute_opens_position(db_manager, portfolio_id):
    """Test an accepted order is placed and backs a new open position"""
    submitter = ScriptedSubmitter(BrokerAck(True, 'BRK-77'))
    result = make_executor(db_manager, submitter).execute(make_intent(portfolio_id), NOW)

    assert result.status == ExecutionStatus.SUBMITTED
    assert submitter.submitted == ['SD-exec-1']

    with db_manager.get_session() as session:
        order = session.get(Order, result.order_id)
        position = session.get(Position, result.position_id)
        assert order.status == OrderStatus.PLACED
        assert order.broker_ref == 'BRK-77'
        assert order.submitted_at == NOW
        assert position.order_id == order.id
        assert position.quantity == 40
        assert position.take_profit == Decimal('280')
        opened = LedgerService(session).entries_for(portfolio_id, reason='position_opened')
        assert opened[0].amount == Decimal('10000.00')
        assert opened[0].order_id == order.id

    assert result.to_dict()['status'] == 'submitted'
    assert result.guard.allowed


def test_retry_is_idempotent(db_manager, portfolio_id):
    """Test re-executing the same intent does not reach the broker twice"""
    submitter = ScriptedSubmitter()
    executor = make_executor(db_manager, submitter)
    first = executor.execute(make_intent(portfolio_id), NOW)
    second = executor.execute(make_intent(portfolio_id), NOW)

    assert second.status == ExecutionStatus.DUPLICATE
    assert second.order_id == first.order_id
    assert second.position_id == first.position_id
    assert submitter.submitted == ['SD-exec-1']

    with db_manager.get_session() as session:
        assert session.query(Position).count() == 1


def test_invalid_intent_writes_nothing(db_manager, portfolio_id):
    """Test a stop on the wrong side is refused before any order exists"""
    submitter = ScriptedSubmitter()
    with pytest.raises(InvalidPositionState):
        make_executor(db_manager, submitter).execute(
            make_intent(portfolio_id, stop_loss=Decimal('260')), NOW)

    assert submitter.submitted == []
    with db_manager.get_session() as session:
        assert session.query(Order).count() == 0


# ==================== Broker Failures ====================

def test_broker_error_marks_order_failed(db_manager, portfolio_id, sink):
    """Test a transport failure leaves a FAILED order and no position"""
    submitter = ScriptedSubmitter(BrokerError("connection reset"))
    result = make_executor(db_manager, submitter, sink).execute(make_intent(portfolio_id), NOW)

    assert result.status == ExecutionStatus.FAILED
    assert result.position_id is None
    assert result.message == 'connection reset'

    with db_manager.get_session() as session:
        order = session.get(Order, result.order_id)
        assert order.status == OrderStatus.FAILED
        assert order.error_message == 'connection reset'
        assert session.query(Position).count() == 0

    assert [e.event_type for e in sink.events] == ['order_failed']
    assert sink.events[0].severity == 'ERROR'


def test_broker_rejection(db_manager, portfolio_id):
    """Test a negative acknowledgement marks the order REJECTED"""
    submitter = ScriptedSubmitter(BrokerAck(False, message='margin shortfall'))
    result = make_executor(db_manager, submitter).execute(make_intent(portfolio_id), NOW)

    assert result.status == ExecutionStatus.FAILED
    with db_manager.get_session() as session:
        assert session.get(Order, result.order_id).status == OrderStatus.REJECTED


def test_failures_trip_the_circuit_breaker(db_manager, portfolio_id, sink):
    """Test repeated broker failures block the next intent before submission"""
    submitter = ScriptedSubmitter(BrokerError("timeout"), BrokerError("rejected", rejected=True))
    executor = make_executor(db_manager, submitter, sink)
    executor.execute(make_intent(portfolio_id, key='1'), NOW)
    executor.execute(make_intent(portfolio_id, key='2'), NOW)

    result = executor.execute(make_intent(portfolio_id, key='3'), NOW)

    assert result.status == ExecutionStatus.REJECTED
    assert result.check.error.kind == 'circuit_breaker_open'
    assert submitter.submitted == ['SD-exec-1', 'SD-exec-2']
    assert sink.events[-1].event_type == 'circuit_breaker_open'
    assert sink.events[-1].severity == 'CRITICAL'
    assert sink.events[-1].metadata['failed_orders'] == 2


def test_unexpected_submitter_errors_feed_the_breaker(db_manager, portfolio_id, sink):
    """Test transport exceptions outside BrokerError still fail the order and count as failures"""
    submitter = ScriptedSubmitter(ConnectionError("reset by peer"), TimeoutError("no response"))
    executor = make_executor(db_manager, submitter, sink)

    first = executor.execute(make_intent(portfolio_id, key='1'), NOW)
    executor.execute(make_intent(portfolio_id, key='2'), NOW)

    assert first.status == ExecutionStatus.FAILED
    assert first.message == 'ConnectionError: reset by peer'
    with db_manager.get_session() as session:
        assert session.get(Order, first.order_id).status == OrderStatus.FAILED
        assert session.query(Order).filter_by(status=OrderStatus.PENDING).count() == 0

    blocked = executor.execute(make_intent(portfolio_id, key='3'), NOW)
    assert blocked.status == ExecutionStatus.REJECTED
    assert blocked.check.error.kind == 'circuit_breaker_open'
    assert [e.event_type for e in sink.events] == ['order_failed', 'order_failed', 'circuit_breaker_open']


def test_position_failure_after_placement_is_recorded(db_manager, portfolio_id, sink):
    """Test a placed order whose position cannot be opened is flagged and alerted"""
    submitter = ScriptedSubmitter(BrokerAck(True, 'BRK-9'))
    executor = make_executor(db_manager, submitter, sink)

    with patch.object(TradingService, 'open_position',
                      side_effect=ConcurrentModificationError("portfolio kept changing")):
        with pytest.raises(ConcurrentModificationError):
            executor.execute(make_intent(portfolio_id), NOW)

    with db_manager.get_session() as session:
        order = session.query(Order).filter_by(client_order_id='SD-exec-1').one()
        assert order.status == OrderStatus.PLACED
        assert order.broker_ref == 'BRK-9'
        assert 'position not opened' in order.error_message
        assert 'portfolio kept changing' in order.error_message
        assert session.query(Position).count() == 0

    assert sink.events[-1].event_type == 'position_open_failed'
    assert sink.events[-1].severity == 'CRITICAL'
    assert sink.events[-1].metadata['broker_ref'] == 'BRK-9'


# ==================== Limits ====================

def test_exposure_rejection_is_not_submitted(db_manager, portfolio_id):
    """Test an oversized order never reaches the broker"""
    submitter = ScriptedSubmitter()
    result = make_executor(db_manager, submitter).execute(
        make_intent(portfolio_id, quantity=200), NOW)

    assert result.status == ExecutionStatus.REJECTED
    assert result.check.error.limit_type == 'per_trade'
    assert submitter.submitted == []


def test_portfolio_limits_block_entry(db_manager):
    """Test the portfolio guard runs before the gate"""
    with db_manager.get_session() as session:
        portfolio_id = TradingService(session).create_portfolio(
            'Single Slot', initial_capital=Decimal('200000'), max_open_positions=1).id

    submitter = ScriptedSubmitter()
    executor = make_executor(db_manager, submitter)
    assert executor.execute(make_intent(portfolio_id, key='a'), NOW).status == ExecutionStatus.SUBMITTED

    result = executor.execute(make_intent(portfolio_id, key='b', symbol='INFY'), NOW)
    assert result.status == ExecutionStatus.BLOCKED
    assert result.guard.checks['max_positions'] is False
    assert result.check is None

    unguarded = make_executor(db_manager, submitter, enforce_portfolio_limits=False)
    assert unguarded.execute(make_intent(portfolio_id, key='b', symbol='INFY'), NOW).status \
        == ExecutionStatus.SUBMITTED
