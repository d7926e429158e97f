"""
Settings and Bootstrap Tests
Tests for environment configuration, typed engine config and alert delivery
"""

import logging
import pytest
from decimal import Decimal

from config.settings import Settings
from core.database.database_manager import DatabaseConfig, DatabaseManager
from core.database.trading_models import Portfolio, TradingMode
from core.engine import EngineConfig, bootstrap_engine
from core.interfaces import AlertEvent, AlertSink, LoggingAlertSink, safe_notify


class ExplodingSink(AlertSink):
    def notify(self, event: AlertEvent) -> None:
        raise ConnectionError("webhook unreachable")


@pytest.fixture
def memory_manager():
    return DatabaseManager(DatabaseConfig(database_url='sqlite:///:memory:'))


# ==================== Settings ====================

def test_settings_defaults(monkeypatch):
    """Test the documented defaults"""
    for key in ('DATABASE_URL', 'PAPER_TRADING', 'CIRCUIT_BREAKER_MIN_ORDERS'):
        monkeypatch.delenv(key, raising=False)
    app_settings = Settings(_env_file=None)

    assert app_settings.app_name == 'SwingDesk'
    assert app_settings.paper_trading is True
    assert app_settings.circuit_breaker_min_orders == 5
    assert app_settings.optimistic_retry_limit == 3
    assert app_settings.risk_overrides()['max_position_exposure_pct'] == 15.0


def test_settings_from_environment(monkeypatch):
    """Test environment variables override defaults"""
    monkeypatch.setenv('DATABASE_URL', 'sqlite:///env.db')
    monkeypatch.setenv('CIRCUIT_BREAKER_FAILURE_THRESHOLD_PCT', '35')
    monkeypatch.setenv('BREAKEVEN_ON_TP1', 'false')

    app_settings = Settings(_env_file=None)
    assert app_settings.database_url == 'sqlite:///env.db'
    assert app_settings.circuit_breaker_failure_threshold_pct == 35.0
    assert app_settings.breakeven_on_tp1 is False


def test_settings_validation(monkeypatch):
    """Test out-of-range values are refused"""
    monkeypatch.setenv('TP1_EXIT_PCT', '150')
    with pytest.raises(ValueError):
        Settings(_env_file=None)


# ==================== Engine Config ====================

def test_engine_config_from_settings():
    """Test settings become typed config objects with Decimal values"""
    app_settings = Settings(_env_file=None, circuit_breaker_window_minutes=15,
                            circuit_breaker_failure_threshold_pct=40.0, tp1_exit_pct=33.0,
                            default_max_holding_days=10, early_stage_threshold=250000.0)
    config = EngineConfig.from_settings(app_settings)

    assert config.gate.window_minutes == 15
    assert config.gate.failure_threshold_pct == Decimal('40.0')
    assert config.exit_policy.tp1_exit_pct == Decimal('33.0')
    assert config.exit_policy.max_holding_days == 10
    assert config.threshold_3l == Decimal('250000.0')
    assert config.risk_defaults['max_open_positions'] == 5


def test_bootstrap_engine_applies_settings(memory_manager):
    """Test new portfolios pick up the configured risk defaults"""
    app_settings = Settings(_env_file=None, max_open_positions=3)
    engine = bootstrap_engine(app_settings, db_manager=memory_manager)

    portfolio_id = engine.ensure_portfolio('Configured', TradingMode.PAPER, Decimal('100000'))
    state = engine.portfolio_state(portfolio_id)

    assert state['bucket']['phase'] == 'early'
    assert engine.monitor is None
    assert engine.executor is None
    with memory_manager.get_session() as session:
        assert session.get(Portfolio, portfolio_id).risk_config.max_open_positions == 3
    engine.shutdown()


# ==================== Alerts ====================

def test_logging_alert_sink_keeps_recent_events(caplog):
    """Test events are logged at their severity and the buffer is bounded"""
    sink = LoggingAlertSink(max_events=2)
    with caplog.at_level(logging.INFO, logger='core.interfaces'):
        for i in range(3):
            sink.notify(AlertEvent(event_type='test', severity='WARNING', message=f"event {i}"))

    assert [e.message for e in sink.events] == ['event 1', 'event 2']
    assert any(r.levelno == logging.WARNING and 'event 2' in r.getMessage() for r in caplog.records)


def test_safe_notify_contains_failures(caplog):
    """Test a failing sink is logged and does not raise"""
    event = AlertEvent(event_type='position_exit', severity='INFO', message='closed')
    with caplog.at_level(logging.ERROR, logger='core.interfaces'):
        assert safe_notify(ExplodingSink(), event) is False
    assert 'webhook unreachable' in caplog.text

    assert safe_notify(None, event) is False
    assert safe_notify(LoggingAlertSink(), event) is True
