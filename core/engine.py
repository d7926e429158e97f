"""
Engine bootstrap

Builds the database manager, configuration objects and drivers once and hands
back a TradingEngine that callers pass around explicitly.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional
import logging

from config.settings import Settings, settings as default_settings
from core.database.database_manager import DatabaseConfig, DatabaseManager
from core.database.trading_models import Portfolio, TradingMode
from core.database.trading_service import TradingService
from core.execution import EntryExecutor
from core.interfaces import AlertSink, LoggingAlertSink, OrderSubmitter, PriceFeed
from core.monitor import ExitMonitor
from core.rebalance import RebalanceScheduler
from core.risk.exits import ExitPolicy
from core.risk.risk_gate import OrderIntent, RiskCheckResult, RiskGate, RiskGateConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineConfig:
    """Typed engine configuration derived from Settings"""
    gate: RiskGateConfig = field(default_factory=RiskGateConfig)
    exit_policy: ExitPolicy = field(default_factory=ExitPolicy)
    retry_limit: int = 3
    threshold_3l: Decimal = Decimal('300000')
    threshold_5l: Decimal = Decimal('500000')
    risk_defaults: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, app_settings: Settings) -> 'EngineConfig':
        return cls(
            gate=RiskGateConfig(
                window_minutes=app_settings.circuit_breaker_window_minutes,
                min_orders=app_settings.circuit_breaker_min_orders,
                failure_threshold_pct=Decimal(str(app_settings.circuit_breaker_failure_threshold_pct)),
            ),
            exit_policy=ExitPolicy(
                tp1_exit_pct=Decimal(str(app_settings.tp1_exit_pct)),
                breakeven_on_tp1=app_settings.breakeven_on_tp1,
                max_holding_days=app_settings.default_max_holding_days,
            ),
            retry_limit=app_settings.optimistic_retry_limit,
            threshold_3l=Decimal(str(app_settings.early_stage_threshold)),
            threshold_5l=Decimal(str(app_settings.growth_stage_threshold)),
            risk_defaults=app_settings.risk_overrides(),
        )


class TradingEngine:
    """Handle to a bootstrapped engine"""

    def __init__(self,
                 db_manager: DatabaseManager,
                 config: EngineConfig,
                 price_feed: Optional[PriceFeed] = None,
                 submitter: Optional[OrderSubmitter] = None,
                 alert_sink: Optional[AlertSink] = None):
        self.db = db_manager
        self.config = config
        self.alert_sink = alert_sink or LoggingAlertSink()
        self.rebalancer = RebalanceScheduler(self.db.get_session, self.alert_sink, config.retry_limit)
        self.monitor = (ExitMonitor(self.db.get_session, price_feed, self.alert_sink,
                                    config.exit_policy, config.retry_limit)
                        if price_feed is not None else None)
        self.executor = (EntryExecutor(self.db.get_session, submitter, self.alert_sink,
                                       config.gate, retry_limit=config.retry_limit)
                         if submitter is not None else None)

    def ensure_portfolio(self, name: str, mode: TradingMode = TradingMode.PAPER,
                         initial_capital: Any = 0, **risk_overrides) -> int:
        """Return the id of the (name, mode) portfolio, creating it on first run"""
        with self.db.get_session() as session:
            service = TradingService(session, retry_limit=self.config.retry_limit)
            portfolio = service.get_portfolio_by_name(name, mode)
            if portfolio is None:
                portfolio = service.create_portfolio(
                    name, mode, initial_capital,
                    threshold_3l=self.config.threshold_3l,
                    threshold_5l=self.config.threshold_5l,
                    **{**self.config.risk_defaults, **risk_overrides},
                )
            return portfolio.id

    def check(self, intent: OrderIntent) -> RiskCheckResult:
        """Run the gate without creating anything"""
        with self.db.get_session() as session:
            return RiskGate(session, self.config.gate).check(intent)

    def circuit_breaker_status(self, mode: TradingMode = TradingMode.PAPER):
        with self.db.get_session() as session:
            return RiskGate(session, self.config.gate).circuit_breaker_status(mode)

    def portfolio_state(self, portfolio_id: int) -> Optional[dict]:
        with self.db.get_session() as session:
            portfolio = session.get(Portfolio, portfolio_id)
            if portfolio is None:
                return None
            bucket = portfolio.bucket
            return {
                'id': portfolio.id,
                'name': portfolio.name,
                'mode': portfolio.mode.value,
                'total_equity': str(portfolio.total_equity),
                'available_cash': str(portfolio.available_cash),
                'swing_capital': str(portfolio.swing_capital),
                'long_term_capital': str(portfolio.long_term_capital),
                'realized_pnl': str(portfolio.realized_pnl),
                'unrealized_pnl': str(portfolio.unrealized_pnl),
                'peak_equity': str(portfolio.peak_equity),
                'max_drawdown': str(portfolio.max_drawdown),
                'swing_exposure': str(portfolio.total_swing_exposure),
                'available_swing_capital': str(portfolio.available_swing_capital),
                'bucket': {
                    'phase': bucket.phase.value,
                    'swing_pct': str(bucket.swing_pct),
                    'long_term_pct': str(bucket.long_term_pct),
                    'cash_pct': str(bucket.cash_pct),
                } if bucket else None,
                'open_positions': [p.to_dict() for p in portfolio.active_positions],
            }

    def shutdown(self) -> None:
        self.db.close_all_connections()


def bootstrap_engine(app_settings: Optional[Settings] = None,
                     db_manager: Optional[DatabaseManager] = None,
                     price_feed: Optional[PriceFeed] = None,
                     submitter: Optional[OrderSubmitter] = None,
                     alert_sink: Optional[AlertSink] = None) -> TradingEngine:
    """
    Build a TradingEngine from settings

    Args:
        app_settings: Settings to use (module-level settings by default)
        db_manager: Pre-built manager; one is created from app_settings.database_url otherwise
        price_feed: Enables the exit monitor
        submitter: Enables the entry executor
        alert_sink: Defaults to a LoggingAlertSink
    """
    app_settings = app_settings or default_settings
    if db_manager is None:
        db_manager = DatabaseManager(DatabaseConfig(database_url=app_settings.database_url,
                                                    echo=app_settings.debug))
    db_manager.initialize()

    config = EngineConfig.from_settings(app_settings)
    engine = TradingEngine(db_manager, config, price_feed, submitter, alert_sink)
    logger.info(f"{app_settings.app_name} engine bootstrapped "
                f"(paper_trading={app_settings.paper_trading})")
    return engine
