"""
Exit monitor: one periodic pass over every active position
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, ContextManager, Dict, Optional, Set
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.database.trading_service import TradingService
from core.interfaces import AlertEvent, AlertSink, PriceFeed, safe_notify
from core.risk.exceptions import EngineError
from core.risk.exits import ExitDecision, ExitPolicy

logger = logging.getLogger(__name__)

SessionScope = Callable[[], ContextManager[Session]]


@dataclass
class MonitorReport:
    """Summary of one monitor pass"""
    checked: int = 0
    skipped: int = 0
    exits: Dict[int, ExitDecision] = field(default_factory=dict)
    errors: Dict[int, str] = field(default_factory=dict)
    portfolio_errors: Dict[int, str] = field(default_factory=dict)

    def to_dict(self):
        return {
            'checked': self.checked,
            'skipped': self.skipped,
            'exits': {pid: d.to_dict() for pid, d in self.exits.items()},
            'errors': dict(self.errors),
            'portfolio_errors': dict(self.portfolio_errors),
        }


class ExitMonitor:
    """
    Feeds fresh prices into each active position's exit rules

    Every position is handled in its own session and transaction, so positions
    are independent of each other and a failure on one does not stop the pass.
    """

    def __init__(self,
                 session_scope: SessionScope,
                 price_feed: PriceFeed,
                 alert_sink: Optional[AlertSink] = None,
                 policy: Optional[ExitPolicy] = None,
                 retry_limit: int = 3):
        self.session_scope = session_scope
        self.price_feed = price_feed
        self.alert_sink = alert_sink
        self.policy = policy or ExitPolicy()
        self.retry_limit = retry_limit

    def run_tick(self, now: Optional[datetime] = None) -> MonitorReport:
        report = MonitorReport()
        with self.session_scope() as session:
            targets = [(p.id, p.symbol, p.instrument_id, p.portfolio_id)
                       for p in TradingService(session).get_active_positions()]

        touched: Set[int] = set()
        for position_id, symbol, instrument_id, portfolio_id in targets:
            try:
                quote = self.price_feed.current(symbol, instrument_id)
            except Exception as e:
                logger.warning(f"No price for {symbol} (position {position_id}), skipping: {e}")
                report.skipped += 1
                continue

            try:
                with self.session_scope() as session:
                    service = TradingService(session, retry_limit=self.retry_limit)
                    decision = service.tick_position(position_id, quote.price, atr=quote.atr,
                                                     policy=self.policy, at=now)
            except (EngineError, SQLAlchemyError) as e:
                logger.error(f"Tick failed for position {position_id} ({symbol}): {e}")
                report.errors[position_id] = str(e)
                continue

            report.checked += 1
            touched.add(portfolio_id)
            if decision.is_exit:
                report.exits[position_id] = decision
                safe_notify(self.alert_sink, AlertEvent(
                    event_type='position_exit',
                    severity='INFO',
                    message=f"{decision.reason.value}: {symbol} {decision.action.value} "
                            f"{decision.quantity} @ {decision.exit_price}",
                    metadata={'position_id': position_id, **decision.to_dict()},
                ))
            else:
                logger.debug(f"No exit for {symbol} at {quote.price}")

        self._refresh_equity(touched, report)
        logger.info(f"Exit monitor pass: {report.checked} checked, {len(report.exits)} exits, "
                    f"{report.skipped} skipped, {len(report.errors)} errors")
        return report

    def _refresh_equity(self, portfolio_ids: Set[int], report: MonitorReport) -> None:
        for portfolio_id in sorted(portfolio_ids):
            try:
                with self.session_scope() as session:
                    TradingService(session, retry_limit=self.retry_limit).refresh_portfolio_equity(portfolio_id)
            except (EngineError, SQLAlchemyError) as e:
                logger.error(f"Equity refresh failed for portfolio {portfolio_id}: {e}")
                report.portfolio_errors[portfolio_id] = str(e)
