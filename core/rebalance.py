"""
Rebalance scheduler: periodic capital bucketing for each portfolio
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, ContextManager, Dict, Optional
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.database.trading_service import TradingService
from core.interfaces import AlertEvent, AlertSink, safe_notify
from core.risk.capital_bucket import Allocation
from core.risk.exceptions import EngineError

logger = logging.getLogger(__name__)

SessionScope = Callable[[], ContextManager[Session]]


@dataclass
class RebalanceReport:
    allocations: Dict[int, Allocation] = field(default_factory=dict)
    failures: Dict[int, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


class RebalanceScheduler:
    """
    Runs one rebalance transaction per portfolio

    No lock is held across portfolios; each run reads, computes and commits on its own.
    """

    def __init__(self, session_scope: SessionScope, alert_sink: Optional[AlertSink] = None,
                 retry_limit: int = 3):
        self.session_scope = session_scope
        self.alert_sink = alert_sink
        self.retry_limit = retry_limit

    def run(self, portfolio_id: int, now: Optional[datetime] = None) -> Allocation:
        """
        Rebalance one portfolio

        Raises:
            LedgerWriteError: the audit entry could not be written (nothing is committed)
        """
        with self.session_scope() as session:
            service = TradingService(session, retry_limit=self.retry_limit)
            allocation = service.rebalance_portfolio(portfolio_id, at=now)

        safe_notify(self.alert_sink, AlertEvent(
            event_type='capital_rebalance',
            severity='INFO',
            message=f"Portfolio {portfolio_id} rebalanced ({allocation.phase.value}): "
                    f"swing {allocation.swing_amount}, long-term {allocation.long_term_amount}, "
                    f"cash {allocation.cash_amount}",
            metadata={'portfolio_id': portfolio_id, **allocation.to_dict()},
        ))
        if not allocation.is_feasible:
            safe_notify(self.alert_sink, AlertEvent(
                event_type='rebalance_infeasible',
                severity='WARNING',
                message=f"Portfolio {portfolio_id}: {allocation.infeasible}",
                metadata={'portfolio_id': portfolio_id, **allocation.infeasible.to_dict()},
            ))
        return allocation

    def run_all(self, now: Optional[datetime] = None) -> RebalanceReport:
        """Rebalance every active portfolio; failures are reported and alerted, not hidden"""
        with self.session_scope() as session:
            portfolio_ids = [p.id for p in TradingService(session).get_active_portfolios()]

        report = RebalanceReport()
        for portfolio_id in portfolio_ids:
            try:
                report.allocations[portfolio_id] = self.run(portfolio_id, now)
            except (EngineError, SQLAlchemyError) as e:
                logger.error(f"Rebalance failed for portfolio {portfolio_id}: {e}")
                report.failures[portfolio_id] = str(e)
                safe_notify(self.alert_sink, AlertEvent(
                    event_type='rebalance_failed',
                    severity='CRITICAL',
                    message=f"Rebalance failed for portfolio {portfolio_id}: {e}",
                    metadata={'portfolio_id': portfolio_id},
                ))
        return report
