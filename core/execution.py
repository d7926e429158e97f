"""
Entry execution: risk gate, broker submission and position opening
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, ContextManager, Dict, Optional
import logging

from sqlalchemy.orm import Session

from core.database.trading_models import Portfolio, Position
from core.database.trading_service import TradingService
from core.interfaces import AlertEvent, AlertSink, BrokerError, OrderSubmitter, safe_notify
from core.risk.exceptions import CircuitBreakerOpen
from core.risk.portfolio_guard import PortfolioRiskManager, PortfolioRiskReport
from core.risk.risk_gate import OrderIntent, RiskCheckResult, RiskGate, RiskGateConfig

logger = logging.getLogger(__name__)

SessionScope = Callable[[], ContextManager[Session]]


class ExecutionStatus(Enum):
    SUBMITTED = "submitted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    BLOCKED = "blocked"
    FAILED = "failed"


@dataclass
class ExecutionResult:
    status: ExecutionStatus
    order_id: Optional[int] = None
    position_id: Optional[int] = None
    check: Optional[RiskCheckResult] = None
    guard: Optional[PortfolioRiskReport] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'order_id': self.order_id,
            'position_id': self.position_id,
            'check': self.check.to_dict() if self.check else None,
            'guard': self.guard.to_dict() if self.guard else None,
            'message': self.message,
        }


class EntryExecutor:
    """
    Turns an OrderIntent into a live position

    Order: portfolio limits -> RiskGate.admit -> OrderSubmitter.submit -> open Position.
    Broker failures, including unexpected submitter exceptions, mark the order
    FAILED or REJECTED (which feeds the circuit breaker) and are never retried
    here. If the position cannot be opened after the broker accepted, the order
    stays PLACED with the error recorded and a CRITICAL alert is sent before
    the error propagates.
    """

    def __init__(self,
                 session_scope: SessionScope,
                 submitter: OrderSubmitter,
                 alert_sink: Optional[AlertSink] = None,
                 gate_config: Optional[RiskGateConfig] = None,
                 enforce_portfolio_limits: bool = True,
                 retry_limit: int = 3):
        self.session_scope = session_scope
        self.submitter = submitter
        self.alert_sink = alert_sink
        self.gate_config = gate_config or RiskGateConfig()
        self.enforce_portfolio_limits = enforce_portfolio_limits
        self.retry_limit = retry_limit

    def execute(self, intent: OrderIntent, now: Optional[datetime] = None) -> ExecutionResult:
        """
        Raises:
            InvalidPositionState: the intent cannot form a valid position (nothing is written)
        """
        # validate the position before anything reaches the broker
        Position.open(intent.to_position_spec())

        with self.session_scope() as session:
            guard = None
            if self.enforce_portfolio_limits:
                guard = PortfolioRiskManager(session).evaluate(intent.portfolio_id, now)
                if not guard.allowed:
                    return ExecutionResult(ExecutionStatus.BLOCKED, guard=guard,
                                           message='; '.join(guard.reasons))

            gate = RiskGate(session, self.gate_config)
            check = gate.admit(intent, now)
            if check.is_duplicate:
                return ExecutionResult(ExecutionStatus.DUPLICATE, order_id=check.order.id,
                                       position_id=check.order.position.id if check.order.position else None,
                                       check=check, guard=guard, message=str(check.error))
            if not check.allowed:
                if isinstance(check.error, CircuitBreakerOpen):
                    safe_notify(self.alert_sink, AlertEvent(
                        event_type='circuit_breaker_open',
                        severity='CRITICAL',
                        message=str(check.error),
                        metadata=check.error.to_dict(),
                    ))
                return ExecutionResult(ExecutionStatus.REJECTED, check=check, guard=guard,
                                       message=str(check.error))

            order = check.order
            try:
                ack = self.submitter.submit(order)
            except BrokerError as e:
                return self._fail(session, order, str(e), e.rejected, check, guard)
            except Exception as e:
                # any submitter failure counts toward the circuit breaker
                logger.exception(f"Submitter raised for order {order.client_order_id}")
                return self._fail(session, order, f"{type(e).__name__}: {e}", False, check, guard)

            if not ack.accepted:
                return self._fail(session, order, ack.message or 'Rejected by broker', True, check, guard)

            order.mark_placed(ack.broker_ref, at=now)
            session.commit()

            portfolio = session.get(Portfolio, intent.portfolio_id)
            service = TradingService(session, retry_limit=self.retry_limit)
            try:
                position = service.open_position(intent.portfolio_id,
                                                  intent.to_position_spec(portfolio.mode),
                                                  order=order, at=now)
            except Exception as e:
                self._record_unbacked(session, order, e)
                raise

            logger.info(f"Executed {order.client_order_id}: order {order.id} -> position {position.id}")
            return ExecutionResult(ExecutionStatus.SUBMITTED, order_id=order.id,
                                   position_id=position.id, check=check, guard=guard)

    def _record_unbacked(self, session: Session, order, error: Exception) -> None:
        """The broker holds a placed order with no position behind it"""
        session.rollback()
        message = f"Placed at broker but position not opened: {type(error).__name__}: {error}"
        order.error_message = message
        session.commit()
        logger.critical(f"Order {order.client_order_id} ({order.broker_ref}): {message}")
        safe_notify(self.alert_sink, AlertEvent(
            event_type='position_open_failed',
            severity='CRITICAL',
            message=f"Order {order.client_order_id} ({order.symbol}): {message}",
            metadata={'order_id': order.id, 'broker_ref': order.broker_ref},
        ))

    def _fail(self, session: Session, order, message: str, rejected: bool,
              check: RiskCheckResult, guard: Optional[PortfolioRiskReport]) -> ExecutionResult:
        order.mark_failed(message, rejected=rejected)
        session.commit()
        logger.error(f"Broker {'rejected' if rejected else 'failed'} order {order.client_order_id}: {message}")
        safe_notify(self.alert_sink, AlertEvent(
            event_type='order_failed',
            severity='ERROR',
            message=f"Order {order.client_order_id} ({order.symbol}) failed: {message}",
            metadata={'order_id': order.id, 'rejected': rejected},
        ))
        return ExecutionResult(ExecutionStatus.FAILED, order_id=order.id, check=check,
                               guard=guard, message=message)
