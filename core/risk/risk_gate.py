"""
Pre-trade risk gate

Three checks run in order before any order may be created: idempotency,
exposure limits and the order-failure circuit breaker. Failures come back
as typed results, never as exceptions.
"""

import hashlib
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.database.models import utcnow
from core.database.trading_models import (
    BucketKind, FAILED_ORDER_STATUSES, IN_FLIGHT_ORDER_STATUSES, Order, OrderStatus, OrderType,
    Portfolio, Position, PositionSpec, PositionStatus, TradeSide, TradingMode
)
from .exceptions import (
    CircuitBreakerOpen, DuplicateOrder, ExposureLimitExceeded, RiskGateError
)
from .money import ZERO, HUNDRED, money, pct, optional_decimal, to_decimal

logger = logging.getLogger(__name__)

DEFAULT_EXPOSURE_PCT = Decimal('15')


@dataclass(frozen=True)
class RiskGateConfig:
    """Circuit breaker tuning"""
    window_minutes: int = 60
    min_orders: int = 5
    failure_threshold_pct: Decimal = Decimal('50')


@dataclass
class OrderIntent:
    """A sized entry the strategy layer wants to place"""
    client_order_id: str
    portfolio_id: int
    symbol: str
    side: TradeSide
    quantity: int
    entry_price: Any
    stop_loss: Any = None
    take_profit: Any = None
    tp1: Any = None
    tp2: Any = None
    trailing_stop_distance: Any = None
    trailing_stop_pct: Any = None
    atr: Any = None
    atr_trailing_multiplier: Any = None
    max_holding_days: Optional[int] = None
    bucket: BucketKind = BucketKind.SWING
    order_type: OrderType = OrderType.MARKET
    instrument_id: Optional[int] = None
    max_position_exposure_amount: Any = None

    @staticmethod
    def derive_client_order_id(signal_key: str, trade_date: date, prefix: str = 'SD') -> str:
        """Deterministic idempotency key: the same signal on the same day always collides"""
        digest = hashlib.sha256(f"{signal_key}|{trade_date.isoformat()}".encode('utf-8')).hexdigest()
        return f"{prefix}-{digest[:32]}"

    @property
    def notional(self) -> Decimal:
        return money(to_decimal(self.entry_price, 'entry_price', allow_zero=False)
                     * to_decimal(self.quantity, 'quantity', allow_zero=False))

    def to_position_spec(self, trading_mode: TradingMode = TradingMode.PAPER) -> PositionSpec:
        return PositionSpec(
            symbol=self.symbol,
            side=self.side,
            entry_price=self.entry_price,
            quantity=self.quantity,
            stop_loss=self.stop_loss,
            take_profit=self.take_profit,
            tp1=self.tp1,
            tp2=self.tp2,
            trailing_stop_distance=self.trailing_stop_distance,
            trailing_stop_pct=self.trailing_stop_pct,
            atr=self.atr,
            atr_trailing_multiplier=self.atr_trailing_multiplier,
            bucket=self.bucket,
            trading_mode=trading_mode,
            portfolio_id=self.portfolio_id,
            instrument_id=self.instrument_id,
            max_holding_days=self.max_holding_days,
        )


@dataclass
class RiskCheckResult:
    """Outcome of a gate check; `order` is set for admitted and duplicate intents"""
    allowed: bool
    error: Optional[RiskGateError] = None
    order: Optional[Order] = None

    @property
    def is_duplicate(self) -> bool:
        return isinstance(self.error, DuplicateOrder)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'allowed': self.allowed,
            'error': self.error.to_dict() if self.error else None,
            'order_id': self.order.id if self.order is not None else None,
        }


@dataclass(frozen=True)
class CircuitBreakerStatus:
    total_orders: int
    failed_orders: int
    failure_rate: Decimal
    threshold: Decimal
    min_orders: int
    window_minutes: int

    @property
    def is_open(self) -> bool:
        return self.total_orders >= self.min_orders and self.failure_rate > self.threshold

    def to_error(self) -> CircuitBreakerOpen:
        return CircuitBreakerOpen(self.failure_rate, self.threshold, self.failed_orders,
                                  self.total_orders, self.window_minutes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'is_open': self.is_open,
            'total_orders': self.total_orders,
            'failed_orders': self.failed_orders,
            'failure_rate': str(self.failure_rate),
            'threshold': str(self.threshold),
            'min_orders': self.min_orders,
            'window_minutes': self.window_minutes,
        }


class RiskGate:
    """
    Gate in front of order creation

    check() only reads. admit() additionally inserts the Order, relying on the
    unique client_order_id to resolve concurrent retries to a single row.
    """

    def __init__(self, session: Session, config: Optional[RiskGateConfig] = None):
        self.session = session
        self.config = config or RiskGateConfig()

    # ==================== Checks ====================

    def find_order(self, client_order_id: str) -> Optional[Order]:
        return self.session.query(Order).filter_by(client_order_id=client_order_id).first()

    def _bucket_exposure(self, portfolio_id: int, bucket: BucketKind) -> Decimal:
        """Open position cost basis plus admitted or placed orders not yet backed by a position"""
        positions = self.session.query(Position).filter(
            Position.portfolio_id == portfolio_id,
            Position.bucket == bucket,
            Position.status.in_([PositionStatus.OPEN, PositionStatus.PARTIALLY_CLOSED])
        ).all()
        in_flight = self.session.query(Order).filter(
            Order.portfolio_id == portfolio_id,
            Order.bucket == bucket,
            Order.status.in_(IN_FLIGHT_ORDER_STATUSES),
            ~Order.position.has()
        ).all()
        return money(sum((p.exposure for p in positions), ZERO)
                     + sum((o.notional for o in in_flight), ZERO))

    def check_exposure(self, intent: OrderIntent,
                       portfolio: Portfolio) -> Optional[ExposureLimitExceeded]:
        notional = intent.notional

        limit = optional_decimal(intent.max_position_exposure_amount, 'max_position_exposure_amount')
        if limit is None:
            if portfolio.risk_config is not None:
                limit = portfolio.risk_config.max_position_exposure_amount(portfolio.total_equity)
            else:
                limit = money(portfolio.total_equity * DEFAULT_EXPOSURE_PCT / HUNDRED)
        if notional > limit:
            return ExposureLimitExceeded('per_trade', notional, limit)

        capacity = portfolio.bucket_capital(intent.bucket)
        committed = self._bucket_exposure(portfolio.id, intent.bucket)
        if committed + notional > capacity:
            return ExposureLimitExceeded(f"{intent.bucket.value}_bucket", committed + notional, capacity)
        return None

    def circuit_breaker_status(self, trading_mode: TradingMode,
                               now: Optional[datetime] = None) -> CircuitBreakerStatus:
        """Failure ratio of orders created within the trailing window"""
        now = now or utcnow()
        since = now - timedelta(minutes=self.config.window_minutes)
        orders = self.session.query(Order.status).filter(
            Order.trading_mode == trading_mode,
            Order.created_at >= since,
            Order.created_at <= now
        ).all()
        total = len(orders)
        failed = sum(1 for (status,) in orders if status in FAILED_ORDER_STATUSES)
        rate = pct(Decimal(failed) / Decimal(total) * HUNDRED) if total else ZERO
        return CircuitBreakerStatus(
            total_orders=total,
            failed_orders=failed,
            failure_rate=rate,
            threshold=Decimal(str(self.config.failure_threshold_pct)),
            min_orders=self.config.min_orders,
            window_minutes=self.config.window_minutes,
        )

    def check(self, intent: OrderIntent, now: Optional[datetime] = None) -> RiskCheckResult:
        """
        Run idempotency, exposure and circuit-breaker checks in order; the first failure wins

        Raises:
            InvalidPositionState: the intent carries a non-positive price or quantity
            ValueError: the portfolio does not exist
        """
        existing = self.find_order(intent.client_order_id)
        if existing is not None:
            logger.info(f"Duplicate order intent {intent.client_order_id} -> order {existing.id}")
            return RiskCheckResult(False, DuplicateOrder(intent.client_order_id, existing), existing)

        portfolio = self.session.get(Portfolio, intent.portfolio_id)
        if portfolio is None:
            raise ValueError(f"Portfolio {intent.portfolio_id} not found")

        exposure_error = self.check_exposure(intent, portfolio)
        if exposure_error is not None:
            logger.warning(f"Rejected {intent.client_order_id} ({intent.symbol}): {exposure_error}")
            return RiskCheckResult(False, exposure_error)

        status = self.circuit_breaker_status(portfolio.mode, now)
        if status.is_open:
            error = status.to_error()
            logger.warning(f"Rejected {intent.client_order_id} ({intent.symbol}): {error}")
            return RiskCheckResult(False, error)

        return RiskCheckResult(True)

    # ==================== Admission ====================

    def admit(self, intent: OrderIntent, now: Optional[datetime] = None) -> RiskCheckResult:
        """
        Check the intent and, if it passes, persist a PENDING order in its own transaction

        A concurrent insert of the same client_order_id resolves to the existing
        order with a DuplicateOrder result.
        """
        result = self.check(intent, now)
        if not result.allowed:
            return result

        portfolio = self.session.get(Portfolio, intent.portfolio_id)
        order = Order(
            client_order_id=intent.client_order_id,
            portfolio_id=intent.portfolio_id,
            instrument_id=intent.instrument_id,
            symbol=intent.symbol,
            side=intent.side,
            bucket=intent.bucket,
            order_type=intent.order_type,
            trading_mode=portfolio.mode,
            status=OrderStatus.PENDING,
            quantity=int(to_decimal(intent.quantity, 'quantity', allow_zero=False)),
            price=to_decimal(intent.entry_price, 'entry_price', allow_zero=False),
            stop_loss=optional_decimal(intent.stop_loss, 'stop_loss'),
            take_profit=optional_decimal(intent.take_profit, 'take_profit'),
            created_at=now or utcnow(),
        )
        try:
            self.session.add(order)
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            existing = self.find_order(intent.client_order_id)
            if existing is None:
                raise
            logger.info(f"Lost insert race for {intent.client_order_id}; using order {existing.id}")
            return RiskCheckResult(False, DuplicateOrder(intent.client_order_id, existing), existing)

        logger.info(f"Admitted order {order.client_order_id} (ID: {order.id}) "
                    f"{order.side.value} {order.symbol} x{order.quantity} @ {order.price}")
        return RiskCheckResult(True, order=order)
