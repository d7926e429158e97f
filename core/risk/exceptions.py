"""
SwingDesk Risk Exceptions
Typed error taxonomy for the position state machine, capital bucketing,
pre-trade risk gate and ledger
"""

from decimal import Decimal
from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base class for all engine errors."""

    def to_dict(self) -> Dict[str, Any]:
        return {'error': type(self).__name__, 'message': str(self)}


# ==================== Position / Sizing ====================

class InvalidPositionState(EngineError):
    """Raised when a position mutation receives invalid inputs or is not allowed in the current status."""
    pass


class InvalidStopLoss(EngineError):
    """Raised when the stop loss leaves zero risk per share."""
    pass


class InvalidAllocation(EngineError):
    """Raised when bucket percentages or cash movements break the allocation invariants."""
    pass


# ==================== Ledger / Persistence ====================

class LedgerImmutableError(EngineError):
    """Raised on any attempt to update or delete a ledger entry."""
    pass


class LedgerWriteError(EngineError):
    """Raised when a ledger entry cannot be written."""
    pass


class ConcurrentModificationError(EngineError):
    """Raised when an optimistic version check keeps failing after all retries."""
    pass


# ==================== Risk Gate ====================

class RiskGateError(EngineError):
    """
    Base class for pre-trade rejections

    Gate errors are returned inside a RiskCheckResult, never raised across
    the broker boundary.
    """
    kind = 'risk_gate'


class DuplicateOrder(RiskGateError):
    """An order with the same client_order_id already exists."""
    kind = 'duplicate_order'

    def __init__(self, client_order_id: str, order: Any = None):
        self.client_order_id = client_order_id
        self.order = order
        order_id = getattr(order, 'id', None)
        super().__init__(f"Order '{client_order_id}' already exists (id={order_id})")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            'kind': self.kind,
            'client_order_id': self.client_order_id,
            'order_id': getattr(self.order, 'id', None),
        })
        return data


class ExposureLimitExceeded(RiskGateError):
    """Order notional or aggregate bucket exposure exceeds its limit."""
    kind = 'exposure_limit_exceeded'

    def __init__(self, limit_type: str, computed: Decimal, limit: Decimal):
        self.limit_type = limit_type
        self.computed = computed
        self.limit = limit
        super().__init__(f"{limit_type} exposure {computed} exceeds limit {limit}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            'kind': self.kind,
            'limit_type': self.limit_type,
            'computed': str(self.computed),
            'limit': str(self.limit),
        })
        return data


class CircuitBreakerOpen(RiskGateError):
    """Recent order failure rate is above the configured threshold."""
    kind = 'circuit_breaker_open'

    def __init__(self, failure_rate: Decimal, threshold: Decimal,
                 failed_orders: int, total_orders: int, window_minutes: int):
        self.failure_rate = failure_rate
        self.threshold = threshold
        self.failed_orders = failed_orders
        self.total_orders = total_orders
        self.window_minutes = window_minutes
        super().__init__(
            f"Circuit breaker open: failure rate {failure_rate}% > {threshold}% "
            f"({failed_orders}/{total_orders} orders in last {window_minutes}m)"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            'kind': self.kind,
            'failure_rate': str(self.failure_rate),
            'threshold': str(self.threshold),
            'failed_orders': self.failed_orders,
            'total_orders': self.total_orders,
            'window_minutes': self.window_minutes,
        })
        return data


class RebalanceInfeasible(EngineError):
    """
    Floors (committed exposure) exceed the capital base

    Never raised by a rebalance; attached to the Allocation so the caller
    can inspect it.
    """

    def __init__(self, capital_base: Decimal, swing_floor: Decimal,
                 long_term_floor: Decimal, shortfall: Optional[Decimal] = None):
        self.capital_base = capital_base
        self.swing_floor = swing_floor
        self.long_term_floor = long_term_floor
        self.shortfall = shortfall if shortfall is not None else (
            swing_floor + long_term_floor - capital_base
        )
        super().__init__(
            f"Committed capital {swing_floor + long_term_floor} exceeds base {capital_base}; "
            f"buckets capped at the base"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            'capital_base': str(self.capital_base),
            'swing_floor': str(self.swing_floor),
            'long_term_floor': str(self.long_term_floor),
            'shortfall': str(self.shortfall),
        })
        return data
