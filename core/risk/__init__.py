"""Risk Package for the SwingDesk engine

The gate and guard (risk_gate, portfolio_guard) depend on the ORM models and
are imported from their modules directly.
"""

from .exceptions import (
    EngineError, InvalidPositionState, InvalidStopLoss, InvalidAllocation,
    LedgerImmutableError, LedgerWriteError, ConcurrentModificationError,
    RiskGateError, DuplicateOrder, ExposureLimitExceeded, CircuitBreakerOpen,
    RebalanceInfeasible
)
from .exits import ExitAction, ExitReason, ExitDecision, ExitPolicy
from .capital_bucket import Phase, Allocation, compute_allocation, select_phase, check_percentages
from .position_sizer import PositionSizer, SizingResult, size

__all__ = [
    # Errors
    'EngineError',
    'InvalidPositionState',
    'InvalidStopLoss',
    'InvalidAllocation',
    'LedgerImmutableError',
    'LedgerWriteError',
    'ConcurrentModificationError',
    'RiskGateError',
    'DuplicateOrder',
    'ExposureLimitExceeded',
    'CircuitBreakerOpen',
    'RebalanceInfeasible',

    # Exits
    'ExitAction',
    'ExitReason',
    'ExitDecision',
    'ExitPolicy',

    # Capital bucketing
    'Phase',
    'Allocation',
    'compute_allocation',
    'select_phase',
    'check_percentages',

    # Sizing
    'PositionSizer',
    'SizingResult',
    'size',
]
