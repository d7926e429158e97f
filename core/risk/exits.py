"""
Exit decision types produced by the position state machine
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class ExitAction(Enum):
    """What a tick decided to do with the position"""
    NONE = "none"
    FULL_CLOSE = "full_close"
    PARTIAL_CLOSE = "partial_close"


class ExitReason(Enum):
    """Why a position (or part of it) was exited"""
    STOP_HIT = "stop_hit"
    TARGET_HIT = "target_hit"
    TP1_HIT = "tp1_hit"
    TP2_HIT = "tp2_hit"
    TRAILING_STOP = "trailing_stop"
    TIME_EXIT = "time_exit"
    MANUAL = "manual"


@dataclass(frozen=True)
class ExitPolicy:
    """
    Caller-supplied exit policy

    Attributes:
        tp1_exit_pct: Share of the open quantity closed when TP1 triggers
        breakeven_on_tp1: Move the stop to entry before the TP1 partial exit
        max_holding_days: Holding limit for positions that do not carry their own
    """
    tp1_exit_pct: Decimal = Decimal('50')
    breakeven_on_tp1: bool = True
    max_holding_days: Optional[int] = None

    def __post_init__(self):
        value = Decimal(str(self.tp1_exit_pct))
        if value <= 0 or value > 100:
            raise ValueError(f"tp1_exit_pct must be in (0, 100], got {self.tp1_exit_pct}")
        object.__setattr__(self, 'tp1_exit_pct', value)


@dataclass(frozen=True)
class ExitDecision:
    """Result of evaluating a position's exit rules on one tick"""
    action: ExitAction
    reason: Optional[ExitReason] = None
    quantity: int = 0
    exit_price: Optional[Decimal] = None
    stop_tightened: bool = False

    @classmethod
    def none(cls, stop_tightened: bool = False) -> 'ExitDecision':
        return cls(action=ExitAction.NONE, stop_tightened=stop_tightened)

    @property
    def is_exit(self) -> bool:
        return self.action != ExitAction.NONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action': self.action.value,
            'reason': self.reason.value if self.reason else None,
            'quantity': self.quantity,
            'exit_price': str(self.exit_price) if self.exit_price is not None else None,
            'stop_tightened': self.stop_tightened,
        }
