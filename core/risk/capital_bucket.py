"""
Phase-based capital bucketing

Splits a capital base into swing, long-term and cash buckets by growth
phase, keeping each bucket at least as large as the capital already
committed to it.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .exceptions import InvalidAllocation, RebalanceInfeasible
from .money import ZERO, HUNDRED, money, pct, percent_of, to_decimal

logger = logging.getLogger(__name__)

DEFAULT_EARLY_THRESHOLD = Decimal('300000')
DEFAULT_GROWTH_THRESHOLD = Decimal('500000')
PCT_TOLERANCE = Decimal('0.01')


class Phase(Enum):
    """Portfolio growth phase"""
    EARLY = "early"
    GROWTH = "growth"
    MATURE = "mature"


# (swing, long_term, cash)
PHASE_SPLITS: Dict[Phase, Tuple[Decimal, Decimal, Decimal]] = {
    Phase.EARLY: (Decimal('80'), Decimal('0'), Decimal('20')),
    Phase.GROWTH: (Decimal('70'), Decimal('20'), Decimal('10')),
    Phase.MATURE: (Decimal('60'), Decimal('30'), Decimal('10')),
}


def check_percentages(swing_pct: Decimal, long_term_pct: Decimal, cash_pct: Decimal) -> None:
    """
    Validate a bucket split

    Raises:
        InvalidAllocation: if any share leaves [0, 100] or the total is not 100 (+-0.01)
    """
    for name, value in (('swing_pct', swing_pct), ('long_term_pct', long_term_pct),
                        ('cash_pct', cash_pct)):
        if value is None or value < 0 or value > HUNDRED:
            raise InvalidAllocation(f"{name} must be within [0, 100], got {value}")
    total = Decimal(swing_pct) + Decimal(long_term_pct) + Decimal(cash_pct)
    if abs(total - HUNDRED) > PCT_TOLERANCE:
        raise InvalidAllocation(f"Bucket percentages must sum to 100, got {total}")


def select_phase(total_equity: Decimal,
                 early_threshold: Decimal = DEFAULT_EARLY_THRESHOLD,
                 growth_threshold: Decimal = DEFAULT_GROWTH_THRESHOLD) -> Phase:
    if total_equity < early_threshold:
        return Phase.EARLY
    if total_equity < growth_threshold:
        return Phase.GROWTH
    return Phase.MATURE


@dataclass
class Allocation:
    """Outcome of a rebalance: phase, final percentages and absolute bucket amounts"""
    phase: Phase
    capital_base: Decimal
    swing_pct: Decimal
    long_term_pct: Decimal
    cash_pct: Decimal
    swing_amount: Decimal
    long_term_amount: Decimal
    cash_amount: Decimal
    target_swing_pct: Decimal
    target_long_term_pct: Decimal
    target_cash_pct: Decimal
    infeasible: Optional[RebalanceInfeasible] = field(default=None)

    @property
    def is_feasible(self) -> bool:
        return self.infeasible is None

    @property
    def total(self) -> Decimal:
        return self.swing_amount + self.long_term_amount + self.cash_amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            'phase': self.phase.value,
            'capital_base': str(self.capital_base),
            'allocation': {
                'swing_pct': str(self.swing_pct),
                'long_term_pct': str(self.long_term_pct),
                'cash_pct': str(self.cash_pct),
            },
            'target_allocation': {
                'swing_pct': str(self.target_swing_pct),
                'long_term_pct': str(self.target_long_term_pct),
                'cash_pct': str(self.target_cash_pct),
            },
            'amounts': {
                'swing': str(self.swing_amount),
                'long_term': str(self.long_term_amount),
                'cash': str(self.cash_amount),
            },
            'infeasible': self.infeasible.to_dict() if self.infeasible else None,
        }


def _split_percentages(capital_base: Decimal, swing: Decimal,
                       long_term: Decimal) -> Tuple[Decimal, Decimal, Decimal]:
    """Express amounts as percentages of the base, cash taking the rounding residue"""
    if capital_base <= 0:
        return ZERO, ZERO, HUNDRED
    swing_pct = pct(swing / capital_base * HUNDRED)
    long_term_pct = pct(long_term / capital_base * HUNDRED)
    cash_pct = HUNDRED - swing_pct - long_term_pct
    if cash_pct < 0:
        # fully committed base; rounding overshoot comes off long-term
        long_term_pct = HUNDRED - swing_pct
        cash_pct = ZERO
    return swing_pct, long_term_pct, cash_pct


def _committed_split(capital_base: Decimal, swing_floor: Decimal,
                     long_term_floor: Decimal) -> Tuple[Decimal, Decimal, Decimal, Decimal]:
    """
    Spread the whole base over the committed buckets in proportion to their floors

    Returns:
        (swing_pct, long_term_pct, swing_amount, long_term_amount); cash is 0
    """
    committed = swing_floor + long_term_floor
    swing_pct = pct(swing_floor / committed * HUNDRED)
    swing = money(capital_base * swing_floor / committed)
    return swing_pct, HUNDRED - swing_pct, swing, capital_base - swing


def compute_allocation(total_equity: Any,
                       current_swing_exposure: Any,
                       current_long_term_value: Any,
                       early_threshold: Any = DEFAULT_EARLY_THRESHOLD,
                       growth_threshold: Any = DEFAULT_GROWTH_THRESHOLD,
                       unrealized_pnl: Any = ZERO) -> Allocation:
    """
    Compute the bucket allocation for a portfolio

    The phase is chosen on total_equity. Nominal amounts are taken on the
    capital base (total_equity - unrealized_pnl) so that after the
    portfolio is updated, cash + swing + long_term + unrealized still equals
    total equity.

    Args:
        total_equity: Current portfolio equity
        current_swing_exposure: Notional committed to open swing positions
        current_long_term_value: Value held in long-term holdings
        early_threshold: Equity breakpoint between early and growth phase
        growth_threshold: Equity breakpoint between growth and mature phase
        unrealized_pnl: Signed open P&L included in total_equity

    Returns:
        Allocation whose amounts always sum to the capital base; `infeasible`
        is set when floors exceed it, and the base is then shared between the
        committed buckets in proportion to their floors
    """
    equity = to_decimal(total_equity, 'total_equity')
    swing_exposure = to_decimal(current_swing_exposure, 'current_swing_exposure')
    long_term_value = to_decimal(current_long_term_value, 'current_long_term_value')
    early = to_decimal(early_threshold, 'early_threshold')
    growth = to_decimal(growth_threshold, 'growth_threshold')
    unrealized = to_decimal(unrealized_pnl, 'unrealized_pnl', allow_negative=True)
    if early > growth:
        raise InvalidAllocation(f"early_threshold {early} must not exceed growth_threshold {growth}")

    phase = select_phase(equity, early, growth)
    target_swing_pct, target_long_term_pct, target_cash_pct = PHASE_SPLITS[phase]

    capital_base = money(max(equity - unrealized, ZERO))
    swing = percent_of(capital_base, target_swing_pct)
    long_term = percent_of(capital_base, target_long_term_pct)

    # never shrink a bucket below what is already committed to it
    swing = max(swing, money(swing_exposure))
    long_term = max(long_term, money(long_term_value))
    cash = capital_base - swing - long_term

    infeasible = None
    if cash < 0:
        # give back what was raised above the floors before touching committed capital
        swing_floor = money(swing_exposure)
        long_term_floor = money(long_term_value)
        shortfall = -cash
        give = min(shortfall, max(swing - swing_floor, ZERO))
        swing -= give
        shortfall -= give
        give = min(shortfall, max(long_term - long_term_floor, ZERO))
        long_term -= give
        shortfall -= give
        cash = ZERO
        if shortfall > 0:
            infeasible = RebalanceInfeasible(capital_base, swing_floor, long_term_floor, shortfall)
            logger.warning(f"Rebalance infeasible for base {capital_base}: {infeasible}")
        else:
            cash = capital_base - swing - long_term

    if infeasible is not None:
        # the buckets still partition the base; the shortfall lives only in the diagnostic
        swing_pct, long_term_pct, swing, long_term = _committed_split(
            capital_base, infeasible.swing_floor, infeasible.long_term_floor)
        cash_pct = ZERO
    else:
        swing_pct, long_term_pct, cash_pct = _split_percentages(capital_base, swing, long_term)
    check_percentages(swing_pct, long_term_pct, cash_pct)

    allocation = Allocation(
        phase=phase,
        capital_base=capital_base,
        swing_pct=swing_pct,
        long_term_pct=long_term_pct,
        cash_pct=cash_pct,
        swing_amount=money(swing),
        long_term_amount=money(long_term),
        cash_amount=money(cash),
        target_swing_pct=target_swing_pct,
        target_long_term_pct=target_long_term_pct,
        target_cash_pct=target_cash_pct,
        infeasible=infeasible,
    )
    logger.debug(f"Computed allocation: {allocation.to_dict()}")
    return allocation
