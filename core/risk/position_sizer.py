"""
Risk-based position sizing
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from .exceptions import InvalidStopLoss
from .money import ZERO, HUNDRED, floor_int, money, optional_decimal, to_decimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SizingResult:
    """Quantity plus the figures that produced it"""
    quantity: int
    risk_per_share: Decimal
    risk_amount: Decimal
    risk_quantity: int
    binding_cap: Optional[str] = None

    @property
    def effective_risk(self) -> Decimal:
        return money(self.risk_per_share * self.quantity)


class PositionSizer:
    """
    Sizes entries so a stop-out loses at most risk_per_trade_pct of the risk capital

    The quantity is additionally capped by the per-position exposure limit and,
    when given, by the capital still available in the bucket.
    """

    def calculate(self,
                  total_risk_capital: Any,
                  risk_per_trade_pct: Any,
                  entry_price: Any,
                  stop_loss: Any,
                  max_position_exposure_amount: Any = None,
                  available_capital: Any = None) -> SizingResult:
        capital = to_decimal(total_risk_capital, 'total_risk_capital')
        risk_pct = to_decimal(risk_per_trade_pct, 'risk_per_trade_pct')
        entry = to_decimal(entry_price, 'entry_price', allow_zero=False)
        stop = to_decimal(stop_loss, 'stop_loss')
        max_exposure = optional_decimal(max_position_exposure_amount, 'max_position_exposure_amount')
        available = optional_decimal(available_capital, 'available_capital')

        risk_per_share = abs(entry - stop)
        if risk_per_share == ZERO:
            raise InvalidStopLoss(f"Stop loss {stop} equals entry price {entry}: zero risk per share")

        risk_amount = capital * risk_pct / HUNDRED
        risk_quantity = floor_int(risk_amount / risk_per_share)
        quantity = risk_quantity
        binding_cap = None

        if max_exposure is not None:
            exposure_quantity = floor_int(max_exposure / entry)
            if exposure_quantity < quantity:
                quantity = exposure_quantity
                binding_cap = 'max_position_exposure'

        if available is not None:
            available_quantity = floor_int(available / entry)
            if available_quantity < quantity:
                quantity = available_quantity
                binding_cap = 'available_capital'

        quantity = max(quantity, 0)
        if binding_cap:
            logger.debug(f"Position size capped by {binding_cap}: {risk_quantity} -> {quantity}")

        return SizingResult(
            quantity=quantity,
            risk_per_share=risk_per_share,
            risk_amount=money(risk_amount),
            risk_quantity=risk_quantity,
            binding_cap=binding_cap,
        )

    def size(self, *args, **kwargs) -> int:
        """Return only the quantity; see calculate() for the arguments"""
        return self.calculate(*args, **kwargs).quantity


def size(total_risk_capital: Any,
         risk_per_trade_pct: Any,
         entry_price: Any,
         stop_loss: Any,
         max_position_exposure_amount: Any = None,
         available_capital: Any = None) -> int:
    """Module-level convenience wrapper around PositionSizer.size"""
    return PositionSizer().size(total_risk_capital, risk_per_trade_pct, entry_price, stop_loss,
                                max_position_exposure_amount, available_capital)
