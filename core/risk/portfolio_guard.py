"""
Portfolio-level trading limits: daily loss, open position count, drawdown
and losing streaks
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from core.database.models import utcnow
from core.database.trading_models import Portfolio, Position, PositionStatus, RiskConfig
from .money import ZERO, money

logger = logging.getLogger(__name__)


@dataclass
class PortfolioRiskReport:
    """Result of the portfolio limit checks; `checks` maps each limit to pass/fail"""
    allowed: bool
    checks: Dict[str, bool] = field(default_factory=dict)
    reasons: List[str] = field(default_factory=list)
    daily_realized_pnl: Decimal = ZERO

    def to_dict(self) -> Dict[str, Any]:
        return {
            'allowed': self.allowed,
            'checks': dict(self.checks),
            'reasons': list(self.reasons),
            'daily_realized_pnl': str(self.daily_realized_pnl),
        }


class PortfolioRiskManager:
    """Decides whether a portfolio may take new trades at all"""

    def __init__(self, session: Session):
        self.session = session

    def daily_realized_pnl(self, portfolio_id: int, now: Optional[datetime] = None) -> Decimal:
        """Realized P&L of positions closed on the current UTC day"""
        now = now or utcnow()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        closed_today = self.session.query(Position).filter(
            Position.portfolio_id == portfolio_id,
            Position.status == PositionStatus.CLOSED,
            Position.closed_at >= day_start,
            Position.closed_at <= now
        ).all()
        return money(sum((p.realized_pnl for p in closed_today), ZERO))

    def consecutive_losses(self, portfolio_id: int, limit: int) -> int:
        """Length of the losing streak among the most recent closed positions (up to limit)"""
        recent = self.session.query(Position).filter(
            Position.portfolio_id == portfolio_id,
            Position.status == PositionStatus.CLOSED
        ).order_by(Position.closed_at.desc(), Position.id.desc()).limit(limit).all()
        streak = 0
        for position in recent:
            if position.realized_pnl >= 0:
                break
            streak += 1
        return streak

    def evaluate(self, portfolio_id: int, now: Optional[datetime] = None) -> PortfolioRiskReport:
        portfolio = self.session.get(Portfolio, portfolio_id)
        if portfolio is None:
            raise ValueError(f"Portfolio {portfolio_id} not found")
        config = portfolio.risk_config or RiskConfig()

        checks: Dict[str, bool] = {}
        reasons: List[str] = []

        daily_pnl = self.daily_realized_pnl(portfolio_id, now)
        daily_limit = config.max_daily_loss_amount(portfolio.total_equity)
        checks['daily_loss'] = not (daily_pnl < 0 and -daily_pnl >= daily_limit)
        if not checks['daily_loss']:
            reasons.append(f"Daily loss {-daily_pnl} reached limit {daily_limit}")

        open_count = self.session.query(Position).filter(
            Position.portfolio_id == portfolio_id,
            Position.status.in_([PositionStatus.OPEN, PositionStatus.PARTIALLY_CLOSED])
        ).count()
        checks['max_positions'] = open_count < config.max_open_positions
        if not checks['max_positions']:
            reasons.append(f"{open_count} open positions (max {config.max_open_positions})")

        checks['drawdown'] = portfolio.current_drawdown < config.max_portfolio_drawdown_pct
        if not checks['drawdown']:
            reasons.append(f"Drawdown {portfolio.current_drawdown}% reached limit "
                           f"{config.max_portfolio_drawdown_pct}%")

        streak_limit = config.max_consecutive_losses
        streak = self.consecutive_losses(portfolio_id, streak_limit)
        checks['consecutive_losses'] = streak < streak_limit
        if not checks['consecutive_losses']:
            reasons.append(f"{streak} consecutive losing trades")

        report = PortfolioRiskReport(all(checks.values()), checks, reasons, daily_pnl)
        if not report.allowed:
            logger.warning(f"Portfolio {portfolio_id} blocked: {'; '.join(reasons)}")
        return report
