"""
SwingDesk Trading Service Layer
Transactional operations over portfolios, positions, capital buckets and snapshots
"""

from typing import List, Optional, Callable, TypeVar, Any
from datetime import datetime, date
from decimal import Decimal
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.exc import IntegrityError
import logging

from .trading_models import (
    Portfolio, CapitalBucket, RiskConfig,
    Position, PositionSpec, PositionStatus, BucketKind, TradingMode,
    Order, LedgerMetadata, PortfolioSnapshot
)
from .ledger_service import LedgerService
from .models import utcnow
from core.risk.capital_bucket import (
    Allocation, compute_allocation, DEFAULT_EARLY_THRESHOLD, DEFAULT_GROWTH_THRESHOLD
)
from core.risk.exceptions import ConcurrentModificationError, InvalidAllocation
from core.risk.exits import ExitDecision, ExitPolicy, ExitReason
from core.risk.money import ZERO, HUNDRED, money, pct, to_decimal

logger = logging.getLogger(__name__)

T = TypeVar('T')


class TradingService:
    """
    Service class for managing trading operations
    Each public mutating method is one transaction; position and portfolio rows are
    protected by optimistic version checks and retried on conflict
    """

    def __init__(self, session: Session, retry_limit: int = 3):
        """Initialize trading service with database session"""
        self.session = session
        self.retry_limit = max(1, retry_limit)
        self.ledger = LedgerService(session)

    # ==================== Transactions ====================

    def _run_optimistic(self, description: str, work: Callable[[], T]) -> T:
        """
        Run work() and commit, retrying from a fresh read when a concurrent writer
        bumped a row version underneath us
        """
        for attempt in range(1, self.retry_limit + 1):
            try:
                result = work()
                self.session.commit()
                return result
            except StaleDataError as e:
                self.session.rollback()
                logger.warning(f"Concurrent update on {description} "
                               f"(attempt {attempt}/{self.retry_limit}): {e}")
            except Exception:
                self.session.rollback()
                raise
        raise ConcurrentModificationError(
            f"{description} kept conflicting after {self.retry_limit} attempts")

    def _load_position(self, position_id: int) -> Position:
        position = self.session.get(Position, position_id, populate_existing=True)
        if position is None:
            raise ValueError(f"Position {position_id} not found")
        return position

    def _load_portfolio(self, portfolio_id: int) -> Portfolio:
        portfolio = self.session.get(Portfolio, portfolio_id, populate_existing=True)
        if portfolio is None:
            raise ValueError(f"Portfolio {portfolio_id} not found")
        return portfolio

    # ==================== Portfolio Management ====================

    def create_portfolio(self,
                         name: str,
                         mode: TradingMode = TradingMode.PAPER,
                         initial_capital: Any = ZERO,
                         threshold_3l: Any = DEFAULT_EARLY_THRESHOLD,
                         threshold_5l: Any = DEFAULT_GROWTH_THRESHOLD,
                         rebalance: bool = True,
                         **risk_overrides) -> Portfolio:
        """
        Create a portfolio with its capital bucket and risk configuration

        Args:
            name: Portfolio name, unique per mode
            mode: Paper or live capital pool
            initial_capital: Opening cash, credited to the ledger as a deposit
            threshold_3l: Equity breakpoint between early and growth phase
            threshold_5l: Equity breakpoint between growth and mature phase
            rebalance: Split the opening capital into buckets right away
            **risk_overrides: RiskConfig fields

        Returns:
            Created Portfolio object
        """
        capital = to_decimal(initial_capital, 'initial_capital')
        try:
            portfolio = Portfolio(
                name=name,
                mode=mode,
                initial_capital=capital,
                total_equity=capital,
                available_cash=capital,
                swing_capital=ZERO,
                long_term_capital=ZERO,
                realized_pnl=ZERO,
                unrealized_pnl=ZERO,
                peak_equity=capital,
                max_drawdown=ZERO,
                current_drawdown=ZERO,
            )
            portfolio.bucket = CapitalBucket(
                threshold_3l=to_decimal(threshold_3l, 'threshold_3l'),
                threshold_5l=to_decimal(threshold_5l, 'threshold_5l'),
            )
            portfolio.risk_config = RiskConfig(**risk_overrides)
            self.session.add(portfolio)
            self.session.flush()

            if capital > 0:
                self.ledger.credit(portfolio, capital, 'deposit',
                                   details=LedgerMetadata(note='initial capital'))
            if rebalance:
                self._rebalance(portfolio)

            self.session.commit()
            self.session.refresh(portfolio)

            logger.info(f"Created portfolio: {name} [{mode.value}] (ID: {portfolio.id})")
            return portfolio

        except IntegrityError as e:
            self.session.rollback()
            logger.error(f"Failed to create portfolio {name}: {e}")
            raise ValueError(f"Portfolio '{name}' ({mode.value}) already exists")

    def get_portfolio(self, portfolio_id: int) -> Optional[Portfolio]:
        """Get portfolio by ID"""
        return self.session.query(Portfolio).filter_by(id=portfolio_id).first()

    def get_portfolio_by_name(self, name: str,
                              mode: TradingMode = TradingMode.PAPER) -> Optional[Portfolio]:
        """Get portfolio by name and mode"""
        return self.session.query(Portfolio).filter_by(name=name, mode=mode).first()

    def get_active_portfolios(self) -> List[Portfolio]:
        return self.session.query(Portfolio).filter(Portfolio.is_active.is_(True)).all()

    def deposit(self, portfolio_id: int, amount: Any) -> Portfolio:
        """Add cash to a portfolio"""
        value = to_decimal(amount, 'amount', allow_zero=False)

        def work():
            portfolio = self._load_portfolio(portfolio_id)
            portfolio.available_cash = money(portfolio.available_cash + value)
            self.ledger.credit(portfolio, value, 'deposit')
            portfolio.update_equity()
            return portfolio

        return self._run_optimistic(f"deposit into portfolio {portfolio_id}", work)

    def withdraw(self, portfolio_id: int, amount: Any) -> Portfolio:
        """Take cash out of a portfolio; only uncommitted cash can be withdrawn"""
        value = to_decimal(amount, 'amount', allow_zero=False)

        def work():
            portfolio = self._load_portfolio(portfolio_id)
            if value > portfolio.available_cash:
                raise InvalidAllocation(
                    f"Withdrawal {value} exceeds available cash {portfolio.available_cash}")
            portfolio.available_cash = money(portfolio.available_cash - value)
            self.ledger.debit(portfolio, value, 'withdrawal')
            portfolio.update_equity()
            return portfolio

        return self._run_optimistic(f"withdrawal from portfolio {portfolio_id}", work)

    def refresh_portfolio_equity(self, portfolio_id: int) -> Portfolio:
        """
        Recompute equity and drawdown from the open positions read in the same transaction
        """
        def work():
            portfolio = self._load_portfolio(portfolio_id)
            positions = self._active_positions_query(portfolio_id).populate_existing().all()
            portfolio.update_equity(positions)
            return portfolio

        return self._run_optimistic(f"equity refresh of portfolio {portfolio_id}", work)

    # ==================== Capital Allocation ====================

    def _rebalance(self, portfolio: Portfolio, at: Optional[datetime] = None) -> Allocation:
        positions = self._active_positions_query(portfolio.id).all()
        portfolio.update_equity(positions)

        bucket = portfolio.bucket
        allocation = compute_allocation(
            total_equity=portfolio.total_equity,
            current_swing_exposure=portfolio.exposure(BucketKind.SWING, positions),
            current_long_term_value=portfolio.long_term_market_value(positions),
            early_threshold=bucket.threshold_3l if bucket else DEFAULT_EARLY_THRESHOLD,
            growth_threshold=bucket.threshold_5l if bucket else DEFAULT_GROWTH_THRESHOLD,
            unrealized_pnl=portfolio.unrealized_pnl,
        )
        portfolio.apply_allocation(allocation, at=at, positions=positions)

        if portfolio.total_equity > 0:
            self.ledger.credit(
                portfolio, portfolio.total_equity, 'capital_rebalance',
                details=LedgerMetadata.from_allocation(allocation),
                description=f"Rebalanced to {allocation.phase.value} phase",
            )
        else:
            logger.warning(f"Portfolio {portfolio.id} has no equity; rebalance not recorded in ledger")

        logger.info(f"Rebalanced portfolio {portfolio.id}: phase={allocation.phase.value} "
                    f"swing={allocation.swing_amount} long_term={allocation.long_term_amount} "
                    f"cash={allocation.cash_amount}")
        return allocation

    def rebalance_portfolio(self, portfolio_id: int, at: Optional[datetime] = None) -> Allocation:
        """
        Re-split the portfolio into swing, long-term and cash buckets and record it

        Returns:
            The committed Allocation (check `infeasible` for clamped cash)
        """
        return self._run_optimistic(
            f"rebalance of portfolio {portfolio_id}",
            lambda: self._rebalance(self._load_portfolio(portfolio_id), at=at)
        )

    # ==================== Position Management ====================

    def _active_positions_query(self, portfolio_id: Optional[int] = None):
        query = self.session.query(Position).filter(
            Position.status.in_([PositionStatus.OPEN, PositionStatus.PARTIALLY_CLOSED])
        )
        if portfolio_id is not None:
            query = query.filter(Position.portfolio_id == portfolio_id)
        return query.order_by(Position.id)

    def get_position(self, position_id: int) -> Optional[Position]:
        """Get position by ID"""
        return self.session.query(Position).filter_by(id=position_id).first()

    def get_active_positions(self, portfolio_id: Optional[int] = None) -> List[Position]:
        """Open and partially closed positions"""
        return self._active_positions_query(portfolio_id).all()

    def get_closed_positions(self, portfolio_id: int, limit: Optional[int] = None) -> List[Position]:
        """Closed positions, most recently closed first"""
        query = self.session.query(Position).filter(
            Position.portfolio_id == portfolio_id,
            Position.status == PositionStatus.CLOSED
        ).order_by(Position.closed_at.desc(), Position.id.desc())
        if limit:
            query = query.limit(limit)
        return query.all()

    def open_position(self, portfolio_id: int, spec: PositionSpec,
                      order: Optional[Order] = None,
                      at: Optional[datetime] = None) -> Position:
        """
        Persist a new position and debit its cost basis to the ledger

        Raises:
            InvalidPositionState: if the PositionSpec is invalid (nothing is written)
        """
        def work():
            portfolio = self._load_portfolio(portfolio_id)
            spec.portfolio_id = portfolio.id
            position = Position.open(spec, at=at)
            position.trading_mode = portfolio.mode
            position.portfolio = portfolio
            if order is not None:
                position.order = order
            self.session.add(position)
            self.session.flush()

            self.ledger.debit(
                portfolio, position.exposure, 'position_opened',
                details=LedgerMetadata(quantity=position.quantity, price=position.entry_price),
                position_id=position.id,
                order_id=order.id if order is not None else None,
            )
            return position

        position = self._run_optimistic(f"open of {spec.symbol}", work)
        logger.info(f"Opened {position.side.value} {position.symbol} x{position.quantity} "
                    f"@ {position.entry_price} stop={position.stop_loss} (ID: {position.id})")
        return position

    def _book_exit(self, position: Position, realized: Decimal, exited_qty: int,
                   exit_price: Decimal, reason: Any) -> None:
        """Move realized P&L into the position's bucket and record the proceeds"""
        portfolio = self._load_portfolio(position.portfolio_id)
        portfolio.apply_realized_pnl(position.bucket, realized)

        reason_value = reason.value if isinstance(reason, ExitReason) else str(reason)
        ledger_reason = 'position_closed' if position.is_closed else 'partial_exit'
        proceeds = money(position.entry_price * exited_qty + realized)
        details = LedgerMetadata(exit_reason=reason_value, quantity=exited_qty,
                                 price=exit_price, pnl=realized)
        if proceeds > 0:
            self.ledger.credit(portfolio, proceeds, ledger_reason, details=details,
                               position_id=position.id)
        elif proceeds < 0:
            self.ledger.debit(portfolio, -proceeds, ledger_reason, details=details,
                              position_id=position.id)

        positions = self._active_positions_query(portfolio.id).all()
        portfolio.update_equity(positions)

    def tick_position(self, position_id: int, price: Any, atr: Any = None,
                      policy: Optional[ExitPolicy] = None,
                      at: Optional[datetime] = None) -> ExitDecision:
        """
        Mark one position to market and apply any exit, as a single row-scoped transaction

        Returns:
            The ExitDecision taken on this tick
        """
        def work():
            position = self._load_position(position_id)
            realized_before = position.realized_pnl
            filled_before = position.filled_quantity
            decision = position.tick(price, atr=atr, policy=policy, at=at)
            if decision.is_exit:
                self._book_exit(position, position.realized_pnl - realized_before,
                                position.filled_quantity - filled_before,
                                decision.exit_price, decision.reason)
            return decision

        return self._run_optimistic(f"tick of position {position_id}", work)

    def close_position(self, position_id: int, exit_price: Any,
                       exit_reason: Any = ExitReason.MANUAL,
                       at: Optional[datetime] = None) -> Position:
        """Close the remaining quantity of a position"""
        def work():
            position = self._load_position(position_id)
            qty = position.quantity
            realized = position.close(exit_price, exit_reason, at=at)
            self._book_exit(position, realized, qty, position.exit_price, exit_reason)
            return position

        position = self._run_optimistic(f"close of position {position_id}", work)
        logger.info(f"Closed position {position_id} ({position.symbol}) "
                    f"realized={position.realized_pnl} reason={position.exit_reason}")
        return position

    def partial_close_position(self, position_id: int, exit_qty: int, exit_price: Any,
                               exit_reason: Any = ExitReason.MANUAL,
                               at: Optional[datetime] = None) -> Position:
        """Exit part of a position"""
        def work():
            position = self._load_position(position_id)
            realized = position.partial_close(exit_qty, exit_price, exit_reason, at=at)
            self._book_exit(position, realized, int(exit_qty),
                            to_decimal(exit_price, 'exit_price'), exit_reason)
            return position

        return self._run_optimistic(f"partial close of position {position_id}", work)

    def move_to_breakeven(self, position_id: int) -> Position:
        """Move a position's stop to its entry price"""
        def work():
            position = self._load_position(position_id)
            position.move_to_breakeven()
            return position

        return self._run_optimistic(f"breakeven of position {position_id}", work)

    # ==================== Snapshots ====================

    def save_portfolio_snapshot(self, portfolio_id: int,
                                snapshot_date: Optional[date] = None) -> PortfolioSnapshot:
        """Create or update the daily snapshot for a portfolio"""
        snapshot_date = snapshot_date or utcnow().date()

        def work():
            portfolio = self._load_portfolio(portfolio_id)
            open_positions = self._active_positions_query(portfolio_id).all()
            portfolio.update_equity(open_positions)
            closed = self.session.query(Position).filter(
                Position.portfolio_id == portfolio_id,
                Position.status == PositionStatus.CLOSED
            ).all()

            snapshot = self.session.query(PortfolioSnapshot).filter_by(
                portfolio_id=portfolio_id, snapshot_date=snapshot_date).first()
            if snapshot is None:
                previous = self.session.query(PortfolioSnapshot).filter(
                    PortfolioSnapshot.portfolio_id == portfolio_id,
                    PortfolioSnapshot.snapshot_date < snapshot_date
                ).order_by(PortfolioSnapshot.snapshot_date.desc()).first()
                snapshot = PortfolioSnapshot(
                    portfolio_id=portfolio_id,
                    snapshot_date=snapshot_date,
                    opening_capital=previous.closing_capital if previous else portfolio.initial_capital,
                )
                self.session.add(snapshot)

            swing_exposure = portfolio.exposure(BucketKind.SWING, open_positions)
            winners = [p for p in closed if p.realized_pnl > 0]
            day_closed = [p for p in closed if p.closed_at and p.closed_at.date() == snapshot_date]

            snapshot.closing_capital = portfolio.total_equity
            snapshot.total_equity = portfolio.total_equity
            snapshot.swing_exposure = swing_exposure
            snapshot.realized_pnl = portfolio.realized_pnl
            snapshot.unrealized_pnl = portfolio.unrealized_pnl
            snapshot.day_realized_pnl = money(sum((p.realized_pnl for p in day_closed), ZERO))
            snapshot.peak_equity = portfolio.peak_equity
            snapshot.drawdown_pct = portfolio.current_drawdown
            snapshot.max_drawdown = portfolio.max_drawdown
            snapshot.capital_utilization_pct = (
                pct(swing_exposure / portfolio.swing_capital * HUNDRED)
                if portfolio.swing_capital > 0 else ZERO
            )
            snapshot.win_rate = pct(Decimal(len(winners)) / len(closed) * HUNDRED) if closed else ZERO
            snapshot.open_positions_count = len(open_positions)
            snapshot.closed_positions_count = len(closed)
            return snapshot

        snapshot = self._run_optimistic(f"snapshot of portfolio {portfolio_id}", work)
        logger.info(f"Saved snapshot for portfolio {portfolio_id} on {snapshot_date}")
        return snapshot
