"""
SwingDesk Trading Models
SQLAlchemy ORM models for portfolios, capital buckets, risk configuration,
positions, orders, ledger entries and daily portfolio snapshots
"""

from sqlalchemy import (
    Column, Integer, String, DateTime, Date, Boolean, Text, JSON, Enum,
    ForeignKey, Index, UniqueConstraint, CheckConstraint, event
)
from sqlalchemy.orm import relationship, validates, reconstructor, object_session
from dataclasses import dataclass, fields
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List
import enum
import logging

from .models import Base, Instrument, Money, Price, Percent, utcnow
from core.risk.capital_bucket import (
    Allocation, Phase, check_percentages,
    DEFAULT_EARLY_THRESHOLD, DEFAULT_GROWTH_THRESHOLD
)
from core.risk.exceptions import InvalidPositionState, InvalidAllocation, LedgerImmutableError
from core.risk.exits import ExitAction, ExitDecision, ExitPolicy, ExitReason
from core.risk.money import (
    ZERO, HUNDRED, money, pct, price, floor_int, optional_decimal, to_decimal
)

logger = logging.getLogger(__name__)


# Enums for status fields
class TradeSide(enum.Enum):
    """Trade side (direction)"""
    LONG = "long"
    SHORT = "short"


class TradingMode(enum.Enum):
    """Capital pool the record belongs to"""
    PAPER = "paper"
    LIVE = "live"


class PositionStatus(enum.Enum):
    """Position lifecycle status"""
    OPEN = "open"
    PARTIALLY_CLOSED = "partially_closed"
    CLOSED = "closed"


class BucketKind(enum.Enum):
    """Capital bucket a position draws on"""
    SWING = "swing"
    LONG_TERM = "long_term"


class OrderType(enum.Enum):
    """Order types"""
    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"
    STOP_LIMIT = "stop_limit"


class OrderStatus(enum.Enum):
    """Order lifecycle status"""
    PENDING = "pending"
    PLACED = "placed"
    EXECUTED = "executed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    FAILED = "failed"


# Statuses counted as failures by the circuit breaker
FAILED_ORDER_STATUSES = (OrderStatus.FAILED, OrderStatus.REJECTED)

# Statuses whose notional still claims bucket capacity until a position backs them
IN_FLIGHT_ORDER_STATUSES = (OrderStatus.PENDING, OrderStatus.PLACED)


class LedgerEntryType(enum.Enum):
    """Direction of a capital movement"""
    CREDIT = "credit"
    DEBIT = "debit"


# ==================== Portfolio ====================

class Portfolio(Base):
    """
    Portfolio table: one capital pool per (name, mode)
    Invariant after update_equity(): total_equity = available_cash + swing_capital
    + long_term_capital + unrealized_pnl
    """
    __tablename__ = 'portfolios'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False, comment="Portfolio name")
    mode = Column(Enum(TradingMode), nullable=False, default=TradingMode.PAPER)

    # Capital
    initial_capital = Column(Money, nullable=False, default=ZERO)
    total_equity = Column(Money, nullable=False, default=ZERO)
    available_cash = Column(Money, nullable=False, default=ZERO)
    swing_capital = Column(Money, nullable=False, default=ZERO)
    long_term_capital = Column(Money, nullable=False, default=ZERO)

    # P&L and drawdown
    realized_pnl = Column(Money, nullable=False, default=ZERO)
    unrealized_pnl = Column(Money, nullable=False, default=ZERO)
    peak_equity = Column(Money, nullable=False, default=ZERO,
                         comment="Highest equity ever observed (never reset)")
    max_drawdown = Column(Percent, nullable=False, default=ZERO,
                          comment="Worst peak-to-trough drawdown percentage")
    current_drawdown = Column(Percent, nullable=False, default=ZERO)

    is_active = Column(Boolean, nullable=False, default=True)
    last_rebalanced_at = Column(DateTime)
    version_id = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    bucket = relationship("CapitalBucket", back_populates="portfolio", uselist=False,
                          cascade="all, delete-orphan")
    risk_config = relationship("RiskConfig", back_populates="portfolio", uselist=False,
                               cascade="all, delete-orphan")
    positions = relationship("Position", back_populates="portfolio")
    orders = relationship("Order", back_populates="portfolio")
    ledger_entries = relationship("LedgerEntry", back_populates="portfolio",
                                  order_by="LedgerEntry.id")
    snapshots = relationship("PortfolioSnapshot", back_populates="portfolio",
                             cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint('name', 'mode', name='uq_portfolio_name_mode'),
        CheckConstraint('total_equity >= 0', name='ck_total_equity_non_negative'),
        CheckConstraint('available_cash >= 0', name='ck_available_cash_non_negative'),
        CheckConstraint('swing_capital >= 0', name='ck_swing_capital_non_negative'),
        CheckConstraint('long_term_capital >= 0', name='ck_long_term_capital_non_negative'),
        CheckConstraint('peak_equity >= 0', name='ck_peak_equity_non_negative'),
        CheckConstraint('max_drawdown >= 0', name='ck_max_drawdown_non_negative'),
    )

    __mapper_args__ = {'version_id_col': version_id}

    def __repr__(self):
        return f"<Portfolio(name='{self.name}', mode='{self.mode}', equity={self.total_equity})>"

    @property
    def active_positions(self) -> List['Position']:
        return [p for p in self.positions if p.is_active]

    def exposure(self, bucket: 'BucketKind' = None,
                 positions: Optional[List['Position']] = None) -> Decimal:
        """Cost basis of open positions in one bucket (swing by default)"""
        bucket = bucket or BucketKind.SWING
        open_positions = positions if positions is not None else self.active_positions
        return money(sum((p.exposure for p in open_positions
                          if p.is_active and p.bucket == bucket), ZERO))

    @property
    def total_swing_exposure(self) -> Decimal:
        return self.exposure(BucketKind.SWING)

    @property
    def long_term_value(self) -> Decimal:
        return self.long_term_market_value()

    def long_term_market_value(self, positions: Optional[List['Position']] = None) -> Decimal:
        """Market value of open long-term holdings"""
        open_positions = positions if positions is not None else self.active_positions
        return money(sum((p.market_value for p in open_positions
                          if p.is_active and p.bucket == BucketKind.LONG_TERM), ZERO))

    def bucket_capital(self, bucket: 'BucketKind') -> Decimal:
        if bucket == BucketKind.LONG_TERM:
            return self.long_term_capital
        return self.swing_capital

    def available_capital(self, bucket: 'BucketKind' = None) -> Decimal:
        """Bucket capital not yet committed to open positions"""
        bucket = bucket or BucketKind.SWING
        return max(money(self.bucket_capital(bucket) - self.exposure(bucket)), ZERO)

    @property
    def available_swing_capital(self) -> Decimal:
        return self.available_capital(BucketKind.SWING)

    @property
    def available_long_term_capital(self) -> Decimal:
        return self.available_capital(BucketKind.LONG_TERM)

    def update_equity(self, positions: Optional[List['Position']] = None) -> Decimal:
        """
        Recompute unrealized P&L and total equity from the given (or loaded) open positions,
        then roll the drawdown forward

        Returns:
            New total equity
        """
        open_positions = positions if positions is not None else self.active_positions
        self.unrealized_pnl = money(sum((p.unrealized_pnl or ZERO for p in open_positions
                                         if p.is_active), ZERO))
        equity = (self.available_cash + self.swing_capital + self.long_term_capital
                  + self.unrealized_pnl)
        self.total_equity = money(max(equity, ZERO))
        self.update_drawdown()
        return self.total_equity

    def update_drawdown(self) -> Decimal:
        """Lifetime rolling drawdown: peak_equity and max_drawdown never decrease"""
        equity = self.total_equity or ZERO
        self.peak_equity = max(self.peak_equity or ZERO, equity)
        if self.peak_equity > 0:
            drawdown = pct((self.peak_equity - equity) / self.peak_equity * HUNDRED)
        else:
            drawdown = ZERO
        self.current_drawdown = drawdown
        self.max_drawdown = max(self.max_drawdown or ZERO, drawdown)
        return self.max_drawdown

    def apply_realized_pnl(self, bucket: 'BucketKind', amount: Decimal) -> None:
        """
        Book realized P&L into the bucket the position drew on
        A loss larger than the bucket is taken from cash; anything beyond that is floored at 0
        """
        amount = money(amount)
        self.realized_pnl = money((self.realized_pnl or ZERO) + amount)
        attr = 'long_term_capital' if bucket == BucketKind.LONG_TERM else 'swing_capital'
        remaining = getattr(self, attr) + amount
        if remaining < 0:
            setattr(self, attr, ZERO)
            cash = self.available_cash + remaining
            if cash < 0:
                logger.error(f"Portfolio {self.id}: loss of {amount} exceeds bucket and cash; "
                             f"flooring cash at 0 (uncovered {-cash})")
                cash = ZERO
            self.available_cash = money(cash)
        else:
            setattr(self, attr, money(remaining))

    def apply_allocation(self, allocation: Allocation, at: Optional[datetime] = None,
                         positions: Optional[List['Position']] = None) -> None:
        """Write rebalanced bucket amounts onto the portfolio and its CapitalBucket"""
        self.swing_capital = allocation.swing_amount
        self.long_term_capital = allocation.long_term_amount
        self.available_cash = allocation.cash_amount
        self.last_rebalanced_at = at or utcnow()
        if self.bucket is None:
            self.bucket = CapitalBucket()
        self.bucket.set_allocation(allocation.swing_pct, allocation.long_term_pct,
                                   allocation.cash_pct, phase=allocation.phase)
        self.bucket.last_rebalanced_at = self.last_rebalanced_at
        self.update_equity(positions)


# ==================== Capital Bucket ====================

class CapitalBucket(Base):
    """
    Capital bucket split (1:1 with Portfolio)
    swing_pct + long_term_pct + cash_pct = 100 (+-0.01), enforced on every flush
    """
    __tablename__ = 'portfolio_capital_buckets'

    id = Column(Integer, primary_key=True, autoincrement=True)
    portfolio_id = Column(Integer, ForeignKey('portfolios.id', ondelete='CASCADE'),
                          nullable=False, unique=True)

    swing_pct = Column(Percent, nullable=False, default=Decimal('80'))
    long_term_pct = Column(Percent, nullable=False, default=Decimal('0'))
    cash_pct = Column(Percent, nullable=False, default=Decimal('20'))
    phase = Column(Enum(Phase), nullable=False, default=Phase.EARLY)

    threshold_3l = Column(Money, nullable=False, default=DEFAULT_EARLY_THRESHOLD,
                          comment="Equity breakpoint between early and growth phase")
    threshold_5l = Column(Money, nullable=False, default=DEFAULT_GROWTH_THRESHOLD,
                          comment="Equity breakpoint between growth and mature phase")

    last_rebalanced_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    portfolio = relationship("Portfolio", back_populates="bucket")

    DEFAULTS = {
        'swing_pct': Decimal('80'),
        'long_term_pct': Decimal('0'),
        'cash_pct': Decimal('20'),
        'phase': Phase.EARLY,
        'threshold_3l': DEFAULT_EARLY_THRESHOLD,
        'threshold_5l': DEFAULT_GROWTH_THRESHOLD,
    }

    __table_args__ = (
        CheckConstraint('swing_pct >= 0 AND swing_pct <= 100', name='ck_swing_pct_range'),
        CheckConstraint('long_term_pct >= 0 AND long_term_pct <= 100', name='ck_long_term_pct_range'),
        CheckConstraint('cash_pct >= 0 AND cash_pct <= 100', name='ck_cash_pct_range'),
        CheckConstraint('threshold_3l <= threshold_5l', name='ck_thresholds_ordered'),
    )

    def __init__(self, **kwargs):
        for key, value in self.DEFAULTS.items():
            kwargs.setdefault(key, value)
        super().__init__(**kwargs)

    def __repr__(self):
        return (f"<CapitalBucket(portfolio_id={self.portfolio_id}, swing={self.swing_pct}, "
                f"long_term={self.long_term_pct}, cash={self.cash_pct})>")

    @validates('swing_pct', 'long_term_pct', 'cash_pct')
    def validate_pct(self, key, value):
        return _bucket_pct(key, value)

    def set_allocation(self, swing_pct: Any, long_term_pct: Any, cash_pct: Any,
                       phase: Optional[Phase] = None) -> None:
        """Replace the split atomically; the three shares must sum to 100"""
        swing = _bucket_pct('swing_pct', swing_pct)
        long_term = _bucket_pct('long_term_pct', long_term_pct)
        cash = _bucket_pct('cash_pct', cash_pct)
        check_percentages(swing, long_term, cash)
        self.swing_pct = swing
        self.long_term_pct = long_term
        self.cash_pct = cash
        if phase is not None:
            self.phase = phase


def _bucket_pct(key: str, value: Any) -> Decimal:
    try:
        number = Decimal(str(value))
    except ArithmeticError:
        raise InvalidAllocation(f"{key} is not a number: {value!r}")
    if not number.is_finite() or number < 0 or number > HUNDRED:
        raise InvalidAllocation(f"{key} must be within [0, 100], got {value}")
    return number


@event.listens_for(CapitalBucket, 'before_insert')
@event.listens_for(CapitalBucket, 'before_update')
def _check_bucket_sum(mapper, connection, target):
    check_percentages(target.swing_pct, target.long_term_pct, target.cash_pct)


# ==================== Risk Config ====================

class RiskConfig(Base):
    """Per-portfolio swing risk limits (1:1 with Portfolio)"""
    __tablename__ = 'swing_risk_configs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    portfolio_id = Column(Integer, ForeignKey('portfolios.id', ondelete='CASCADE'),
                          nullable=False, unique=True)

    risk_per_trade_pct = Column(Percent, nullable=False, default=Decimal('1.0'))
    max_position_exposure_pct = Column(Percent, nullable=False, default=Decimal('15.0'))
    max_open_positions = Column(Integer, nullable=False, default=5)
    max_daily_risk_pct = Column(Percent, nullable=False, default=Decimal('2.0'))
    max_portfolio_drawdown_pct = Column(Percent, nullable=False, default=Decimal('10.0'))
    max_consecutive_losses = Column(Integer, nullable=False, default=2)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    portfolio = relationship("Portfolio", back_populates="risk_config")

    DEFAULTS = {
        'risk_per_trade_pct': Decimal('1.0'),
        'max_position_exposure_pct': Decimal('15.0'),
        'max_open_positions': 5,
        'max_daily_risk_pct': Decimal('2.0'),
        'max_portfolio_drawdown_pct': Decimal('10.0'),
        'max_consecutive_losses': 2,
    }

    __table_args__ = (
        CheckConstraint('risk_per_trade_pct > 0 AND risk_per_trade_pct <= 100',
                        name='ck_risk_per_trade_range'),
        CheckConstraint('max_position_exposure_pct > 0 AND max_position_exposure_pct <= 100',
                        name='ck_max_exposure_range'),
        CheckConstraint('max_open_positions > 0', name='ck_max_open_positions_positive'),
    )

    def __init__(self, **kwargs):
        for key, value in self.DEFAULTS.items():
            kwargs.setdefault(key, value)
        super().__init__(**kwargs)

    @validates('risk_per_trade_pct', 'max_position_exposure_pct', 'max_daily_risk_pct',
               'max_portfolio_drawdown_pct')
    def validate_pct(self, key, value):
        value = to_decimal(value, key, allow_zero=False)
        if value > HUNDRED:
            raise ValueError(f"{key} must not exceed 100, got {value}")
        return value

    def __repr__(self):
        return (f"<RiskConfig(portfolio_id={self.portfolio_id}, "
                f"risk_per_trade={self.risk_per_trade_pct}%)>")

    def risk_amount(self, equity: Decimal) -> Decimal:
        return money(equity * self.risk_per_trade_pct / HUNDRED)

    def max_position_exposure_amount(self, equity: Decimal) -> Decimal:
        return money(equity * self.max_position_exposure_pct / HUNDRED)

    def max_daily_loss_amount(self, equity: Decimal) -> Decimal:
        return money(equity * self.max_daily_risk_pct / HUNDRED)


# ==================== Position ====================

@dataclass
class PositionSpec:
    """Inputs for opening a position"""
    symbol: str
    side: TradeSide
    entry_price: Any
    quantity: int
    stop_loss: Any
    take_profit: Any = None
    tp1: Any = None
    tp2: Any = None
    trailing_stop_distance: Any = None
    trailing_stop_pct: Any = None
    atr: Any = None
    atr_trailing_multiplier: Any = None
    bucket: BucketKind = BucketKind.SWING
    trading_mode: TradingMode = TradingMode.PAPER
    portfolio_id: Optional[int] = None
    instrument_id: Optional[int] = None
    order_id: Optional[int] = None
    max_holding_days: Optional[int] = None


class Position(Base):
    """
    Position table and exit state machine

    status: open -> {open, partially_closed} -> closed. Protective stops only ever
    move in the risk-reducing direction. Once closed, unrealized fields are 0 and
    realized fields are frozen.
    """
    __tablename__ = 'positions'

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Foreign keys
    portfolio_id = Column(Integer, ForeignKey('portfolios.id', ondelete='RESTRICT'),
                          nullable=False, index=True)
    instrument_id = Column(Integer, ForeignKey('instruments.id', ondelete='SET NULL'),
                           index=True)
    order_id = Column(Integer, ForeignKey('orders.id', ondelete='SET NULL'),
                      comment="Entry order")

    # Identity
    symbol = Column(String(50), nullable=False, index=True)
    side = Column(Enum(TradeSide), nullable=False)
    bucket = Column(Enum(BucketKind), nullable=False, default=BucketKind.SWING)
    trading_mode = Column(Enum(TradingMode), nullable=False, default=TradingMode.PAPER)
    status = Column(Enum(PositionStatus), nullable=False, default=PositionStatus.OPEN, index=True)

    # Pricing and quantity
    entry_price = Column(Price, nullable=False)
    current_price = Column(Price)
    exit_price = Column(Price)
    initial_quantity = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False, comment="Open quantity, 0 once closed")
    filled_quantity = Column(Integer, nullable=False, default=0,
                             comment="Quantity exited so far")

    # Protective levels
    stop_loss = Column(Price, nullable=False)
    initial_stop_loss = Column(Price, comment="Stop before the breakeven move")
    breakeven_stop = Column(Price)
    take_profit = Column(Price)
    tp1 = Column(Price)
    tp2 = Column(Price)
    tp1_hit = Column(Boolean, nullable=False, default=False)

    # Trailing state
    highest_price = Column(Price)
    lowest_price = Column(Price)
    trailing_stop_distance = Column(Price)
    trailing_stop_pct = Column(Percent)
    atr = Column(Price)
    atr_trailing_multiplier = Column(Percent)

    # P&L
    realized_pnl = Column(Money, nullable=False, default=ZERO)
    realized_pnl_pct = Column(Percent, nullable=False, default=ZERO)
    unrealized_pnl = Column(Money, nullable=False, default=ZERO)
    unrealized_pnl_pct = Column(Percent, nullable=False, default=ZERO)

    # Lifecycle
    exit_reason = Column(String(30))
    max_holding_days = Column(Integer)
    opened_at = Column(DateTime, default=utcnow, nullable=False)
    closed_at = Column(DateTime)
    last_price_update = Column(DateTime)
    version_id = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    portfolio = relationship("Portfolio", back_populates="positions")
    instrument = relationship(Instrument)
    order = relationship("Order", back_populates="position", foreign_keys=[order_id])
    ledger_entries = relationship("LedgerEntry", back_populates="position")

    __table_args__ = (
        CheckConstraint('entry_price > 0', name='ck_entry_price_positive'),
        CheckConstraint('initial_quantity > 0', name='ck_initial_quantity_positive'),
        CheckConstraint("quantity > 0 OR status = 'CLOSED'", name='ck_quantity_positive_while_open'),
        CheckConstraint('filled_quantity >= 0', name='ck_filled_quantity_non_negative'),
        Index('idx_position_portfolio_status', 'portfolio_id', 'status'),
        Index('idx_position_symbol_status', 'symbol', 'status'),
    )

    __mapper_args__ = {'version_id_col': version_id}

    def __repr__(self):
        return (f"<Position(symbol='{self.symbol}', side='{self.side}', status='{self.status}', "
                f"qty={self.quantity}, stop={self.stop_loss})>")

    # ---------- construction ----------

    @classmethod
    def open(cls, spec: PositionSpec, at: Optional[datetime] = None) -> 'Position':
        """
        Build a new, unsaved open position

        Raises:
            InvalidPositionState: non-positive price or quantity, NaN inputs, or
                protective levels on the wrong side of the entry
        """
        if not isinstance(spec.side, TradeSide):
            raise InvalidPositionState(f"side must be a TradeSide, got {spec.side!r}")
        entry = to_decimal(spec.entry_price, 'entry_price', allow_zero=False)
        quantity = _to_quantity(spec.quantity)
        stop = to_decimal(spec.stop_loss, 'stop_loss', allow_zero=False)
        direction = 1 if spec.side == TradeSide.LONG else -1

        if (stop - entry) * direction >= 0:
            raise InvalidPositionState(
                f"stop_loss {stop} must be on the losing side of entry {entry} for a {spec.side.value} position")

        targets = {}
        for name in ('take_profit', 'tp1', 'tp2'):
            level = optional_decimal(getattr(spec, name), name)
            if level is not None and (level - entry) * direction <= 0:
                raise InvalidPositionState(
                    f"{name} {level} must be on the winning side of entry {entry}")
            targets[name] = level
        if targets['tp1'] is not None and targets['tp2'] is not None \
                and (targets['tp2'] - targets['tp1']) * direction < 0:
            raise InvalidPositionState("tp2 must not be closer to entry than tp1")

        if spec.max_holding_days is not None and spec.max_holding_days <= 0:
            raise InvalidPositionState("max_holding_days must be positive")

        opened_at = at or utcnow()
        return cls(
            portfolio_id=spec.portfolio_id,
            instrument_id=spec.instrument_id,
            order_id=spec.order_id,
            symbol=spec.symbol,
            side=spec.side,
            bucket=spec.bucket,
            trading_mode=spec.trading_mode,
            status=PositionStatus.OPEN,
            entry_price=entry,
            current_price=entry,
            highest_price=entry,
            lowest_price=entry,
            initial_quantity=quantity,
            quantity=quantity,
            filled_quantity=0,
            stop_loss=stop,
            take_profit=targets['take_profit'],
            tp1=targets['tp1'],
            tp2=targets['tp2'],
            tp1_hit=False,
            trailing_stop_distance=optional_decimal(spec.trailing_stop_distance, 'trailing_stop_distance'),
            trailing_stop_pct=optional_decimal(spec.trailing_stop_pct, 'trailing_stop_pct'),
            atr=optional_decimal(spec.atr, 'atr'),
            atr_trailing_multiplier=optional_decimal(spec.atr_trailing_multiplier, 'atr_trailing_multiplier'),
            realized_pnl=ZERO,
            realized_pnl_pct=ZERO,
            unrealized_pnl=ZERO,
            unrealized_pnl_pct=ZERO,
            max_holding_days=spec.max_holding_days,
            opened_at=opened_at,
            last_price_update=opened_at,
        )

    # ---------- invariants ----------

    @validates('stop_loss')
    def validate_stop_loss(self, key, value):
        """A protective stop may only move in the risk-reducing direction"""
        new_stop = to_decimal(value, 'stop_loss', allow_zero=False)
        old_stop = self.stop_loss
        if old_stop is None or self.side is None:
            return new_stop
        if self.status == PositionStatus.CLOSED and new_stop != old_stop:
            raise InvalidPositionState("Cannot move the stop of a closed position")
        if self._direction * (new_stop - old_stop) < 0:
            raise InvalidPositionState(
                f"Refusing to loosen stop on {self.side.value} {self.symbol}: {old_stop} -> {new_stop}")
        return new_stop

    # ---------- derived values ----------

    @property
    def _direction(self) -> int:
        return 1 if self.side == TradeSide.LONG else -1

    @property
    def is_active(self) -> bool:
        return self.status in (PositionStatus.OPEN, PositionStatus.PARTIALLY_CLOSED)

    @property
    def is_closed(self) -> bool:
        return self.status == PositionStatus.CLOSED

    @property
    def exposure(self) -> Decimal:
        """Cost basis of the open quantity"""
        return money(self.entry_price * self.quantity)

    @property
    def market_value(self) -> Decimal:
        return money((self.current_price or self.entry_price) * self.quantity)

    def days_held(self, at: Optional[datetime] = None) -> int:
        end = self.closed_at or at or utcnow()
        return (end - self.opened_at).days

    def pnl_per_share(self, at_price: Decimal) -> Decimal:
        return (at_price - self.entry_price) * self._direction

    def _recompute_unrealized(self) -> None:
        if self.is_closed or not self.quantity:
            self.unrealized_pnl = ZERO
            self.unrealized_pnl_pct = ZERO
            return
        pnl = self.pnl_per_share(self.current_price) * self.quantity
        self.unrealized_pnl = money(pnl)
        self.unrealized_pnl_pct = pct(pnl / (self.entry_price * self.quantity) * HUNDRED)

    def _stop_breached(self, level: Optional[Decimal]) -> bool:
        if level is None:
            return False
        return (level - self.current_price) * self._direction >= 0

    def _target_reached(self, level: Optional[Decimal]) -> bool:
        if level is None:
            return False
        return (self.current_price - level) * self._direction >= 0

    def _require_tradeable(self) -> None:
        if self.entry_price is None or self.entry_price <= 0:
            raise InvalidPositionState(f"entry_price must be positive, got {self.entry_price}")
        if self.is_closed:
            raise InvalidPositionState(f"Position {self.id} ({self.symbol}) is already closed")
        if self.quantity is None or self.quantity <= 0:
            raise InvalidPositionState(f"quantity must be positive while open, got {self.quantity}")

    # ---------- state machine ----------

    def update_price(self, new_price: Any, atr: Any = None, at: Optional[datetime] = None) -> None:
        """
        Mark the position to market and roll the price extremes

        Closed positions ignore price updates. Never changes status.
        """
        if self.is_closed:
            logger.debug(f"Ignoring price update for closed position {self.id} ({self.symbol})")
            return
        current = to_decimal(new_price, 'price', allow_zero=False)
        new_atr = optional_decimal(atr, 'atr')
        self._require_tradeable()

        self.current_price = current
        if new_atr is not None:
            self.atr = new_atr
        self.highest_price = max(self.highest_price or current, current)
        self.lowest_price = min(self.lowest_price or current, current)
        self.last_price_update = at or utcnow()
        self._recompute_unrealized()

    def trailing_candidate(self) -> Optional[Decimal]:
        """Trailing stop implied by the running extreme; ATR takes precedence over pct and distance"""
        if self._direction > 0:
            extreme = self.highest_price or self.current_price
        else:
            extreme = self.lowest_price or self.current_price

        if self.atr is not None and self.atr_trailing_multiplier is not None:
            offset = self.atr * self.atr_trailing_multiplier
            candidate = extreme - offset * self._direction
        elif self.trailing_stop_pct is not None:
            candidate = extreme * (1 - self._direction * self.trailing_stop_pct / HUNDRED)
        elif self.trailing_stop_distance is not None:
            candidate = extreme - self.trailing_stop_distance * self._direction
        else:
            return None

        candidate = price(candidate)
        return candidate if candidate > 0 else None

    def tighten_stop(self, candidate: Optional[Decimal]) -> bool:
        """Adopt candidate as the stop only if it reduces risk; returns whether it moved"""
        if candidate is None or self.is_closed:
            return False
        if self._direction * (candidate - self.stop_loss) > 0:
            logger.debug(f"Tightening stop on {self.symbol}: {self.stop_loss} -> {candidate}")
            self.stop_loss = candidate
            return True
        return False

    def evaluate_exits(self, policy: Optional[ExitPolicy] = None,
                       at: Optional[datetime] = None) -> ExitDecision:
        """
        Check the exit rules in order, first match wins:
        hard stop, take profit, TP1 partial, TP2, trailing stop, holding-time limit

        Only the trailing stop mutates state here (the stop level); exits are applied
        by apply_exit().
        """
        if not self.is_active:
            return ExitDecision.none()
        policy = policy or ExitPolicy()
        exit_price = self.current_price

        if self._stop_breached(self.stop_loss):
            return ExitDecision(ExitAction.FULL_CLOSE, ExitReason.STOP_HIT, self.quantity, exit_price)

        if self._target_reached(self.take_profit):
            return ExitDecision(ExitAction.FULL_CLOSE, ExitReason.TARGET_HIT, self.quantity, exit_price)

        if self.tp1 is not None and not self.tp1_hit and self._target_reached(self.tp1):
            exit_qty = max(1, floor_int(self.quantity * policy.tp1_exit_pct / HUNDRED))
            exit_qty = min(exit_qty, self.quantity)
            action = ExitAction.PARTIAL_CLOSE if exit_qty < self.quantity else ExitAction.FULL_CLOSE
            return ExitDecision(action, ExitReason.TP1_HIT, exit_qty, exit_price)

        if self.tp2 is not None and (self.tp1 is None or self.tp1_hit) and self._target_reached(self.tp2):
            return ExitDecision(ExitAction.FULL_CLOSE, ExitReason.TP2_HIT, self.quantity, exit_price)

        tightened = self.tighten_stop(self.trailing_candidate())
        if self._stop_breached(self.stop_loss):
            return ExitDecision(ExitAction.FULL_CLOSE, ExitReason.TRAILING_STOP, self.quantity,
                                exit_price, stop_tightened=tightened)

        max_days = self.max_holding_days or policy.max_holding_days
        if max_days and self.days_held(at) >= max_days:
            return ExitDecision(ExitAction.FULL_CLOSE, ExitReason.TIME_EXIT, self.quantity,
                                exit_price, stop_tightened=tightened)

        return ExitDecision.none(stop_tightened=tightened)

    def apply_exit(self, decision: ExitDecision, policy: Optional[ExitPolicy] = None,
                   at: Optional[datetime] = None) -> Decimal:
        """Execute an exit decision; returns the P&L realized by it"""
        if not decision.is_exit:
            return ZERO
        policy = policy or ExitPolicy()

        if decision.reason == ExitReason.TP1_HIT:
            if policy.breakeven_on_tp1 and self.status == PositionStatus.OPEN:
                self.move_to_breakeven()
            self.tp1_hit = True
            return self.partial_close(decision.quantity, decision.exit_price, decision.reason, at=at)

        return self.close(decision.exit_price, decision.reason, at=at)

    def tick(self, new_price: Any, atr: Any = None, policy: Optional[ExitPolicy] = None,
             at: Optional[datetime] = None) -> ExitDecision:
        """Mark to market, evaluate the exit rules and apply the resulting decision"""
        if self.is_closed:
            return ExitDecision.none()
        self.update_price(new_price, atr=atr, at=at)
        decision = self.evaluate_exits(policy, at=at)
        if decision.is_exit:
            self.apply_exit(decision, policy, at=at)
            logger.info(f"{decision.reason.value} on {self.side.value} {self.symbol}: "
                        f"{decision.action.value} {decision.quantity} @ {decision.exit_price}")
        return decision

    def move_to_breakeven(self) -> None:
        """
        Move the stop to the entry price once, keeping the tighter level if the
        stop already trails beyond entry
        """
        if self.status != PositionStatus.OPEN:
            raise InvalidPositionState(
                f"Breakeven is only allowed on open positions ({self.symbol} is {self.status.value})")
        if self.breakeven_stop is not None:
            return
        self.initial_stop_loss = self.initial_stop_loss or self.stop_loss
        self.breakeven_stop = self.entry_price
        self.tighten_stop(self.entry_price)
        logger.info(f"Stop moved to breakeven on {self.symbol}: {self.stop_loss}")

    def close(self, exit_price: Any, exit_reason: Any = ExitReason.MANUAL,
              at: Optional[datetime] = None) -> Decimal:
        """
        Close the remaining quantity

        Returns:
            P&L realized by this call
        """
        exit_px = to_decimal(exit_price, 'exit_price', allow_zero=False)
        self._require_tradeable()

        closed_qty = self.quantity
        realized = money(self.pnl_per_share(exit_px) * closed_qty)
        self.realized_pnl = money((self.realized_pnl or ZERO) + realized)
        self.filled_quantity = (self.filled_quantity or 0) + closed_qty
        self.quantity = 0
        self._finalize(exit_px, exit_reason, at)
        return realized

    def partial_close(self, exit_qty: Any, exit_price: Any, exit_reason: Any = ExitReason.MANUAL,
                      at: Optional[datetime] = None) -> Decimal:
        """
        Exit part of the position; closes it when nothing remains

        Returns:
            P&L realized by this call
        """
        exit_px = to_decimal(exit_price, 'exit_price', allow_zero=False)
        qty = _to_quantity(exit_qty, 'exit_qty')
        self._require_tradeable()
        if qty > self.quantity:
            raise InvalidPositionState(f"exit_qty {qty} exceeds open quantity {self.quantity}")

        realized = money(self.pnl_per_share(exit_px) * qty)
        self.realized_pnl = money((self.realized_pnl or ZERO) + realized)
        self.filled_quantity = (self.filled_quantity or 0) + qty
        self.quantity -= qty

        if self.quantity == 0:
            self._finalize(exit_px, exit_reason, at)
        else:
            self.status = PositionStatus.PARTIALLY_CLOSED
            self.realized_pnl_pct = self._realized_pct()
            self._recompute_unrealized()
        return realized

    def _realized_pct(self) -> Decimal:
        basis = self.entry_price * self.initial_quantity
        return pct(self.realized_pnl / basis * HUNDRED) if basis else ZERO

    def _finalize(self, exit_px: Decimal, exit_reason: Any, at: Optional[datetime]) -> None:
        self.exit_price = exit_px
        self.current_price = exit_px
        self.exit_reason = exit_reason.value if isinstance(exit_reason, ExitReason) else str(exit_reason)
        self.realized_pnl_pct = self._realized_pct()
        self.unrealized_pnl = ZERO
        self.unrealized_pnl_pct = ZERO
        self.status = PositionStatus.CLOSED
        self.closed_at = at or utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'symbol': self.symbol,
            'side': self.side.value,
            'bucket': self.bucket.value if self.bucket else None,
            'status': self.status.value,
            'quantity': self.quantity,
            'entry_price': str(self.entry_price),
            'current_price': str(self.current_price) if self.current_price is not None else None,
            'stop_loss': str(self.stop_loss),
            'realized_pnl': str(self.realized_pnl),
            'unrealized_pnl': str(self.unrealized_pnl),
        }


def _to_quantity(value: Any, field_name: str = 'quantity') -> int:
    if isinstance(value, bool) or value is None:
        raise InvalidPositionState(f"{field_name} must be a positive integer, got {value!r}")
    number = to_decimal(value, field_name, allow_zero=False)
    if number != number.to_integral_value():
        raise InvalidPositionState(f"{field_name} must be a whole number, got {value!r}")
    return int(number)


# ==================== Order ====================

class Order(Base):
    """
    Order table; client_order_id is the idempotency key for a logical trade intent
    """
    __tablename__ = 'orders'

    id = Column(Integer, primary_key=True, autoincrement=True)
    client_order_id = Column(String(64), nullable=False, unique=True,
                             comment="Caller-derived idempotency key")
    portfolio_id = Column(Integer, ForeignKey('portfolios.id', ondelete='RESTRICT'),
                          nullable=False, index=True)
    instrument_id = Column(Integer, ForeignKey('instruments.id', ondelete='SET NULL'))

    symbol = Column(String(50), nullable=False, index=True)
    side = Column(Enum(TradeSide), nullable=False)
    bucket = Column(Enum(BucketKind), nullable=False, default=BucketKind.SWING)
    order_type = Column(Enum(OrderType), nullable=False, default=OrderType.MARKET)
    trading_mode = Column(Enum(TradingMode), nullable=False, default=TradingMode.PAPER)
    status = Column(Enum(OrderStatus), nullable=False, default=OrderStatus.PENDING, index=True)

    quantity = Column(Integer, nullable=False)
    price = Column(Price, nullable=False, comment="Intended entry price")
    stop_loss = Column(Price)
    take_profit = Column(Price)

    broker_ref = Column(String(100), index=True, comment="Broker order identifier")
    error_message = Column(Text)
    submitted_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    portfolio = relationship("Portfolio", back_populates="orders")
    position = relationship("Position", back_populates="order", uselist=False,
                            foreign_keys="Position.order_id")

    __table_args__ = (
        CheckConstraint('quantity > 0', name='ck_order_quantity_positive'),
        CheckConstraint('price > 0', name='ck_order_price_positive'),
        Index('idx_order_mode_created', 'trading_mode', 'created_at'),
    )

    def __repr__(self):
        return f"<Order(client_order_id='{self.client_order_id}', status='{self.status}')>"

    @property
    def notional(self) -> Decimal:
        return money(self.price * self.quantity)

    @property
    def is_failed(self) -> bool:
        return self.status in FAILED_ORDER_STATUSES

    def mark_placed(self, broker_ref: Optional[str], at: Optional[datetime] = None) -> None:
        self.status = OrderStatus.PLACED
        self.broker_ref = broker_ref
        self.submitted_at = at or utcnow()

    def mark_failed(self, message: str, rejected: bool = False) -> None:
        self.status = OrderStatus.REJECTED if rejected else OrderStatus.FAILED
        self.error_message = message

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'client_order_id': self.client_order_id,
            'symbol': self.symbol,
            'side': self.side.value,
            'quantity': self.quantity,
            'price': str(self.price),
            'status': self.status.value,
            'broker_ref': self.broker_ref,
        }


# ==================== Ledger ====================

def _dec(value: Any) -> Optional[Decimal]:
    return Decimal(str(value)) if value is not None else None


@dataclass
class LedgerMetadata:
    """Typed view of a ledger entry's metadata column"""
    phase: Optional[str] = None
    swing_pct: Optional[Decimal] = None
    long_term_pct: Optional[Decimal] = None
    cash_pct: Optional[Decimal] = None
    swing_amount: Optional[Decimal] = None
    long_term_amount: Optional[Decimal] = None
    cash_amount: Optional[Decimal] = None
    infeasible: bool = False
    exit_reason: Optional[str] = None
    quantity: Optional[int] = None
    price: Optional[Decimal] = None
    pnl: Optional[Decimal] = None
    note: Optional[str] = None

    _DECIMAL_FIELDS = ('swing_pct', 'long_term_pct', 'cash_pct', 'swing_amount',
                       'long_term_amount', 'cash_amount', 'price', 'pnl')

    @classmethod
    def from_allocation(cls, allocation: Allocation) -> 'LedgerMetadata':
        return cls(
            phase=allocation.phase.value,
            swing_pct=allocation.swing_pct,
            long_term_pct=allocation.long_term_pct,
            cash_pct=allocation.cash_pct,
            swing_amount=allocation.swing_amount,
            long_term_amount=allocation.long_term_amount,
            cash_amount=allocation.cash_amount,
            infeasible=not allocation.is_feasible,
        )

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'LedgerMetadata':
        data = data or {}
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        for name in cls._DECIMAL_FIELDS:
            if name in values:
                values[name] = _dec(values[name])
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None or (f.name == 'infeasible' and not value):
                continue
            data[f.name] = str(value) if isinstance(value, Decimal) else value
        return data


class LedgerEntry(Base):
    """
    Append-only record of capital movements
    Rows are never updated or deleted once flushed
    """
    __tablename__ = 'ledger_entries'

    id = Column(Integer, primary_key=True, autoincrement=True)
    portfolio_id = Column(Integer, ForeignKey('portfolios.id', ondelete='RESTRICT'),
                          nullable=False, index=True)
    position_id = Column(Integer, ForeignKey('positions.id', ondelete='RESTRICT'), index=True)
    order_id = Column(Integer, ForeignKey('orders.id', ondelete='RESTRICT'))

    entry_type = Column(Enum(LedgerEntryType), nullable=False)
    amount = Column(Money, nullable=False)
    reason = Column(String(50), nullable=False, index=True)
    description = Column(Text)
    entry_metadata = Column('metadata', JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    portfolio = relationship("Portfolio", back_populates="ledger_entries")
    position = relationship("Position", back_populates="ledger_entries")

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_ledger_amount_positive'),
        Index('idx_ledger_portfolio_created', 'portfolio_id', 'created_at'),
    )

    def __init__(self, details: Optional[LedgerMetadata] = None, **kwargs):
        super().__init__(**kwargs)
        self.details = details or LedgerMetadata()
        self.entry_metadata = self.details.to_dict()

    @reconstructor
    def _load_details(self):
        self.details = LedgerMetadata.from_dict(self.entry_metadata)

    def __repr__(self):
        return (f"<LedgerEntry(portfolio_id={self.portfolio_id}, {self.entry_type}, "
                f"amount={self.amount}, reason='{self.reason}')>")

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.entry_type == LedgerEntryType.CREDIT else -self.amount


@event.listens_for(LedgerEntry, 'before_update')
def _reject_ledger_update(mapper, connection, target):
    session = object_session(target)
    if session is None or session.is_modified(target, include_collections=False):
        raise LedgerImmutableError(f"Ledger entry {target.id} is append-only")


@event.listens_for(LedgerEntry, 'before_delete')
def _reject_ledger_delete(mapper, connection, target):
    raise LedgerImmutableError(f"Ledger entry {target.id} cannot be deleted")


# ==================== Portfolio Snapshot ====================

class PortfolioSnapshot(Base):
    """Daily end-of-day metrics for a portfolio"""
    __tablename__ = 'portfolio_snapshots'

    id = Column(Integer, primary_key=True, autoincrement=True)
    portfolio_id = Column(Integer, ForeignKey('portfolios.id', ondelete='CASCADE'),
                          nullable=False, index=True)
    snapshot_date = Column(Date, nullable=False)

    opening_capital = Column(Money, nullable=False, default=ZERO)
    closing_capital = Column(Money, nullable=False, default=ZERO)
    total_equity = Column(Money, nullable=False, default=ZERO)
    swing_exposure = Column(Money, nullable=False, default=ZERO)
    realized_pnl = Column(Money, nullable=False, default=ZERO)
    unrealized_pnl = Column(Money, nullable=False, default=ZERO)
    day_realized_pnl = Column(Money, nullable=False, default=ZERO)
    peak_equity = Column(Money, nullable=False, default=ZERO)
    drawdown_pct = Column(Percent, nullable=False, default=ZERO)
    max_drawdown = Column(Percent, nullable=False, default=ZERO)
    capital_utilization_pct = Column(Percent, nullable=False, default=ZERO)
    win_rate = Column(Percent, nullable=False, default=ZERO)
    open_positions_count = Column(Integer, nullable=False, default=0)
    closed_positions_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    portfolio = relationship("Portfolio", back_populates="snapshots")

    __table_args__ = (
        UniqueConstraint('portfolio_id', 'snapshot_date', name='uq_portfolio_snapshot_date'),
    )

    def __repr__(self):
        return (f"<PortfolioSnapshot(portfolio_id={self.portfolio_id}, "
                f"date={self.snapshot_date}, equity={self.total_equity})>")
