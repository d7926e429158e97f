"""
SwingDesk Database Models
SQLAlchemy declarative base, fixed-point column types and instrument reference data
"""

from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text,
    Index, UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import declarative_base, validates
from datetime import datetime, timezone

# SQLAlchemy base class for all models
Base = declarative_base()

# Fixed-point column types; values round-trip as decimal.Decimal
Money = Numeric(18, 2, asdecimal=True)
Price = Numeric(18, 4, asdecimal=True)
Percent = Numeric(9, 4, asdecimal=True)


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in every DateTime column"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Instrument(Base):
    """
    Instruments table for tradeable equity symbols
    Positions and orders may reference an instrument; the symbol is also kept on them
    """
    __tablename__ = 'instruments'

    # Primary key and identifiers
    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String(50), nullable=False, index=True,
                    comment="Trading symbol (e.g., RELIANCE, INFY)")
    exchange = Column(String(20), nullable=False, default='NSE',
                      comment="Exchange identifier (NSE, BSE)")
    segment = Column(String(20), nullable=False, default='equity',
                     comment="Segment: equity, etf, index")
    security_id = Column(String(50), comment="Broker security identifier")

    # Contract specifications
    tick_size = Column(Price, nullable=False, default=0.05,
                       comment="Minimum price increment")
    lot_size = Column(Integer, nullable=False, default=1,
                      comment="Minimum tradeable quantity")

    # Status and metadata
    is_active = Column(Boolean, default=True, nullable=False,
                       comment="Whether instrument is actively traded")
    description = Column(Text, comment="Full instrument description")

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Constraints and indexes
    __table_args__ = (
        UniqueConstraint('symbol', 'exchange', name='uq_symbol_exchange'),
        CheckConstraint('tick_size > 0', name='ck_tick_size_positive'),
        CheckConstraint('lot_size > 0', name='ck_lot_size_positive'),
        Index('idx_instrument_lookup', 'symbol', 'exchange', 'is_active'),
    )

    @validates('exchange')
    def validate_exchange(self, key, value):
        """Only exchanges the desk trades on are accepted"""
        if value not in get_supported_exchanges():
            raise ValueError(f"Unsupported exchange: {value}")
        return value

    def __repr__(self):
        return f"<Instrument(symbol='{self.symbol}', exchange='{self.exchange}')>"


def get_supported_exchanges() -> list[str]:
    """Return list of supported exchanges"""
    return ['NSE', 'BSE']
