"""
Interfaces for the collaborators the engine consumes but does not implement:
price feed, broker order submission and alert delivery
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging

from core.database.models import utcnow
from core.database.trading_models import Order

logger = logging.getLogger(__name__)


# =============================================================================
# Value Types
# =============================================================================

@dataclass(frozen=True)
class PriceQuote:
    """Current price for an instrument; atr is optional"""
    price: Decimal
    atr: Optional[Decimal] = None


@dataclass(frozen=True)
class BrokerAck:
    """Broker acknowledgement of a submitted order"""
    accepted: bool
    broker_ref: Optional[str] = None
    message: Optional[str] = None


class BrokerError(Exception):
    """Raised by an OrderSubmitter when the broker call fails"""

    def __init__(self, message: str, rejected: bool = False):
        super().__init__(message)
        self.rejected = rejected


@dataclass
class AlertEvent:
    """Alert event for monitoring and notifications."""
    event_type: str
    severity: str  # INFO, WARNING, ERROR, CRITICAL
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


# =============================================================================
# Interfaces
# =============================================================================

class PriceFeed(ABC):
    """Supplies the current price (and optionally ATR) for a symbol."""

    @abstractmethod
    def current(self, symbol: str, instrument_id: Optional[int] = None) -> PriceQuote:
        """Return the latest quote; raise on failure."""
        pass


class OrderSubmitter(ABC):
    """Transmits an admitted order to the broker. The engine never retries it."""

    @abstractmethod
    def submit(self, order: Order) -> BrokerAck:
        """Submit the order; raise BrokerError on transport or broker failure."""
        pass


class AlertSink(ABC):
    """Fire-and-forget notification channel."""

    @abstractmethod
    def notify(self, event: AlertEvent) -> None:
        pass


# =============================================================================
# Implementations
# =============================================================================

class LoggingAlertSink(AlertSink):
    """Writes alerts to the log and keeps the most recent ones in memory"""

    def __init__(self, max_events: int = 1000):
        self.max_events = max_events
        self.events: List[AlertEvent] = []

    def notify(self, event: AlertEvent) -> None:
        level = getattr(logging, event.severity.upper(), logging.INFO)
        logger.log(level, f"[{event.event_type}] {event.message}")
        self.events.append(event)
        if len(self.events) > self.max_events:
            self.events = self.events[-self.max_events:]


def safe_notify(sink: Optional[AlertSink], event: AlertEvent) -> bool:
    """Deliver an alert without ever letting a sink failure reach the trading path"""
    if sink is None:
        return False
    try:
        sink.notify(event)
        return True
    except Exception as e:
        logger.error(f"Alert delivery failed for {event.event_type}: {e}")
        return False
