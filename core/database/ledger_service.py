"""
SwingDesk Ledger Service
Append-only capital movement records tied to a portfolio
"""

from typing import List, Optional
from decimal import Decimal
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
import logging

from .trading_models import LedgerEntry, LedgerEntryType, LedgerMetadata, Portfolio
from core.risk.exceptions import LedgerWriteError
from core.risk.money import ZERO, money

logger = logging.getLogger(__name__)

# Reasons that record a decision rather than move money; excluded from balance()
AUDIT_ONLY_REASONS = ('capital_rebalance',)


class LedgerService:
    """
    Writes and reads ledger entries inside the caller's transaction

    Entries are flushed immediately so a failed write surfaces at the call site;
    committing stays with the caller.
    """

    def __init__(self, session: Session):
        self.session = session

    def record(self,
               portfolio: Portfolio,
               entry_type: LedgerEntryType,
               amount: Decimal,
               reason: str,
               details: Optional[LedgerMetadata] = None,
               position_id: Optional[int] = None,
               order_id: Optional[int] = None,
               description: Optional[str] = None) -> LedgerEntry:
        """
        Append one ledger entry

        Raises:
            LedgerWriteError: non-positive amount, missing reason, or a failed flush
        """
        if amount is None or Decimal(amount) <= 0:
            raise LedgerWriteError(f"Ledger amount must be positive, got {amount}")
        if not reason:
            raise LedgerWriteError("Ledger reason is required")

        entry = LedgerEntry(
            details=details,
            portfolio_id=portfolio.id,
            position_id=position_id,
            order_id=order_id,
            entry_type=entry_type,
            amount=money(amount),
            reason=reason,
            description=description,
        )
        try:
            self.session.add(entry)
            self.session.flush()
        except SQLAlchemyError as e:
            logger.error(f"Ledger write failed for portfolio {portfolio.id} ({reason} {amount}): {e}")
            raise LedgerWriteError(f"Failed to write ledger entry '{reason}': {e}") from e

        logger.info(f"Ledger {entry_type.value} {entry.amount} ({reason}) on portfolio {portfolio.id}")
        return entry

    def credit(self, portfolio: Portfolio, amount: Decimal, reason: str, **kwargs) -> LedgerEntry:
        return self.record(portfolio, LedgerEntryType.CREDIT, amount, reason, **kwargs)

    def debit(self, portfolio: Portfolio, amount: Decimal, reason: str, **kwargs) -> LedgerEntry:
        return self.record(portfolio, LedgerEntryType.DEBIT, amount, reason, **kwargs)

    def entries_for(self, portfolio_id: int, reason: Optional[str] = None,
                    limit: Optional[int] = None) -> List[LedgerEntry]:
        """Ledger entries for a portfolio, oldest first"""
        query = self.session.query(LedgerEntry).filter(LedgerEntry.portfolio_id == portfolio_id)
        if reason:
            query = query.filter(LedgerEntry.reason == reason)
        query = query.order_by(LedgerEntry.id)
        if limit:
            query = query.limit(limit)
        return query.all()

    def balance(self, portfolio_id: int) -> Decimal:
        """Credits minus debits over money-moving entries"""
        entries = self.session.query(LedgerEntry).filter(
            LedgerEntry.portfolio_id == portfolio_id,
            LedgerEntry.reason.notin_(AUDIT_ONLY_REASONS)
        ).all()
        return money(sum((e.signed_amount for e in entries), ZERO))
