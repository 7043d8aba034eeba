"""Human-facing document numbers (KOT, bill, receipt and expense voucher).

Numbers are scoped by (business unit, period, sequence name) and stored in the
``local_counters`` table. A number is always taken inside the same coordinator
transaction that inserts the row carrying it, so a rolled-back sale never
consumes a number and two writers can never receive the same one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from tillsync.core.calendar import business_date, fiscal_year_bounds, fiscal_year_start
from tillsync.db.transactions import require_transaction
from tillsync.models import Bill, Expense, KotOrder, LocalCounter, Receipt

# Configure logger for this module
logger = logging.getLogger(__name__)

RESET_DAILY = "daily"
RESET_FISCAL_YEAR = "fiscal_year"


@dataclass(frozen=True)
class SequenceSpec:
    """Where a sequence's numbers live and when they restart."""

    name: str
    reset: str
    number_column: Any
    date_column: Any
    scope_column: Any


SEQUENCES: dict[str, SequenceSpec] = {
    "kot": SequenceSpec(
        "kot", RESET_DAILY, KotOrder.kot_number, KotOrder.business_date, KotOrder.business_unit_id
    ),
    "bill": SequenceSpec(
        "bill", RESET_FISCAL_YEAR, Bill.bill_number, Bill.business_date, Bill.business_unit_id
    ),
    "receipt": SequenceSpec(
        "receipt",
        RESET_FISCAL_YEAR,
        Receipt.receipt_no,
        Receipt.business_date,
        Receipt.business_unit_id,
    ),
    "expense": SequenceSpec(
        "expense",
        RESET_FISCAL_YEAR,
        Expense.voucher_no,
        Expense.expense_date,
        Expense.business_unit_id,
    ),
}


class LocalSequenceGenerator:
    """Hand out strictly increasing numbers per (scope, period, name)."""

    def __init__(self, *, timezone: str, fiscal_year_start_month: int, scope: str) -> None:
        self.timezone = timezone
        self.fiscal_year_start_month = fiscal_year_start_month
        self.scope = scope

    def period_key(self, name: str, at: datetime) -> str:
        """Return the counter period for ``at``: ``YYYY-MM-DD`` or the fiscal start year.

        Raises:
            KeyError: If ``name`` is not a known sequence.
            ValueError: If ``at`` is naive.
        """
        spec = SEQUENCES[name]
        if spec.reset == RESET_DAILY:
            return business_date(at, self.timezone)
        return str(fiscal_year_start(at, self.timezone, self.fiscal_year_start_month))

    def next(self, session: Session, name: str, at: datetime) -> int:
        """Return the next number of sequence ``name`` for the period containing ``at``.

        Args:
            session: Session of an open coordinator transaction.
            name: Sequence name (``kot``, ``bill``, ``receipt`` or ``expense``).
            at: Aware timestamp of the document being numbered.

        Returns:
            The new number, already persisted in the caller's transaction.

        Raises:
            NoActiveTransactionError: If ``session`` is not a live write transaction.
        """
        require_transaction(session)
        spec = SEQUENCES[name]
        period = self.period_key(name, at)

        counter = session.get(LocalCounter, (self.scope, period, name))
        if counter is None:
            seed = self._seed(session, spec, period)
            counter = LocalCounter(scope=self.scope, period_key=period, name=name, value=seed)
            session.add(counter)
            if seed:
                logger.info("Seeded sequence %s/%s from existing rows at %s", name, period, seed)

        counter.value = int(counter.value) + 1
        counter.updated_at = at
        session.flush()
        return counter.value

    def peek(self, session: Session, name: str, at: datetime) -> int:
        """Return the last number issued in the period of ``at`` (0 if none), without consuming."""
        spec = SEQUENCES[name]
        period = self.period_key(name, at)
        counter = session.get(LocalCounter, (self.scope, period, name))
        if counter is not None:
            return int(counter.value)
        return self._seed(session, spec, period)

    def _seed(self, session: Session, spec: SequenceSpec, period: str) -> int:
        # Tombstoned rows still hold their numbers, so they are included.
        query = select(func.max(spec.number_column)).where(spec.scope_column == self.scope)
        if spec.reset == RESET_DAILY:
            query = query.where(spec.date_column == period)
        else:
            first, last = fiscal_year_bounds(int(period), self.fiscal_year_start_month)
            query = query.where(
                spec.date_column >= first.isoformat(),
                spec.date_column <= last.isoformat(),
            )
        return int(session.execute(query).scalar() or 0)
