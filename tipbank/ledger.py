"""Tip ledger posting primitive.

``post_entry`` appends one immutable entry and updates the employee's cached
balance in the same database transaction, then commits. It must never be
called while the session holds other uncommitted tip bank writes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from tipbank.models import TipLedger, TipLedgerEntry
from tipbank.schemas import EntryType, LedgerSourceType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PostedEntry:
    id: int
    amount_cents: int


@dataclass(frozen=True)
class LedgerBalance:
    employee_id: int
    current_balance_cents: int


class TipLedgerPort(Protocol):
    def post_entry(
        self,
        *,
        location_id: int,
        employee_id: int,
        amount_cents: int,
        entry_type: EntryType,
        source_type: LedgerSourceType,
        source_id: Optional[int] = None,
        order_id: Optional[str] = None,
        adjustment_id: Optional[int] = None,
        memo: Optional[str] = None,
    ) -> PostedEntry: ...

    def get_balance(self, employee_id: int) -> LedgerBalance: ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SqlTipLedger:
    def __init__(self, db: Session) -> None:
        self.db = db

    def _ledger_for(self, location_id: int, employee_id: int) -> TipLedger:
        ledger = (
            self.db.query(TipLedger)
            .filter(TipLedger.employee_id == employee_id)
            .with_for_update()
            .first()
        )
        if ledger is None:
            now = _now()
            ledger = TipLedger(
                location_id=location_id,
                employee_id=employee_id,
                current_balance_cents=0,
                created_at=now,
                updated_at=now,
            )
            self.db.add(ledger)
            self.db.flush()
        return ledger

    def post_entry(
        self,
        *,
        location_id: int,
        employee_id: int,
        amount_cents: int,
        entry_type: EntryType,
        source_type: LedgerSourceType,
        source_id: Optional[int] = None,
        order_id: Optional[str] = None,
        adjustment_id: Optional[int] = None,
        memo: Optional[str] = None,
    ) -> PostedEntry:
        if amount_cents <= 0:
            raise ValueError("amount_cents must be a positive integer; the sign is carried by entry_type")
        entry_type = EntryType(entry_type)
        try:
            ledger = self._ledger_for(location_id, employee_id)
            entry = TipLedgerEntry(
                location_id=location_id,
                ledger_id=ledger.id,
                employee_id=employee_id,
                type=entry_type.value,
                amount_cents=amount_cents,
                source_type=LedgerSourceType(source_type).value,
                source_id=source_id,
                order_id=order_id,
                adjustment_id=adjustment_id,
                memo=memo,
                created_at=_now(),
            )
            signed = amount_cents if entry_type == EntryType.CREDIT else -amount_cents
            ledger.current_balance_cents = ledger.current_balance_cents + signed
            ledger.updated_at = _now()
            self.db.add(entry)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.debug(
            "posted %s %s cents for employee %s (source %s)",
            entry_type.value,
            amount_cents,
            employee_id,
            source_type,
        )
        return PostedEntry(id=entry.id, amount_cents=entry.amount_cents)

    def get_balance(self, employee_id: int) -> LedgerBalance:
        ledger = self.db.query(TipLedger).filter(TipLedger.employee_id == employee_id).first()
        balance = ledger.current_balance_cents if ledger is not None else 0
        return LedgerBalance(employee_id=employee_id, current_balance_cents=balance)


def balance_from_entries(db: Session, employee_id: int) -> int:
    """Recompute a balance from the entries themselves (audit check for the cache)."""
    signed = case(
        (TipLedgerEntry.type == EntryType.CREDIT.value, TipLedgerEntry.amount_cents),
        else_=-TipLedgerEntry.amount_cents,
    )
    total = (
        db.query(func.coalesce(func.sum(signed), 0))
        .filter(TipLedgerEntry.employee_id == employee_id)
        .scalar()
    )
    return int(total or 0)
