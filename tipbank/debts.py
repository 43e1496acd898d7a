from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from tipbank.errors import NotFoundError, PreconditionFailedError
from tipbank.ledger import TipLedgerPort
from tipbank.models import TipDebt
from tipbank.postings import PostingCommand, PostingRun
from tipbank.schemas import DebtStatus, EntryType, LedgerSourceType

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def debt_as_dict(debt: TipDebt) -> dict:
    return {
        "tip_debt_id": debt.id,
        "location_id": debt.location_id,
        "employee_id": debt.employee_id,
        "original_amount_cents": debt.original_amount_cents,
        "remaining_cents": debt.remaining_cents,
        "source_payment_id": debt.source_payment_id,
        "status": debt.status,
        "resolution": debt.resolution,
        "memo": debt.memo,
        "created_at": debt.created_at,
        "resolved_at": debt.resolved_at,
    }


def list_tip_debts(
    db: Session,
    *,
    location_id: Optional[int] = None,
    employee_id: Optional[int] = None,
    status: Optional[DebtStatus] = None,
) -> list[TipDebt]:
    query = db.query(TipDebt).filter(TipDebt.active_only())
    if location_id is not None:
        query = query.filter(TipDebt.location_id == location_id)
    if employee_id is not None:
        query = query.filter(TipDebt.employee_id == employee_id)
    if status is not None:
        query = query.filter(TipDebt.status == DebtStatus(status).value)
    return query.order_by(TipDebt.created_at, TipDebt.id).all()


def collect_tip_debts(db: Session, ledger: TipLedgerPort, *, employee_id: int) -> list[TipDebt]:
    """Recover open debts, oldest first, from the employee's positive balance.

    Each recovery is a ``DEBT_RECOVERY`` debit; a debt whose remainder
    reaches zero is resolved as ``recovered``.
    """
    touched: list[TipDebt] = []
    run = PostingRun(ledger)
    for debt in list_tip_debts(db, employee_id=employee_id, status=DebtStatus.OPEN):
        balance = ledger.get_balance(employee_id).current_balance_cents
        amount = min(debt.remaining_cents, max(balance, 0))
        if amount <= 0:
            break
        run.post(
            PostingCommand(
                location_id=debt.location_id,
                employee_id=employee_id,
                amount_cents=amount,
                entry_type=EntryType.DEBIT,
                source_type=LedgerSourceType.DEBT_RECOVERY,
                source_id=debt.id,
                memo=f"Recovery of tip debt {debt.id} (payment {debt.source_payment_id})",
            )
        )
        debt.remaining_cents -= amount
        debt.updated_at = _now()
        if debt.remaining_cents == 0:
            debt.status = DebtStatus.RESOLVED.value
            debt.resolution = "recovered"
            debt.resolved_at = debt.updated_at
        db.commit()
        touched.append(debt)
        logger.info("recovered %d cents of tip debt %s", amount, debt.id)
    return touched


def write_off_tip_debt(db: Session, *, debt_id: int, manager_id: int) -> TipDebt:
    debt = db.query(TipDebt).filter(TipDebt.id == debt_id, TipDebt.active_only()).first()
    if debt is None:
        raise NotFoundError(f"tip debt {debt_id} not found", reason="tip_debt_not_found")
    if debt.status != DebtStatus.OPEN.value:
        raise PreconditionFailedError(f"tip debt {debt_id} is already {debt.status}", reason="tip_debt_resolved")
    now = _now()
    debt.status = DebtStatus.RESOLVED.value
    debt.resolution = "written_off"
    debt.resolved_at = now
    debt.resolved_by_id = manager_id
    debt.updated_at = now
    db.commit()
    logger.info("tip debt %s written off by %s (%d cents)", debt_id, manager_id, debt.remaining_cents)
    return debt
