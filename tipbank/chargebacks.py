"""Tip reversal when a payment is voided or refunded.

Two location policies:

``BUSINESS_ABSORBS``
    Employees keep the tip; the business eats the loss. The tip transactions
    are soft-deleted and nothing is posted.

``EMPLOYEE_CHARGEBACK``
    Every original credit for the payment is reversed with a DEBIT. When
    negative balances are not allowed each debit is capped at the employee's
    current balance and the uncollected remainder becomes an open
    ``TipDebt``. For every employee, cents debited plus debt remaining equal
    the cents originally credited.

Each capped debit reads the balance and posts under the ``employee`` target
lock, the same lock debt collection takes, so two chargebacks for different
payments cannot both spend the same balance.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from tipbank.errors import NotFoundError
from tipbank.ledger import TipLedgerPort
from tipbank.locks import target_lock
from tipbank.models import TipDebt, TipLedgerEntry, TipTransaction
from tipbank.postings import PostingCommand, PostingRun
from tipbank.schemas import (
    TIP_DISTRIBUTION_SOURCES,
    ChargebackEntry,
    ChargebackPolicy,
    ChargebackResult,
    DebtStatus,
    EntryType,
    LedgerSourceType,
)
from tipbank.tip_settings import TipBankSettings

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _soft_delete(db: Session, transactions: list[TipTransaction]) -> None:
    at = _now()
    for txn in transactions:
        txn.soft_delete(at)
    db.commit()


def _already_recovered(db: Session, transaction_ids: list[int], payment_id: str) -> dict[int, int]:
    """Cents per employee already debited or turned into debt by an earlier run."""
    recovered: dict[int, int] = {}
    debits = (
        db.query(TipLedgerEntry.employee_id, func.sum(TipLedgerEntry.amount_cents))
        .filter(
            TipLedgerEntry.type == EntryType.DEBIT.value,
            TipLedgerEntry.source_type == LedgerSourceType.CHARGEBACK.value,
            TipLedgerEntry.source_id.in_(transaction_ids),
        )
        .group_by(TipLedgerEntry.employee_id)
    )
    for employee_id, cents in debits:
        recovered[employee_id] = recovered.get(employee_id, 0) + int(cents or 0)
    debts = db.query(TipDebt).filter(
        TipDebt.source_payment_id == payment_id,
        TipDebt.source_type == LedgerSourceType.CHARGEBACK.value,
        TipDebt.active_only(),
    )
    for debt in debts:
        recovered[debt.employee_id] = recovered.get(debt.employee_id, 0) + debt.original_amount_cents
    return recovered


def handle_tip_chargeback(
    db: Session,
    ledger: TipLedgerPort,
    *,
    location_id: int,
    payment_id: str,
    settings: TipBankSettings,
    memo: Optional[str] = None,
) -> ChargebackResult:
    transactions = (
        db.query(TipTransaction)
        .filter(
            TipTransaction.payment_id == payment_id,
            TipTransaction.location_id == location_id,
            TipTransaction.active_only(),
        )
        .order_by(TipTransaction.id)
        .all()
    )
    if not transactions:
        raise NotFoundError(
            f"no tip transaction for payment {payment_id} at location {location_id}",
            reason="tip_transaction_not_found",
        )
    primary = transactions[0]
    transaction_ids = [t.id for t in transactions]
    original_tip_cents = sum(t.amount_cents for t in transactions)

    if settings.chargeback_policy == ChargebackPolicy.BUSINESS_ABSORBS:
        _soft_delete(db, transactions)
        logger.info("payment %s reversed; business absorbs %d tip cents", payment_id, original_tip_cents)
        return ChargebackResult(
            policy=ChargebackPolicy.BUSINESS_ABSORBS,
            tip_transaction_id=primary.id,
            tip_transaction_ids=transaction_ids,
            original_tip_cents=original_tip_cents,
            charged_back_cents=0,
            flagged_for_review_cents=0,
            tip_debt_ids=[],
            entries=[],
        )

    orders = {t.id: t.order_id for t in transactions}
    credits = (
        db.query(TipLedgerEntry)
        .filter(
            TipLedgerEntry.type == EntryType.CREDIT.value,
            TipLedgerEntry.source_id.in_(transaction_ids),
            TipLedgerEntry.source_type.in_(TIP_DISTRIBUTION_SOURCES),
        )
        .order_by(TipLedgerEntry.id)
        .all()
    )
    recovered = _already_recovered(db, transaction_ids, payment_id)

    run = PostingRun(ledger)
    entries: list[ChargebackEntry] = []
    original_by_employee: dict[int, int] = {}
    debited_by_employee: dict[int, int] = {}
    charged_back = 0
    flagged = 0

    for credit in credits:
        original = credit.amount_cents
        if original <= 0:
            continue
        employee_id = credit.employee_id
        original_by_employee[employee_id] = original_by_employee.get(employee_id, 0) + original

        covered = min(original, recovered.get(employee_id, 0))
        if covered:
            recovered[employee_id] -= covered
            debited_by_employee[employee_id] = debited_by_employee.get(employee_id, 0) + covered
        target = original - covered
        if target == 0:
            continue

        with target_lock(db, "employee", employee_id):
            debit = target
            capped = False
            if not settings.allow_negative_balances:
                balance = ledger.get_balance(employee_id).current_balance_cents
                if balance < debit:
                    debit = max(0, balance)
                    flagged += target - debit
                    capped = True

            if debit == 0:
                entries.append(ChargebackEntry(employee_id=employee_id, amount_cents=0, capped_at_balance=True))
                continue

            outcome = run.post(
                PostingCommand(
                    location_id=credit.location_id,
                    employee_id=employee_id,
                    amount_cents=debit,
                    entry_type=EntryType.DEBIT,
                    source_type=LedgerSourceType.CHARGEBACK,
                    source_id=credit.source_id,
                    order_id=orders.get(credit.source_id),
                    memo=memo
                    or f"Chargeback: payment {payment_id} voided/refunded (tip transaction {credit.source_id})",
                )
            )
            charged_back += debit
            debited_by_employee[employee_id] = debited_by_employee.get(employee_id, 0) + debit
            entries.append(
                ChargebackEntry(
                    employee_id=employee_id,
                    amount_cents=debit,
                    ledger_entry_id=outcome.ledger_entry_id,
                    capped_at_balance=capped,
                )
            )

    tip_debt_ids: list[int] = []
    now = _now()
    for employee_id, original in original_by_employee.items():
        remainder = original - debited_by_employee.get(employee_id, 0)
        if remainder <= 0:
            continue
        debt = TipDebt(
            location_id=primary.location_id,
            employee_id=employee_id,
            original_amount_cents=remainder,
            remaining_cents=remainder,
            source_payment_id=payment_id,
            source_type=LedgerSourceType.CHARGEBACK.value,
            memo=f"Chargeback remainder from payment {payment_id}",
            status=DebtStatus.OPEN.value,
            created_at=now,
            updated_at=now,
        )
        db.add(debt)
        db.flush()
        tip_debt_ids.append(debt.id)
        logger.warning(
            "chargeback for payment %s left %d cents uncollected from employee %s (debt %s)",
            payment_id,
            remainder,
            employee_id,
            debt.id,
        )

    for txn in transactions:
        txn.soft_delete(now)
    db.commit()

    return ChargebackResult(
        policy=ChargebackPolicy.EMPLOYEE_CHARGEBACK,
        tip_transaction_id=primary.id,
        tip_transaction_ids=transaction_ids,
        original_tip_cents=original_tip_cents,
        charged_back_cents=charged_back,
        flagged_for_review_cents=flagged,
        tip_debt_ids=tip_debt_ids,
        entries=entries,
    )
