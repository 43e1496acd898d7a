"""Tip allocation at payment time.

Decides who is credited for a collected tip and posts the credits:

* an order co-owned by several servers is split by ownership percent
  (``DIRECT_TIP`` per owner);
* a primary employee in an active tip group is split by the segment that was
  active at ``collected_at`` (``TIP_GROUP`` per member);
* otherwise the primary employee gets the whole tip (``DIRECT_TIP``).
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from tipbank.groups import current_segment_splits, find_active_group_for_employee, find_segment_for_timestamp
from tipbank.ledger import TipLedgerPort
from tipbank.models import TipLedgerEntry, TipTransaction
from tipbank.ownership import get_active_ownership
from tipbank.postings import PostingCommand, PostingRun
from tipbank.schemas import (
    TIP_DISTRIBUTION_SOURCES,
    CollectionSource,
    EntryType,
    LedgerSourceType,
    TipAllocation,
    TipAllocationResult,
)
from tipbank.shares import calculate_shares, parse_split, round_half_up
from tipbank.tip_settings import TipBankSettings

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def cc_fee_cents(amount_cents: int, source: CollectionSource, settings: TipBankSettings) -> int:
    if source != CollectionSource.CARD or not settings.deduct_cc_fee_from_tips:
        return 0
    if settings.cc_fee_percent <= 0:
        return 0
    return round_half_up(amount_cents * settings.cc_fee_percent / 100)




def _existing_transaction(db: Session, order_id: str, payment_id: str) -> Optional[TipTransaction]:
    return (
        db.query(TipTransaction)
        .filter(
            TipTransaction.order_id == order_id,
            TipTransaction.payment_id == payment_id,
            TipTransaction.active_only(),
        )
        .first()
    )


def _distribution_credits(db: Session, txn: TipTransaction) -> list[TipLedgerEntry]:
    return (
        db.query(TipLedgerEntry)
        .filter(
            TipLedgerEntry.source_id == txn.id,
            TipLedgerEntry.type == EntryType.CREDIT.value,
            TipLedgerEntry.source_type.in_(TIP_DISTRIBUTION_SOURCES),
        )
        .order_by(TipLedgerEntry.id)
        .all()
    )


def _owner_split(db: Session, order_id: str, settings: TipBankSettings) -> Optional[dict[int, float]]:
    """Co-owner split for the order, or ``None`` when one server owns the tip."""
    if settings.table_tip_ownership_mode == "PRIMARY_SERVER_OWNS_ALL":
        return None
    ownership = get_active_ownership(db, order_id)
    if ownership is None or len(ownership.owners) < 2:
        return None
    return parse_split({o.employee_id: o.share_percent / 100 for o in ownership.owners})


def _expected_shares(
    db: Session, txn: TipTransaction, settings: TipBankSettings
) -> tuple[dict[int, int], LedgerSourceType]:
    if txn.amount_cents <= 0:
        return {}, LedgerSourceType.DIRECT_TIP
    if txn.segment_id is not None:
        split = current_segment_splits(db, [txn.segment_id]).get(txn.segment_id)
        if split:
            return calculate_shares(txn.amount_cents, split), LedgerSourceType.TIP_GROUP
    owner_split = _owner_split(db, txn.order_id, settings)
    if owner_split:
        return calculate_shares(txn.amount_cents, owner_split), LedgerSourceType.DIRECT_TIP
    return {txn.primary_employee_id: txn.amount_cents}, LedgerSourceType.DIRECT_TIP


def _credit_missing(
    db: Session, ledger: TipLedgerPort, txn: TipTransaction, settings: TipBankSettings
) -> TipAllocationResult:
    """Post whatever part of the expected distribution is not yet credited."""
    shares, source_type = _expected_shares(db, txn, settings)
    received: dict[int, int] = {}
    for entry in _distribution_credits(db, txn):
        received[entry.employee_id] = received.get(entry.employee_id, 0) + entry.amount_cents

    commands = [
        PostingCommand(
            location_id=txn.location_id,
            employee_id=employee_id,
            amount_cents=cents - received.get(employee_id, 0),
            entry_type=EntryType.CREDIT,
            source_type=source_type,
            source_id=txn.id,
            order_id=txn.order_id,
            memo=f"Tip from order {txn.order_id} ({txn.source_type})",
        )
        for employee_id, cents in shares.items()
        if cents - received.get(employee_id, 0) > 0
    ]
    if received and commands:
        logger.warning(
            "tip transaction %s was partly credited; posting %d missing credits",
            txn.id,
            len(commands),
        )
    PostingRun(ledger).run(commands)

    return TipAllocationResult(
        tip_transaction_id=txn.id,
        allocations=[
            TipAllocation(
                employee_id=e.employee_id,
                amount_cents=e.amount_cents,
                source_type=LedgerSourceType(e.source_type),
                ledger_entry_id=e.id,
            )
            for e in _distribution_credits(db, txn)
        ],
    )


def allocate_tip(
    db: Session,
    ledger: TipLedgerPort,
    *,
    location_id: int,
    order_id: str,
    payment_id: str,
    amount_cents: int,
    primary_employee_id: int,
    source: CollectionSource,
    settings: TipBankSettings,
    collected_at: Optional[datetime] = None,
    kind: str = "tip",
) -> Optional[TipAllocationResult]:
    """Record a collected tip and credit it.

    Returns ``None`` when the location's tip bank is disabled. Allocating the
    same order and payment again posts only credits still missing from an
    earlier, interrupted allocation; a complete allocation is returned as is.
    """
    if not settings.enabled:
        return None
    existing = _existing_transaction(db, order_id, payment_id)
    if existing is not None:
        logger.info("tip for order %s payment %s already recorded", order_id, payment_id)
        return _credit_missing(db, ledger, existing, settings)

    source = CollectionSource(source)
    collected_at = collected_at or _now()
    fee = cc_fee_cents(amount_cents, source, settings) if amount_cents > 0 else 0
    net_cents = max(amount_cents - fee, 0)

    group_id = segment_id = None
    if net_cents > 0 and _owner_split(db, order_id, settings) is None:
        group = find_active_group_for_employee(db, primary_employee_id)
        segment = find_segment_for_timestamp(db, group.id, collected_at) if group else None
        if segment is not None and current_segment_splits(db, [segment.id]).get(segment.id):
            group_id, segment_id = group.id, segment.id
        elif group is not None:
            logger.warning(
                "no segment covers %s in tip group %s; crediting employee %s directly",
                collected_at.isoformat(),
                group.id,
                primary_employee_id,
            )

    txn = TipTransaction(
        location_id=location_id,
        order_id=order_id,
        payment_id=payment_id,
        tip_group_id=group_id,
        segment_id=segment_id,
        amount_cents=net_cents,
        source_type=source.value,
        kind=kind,
        cc_fee_amount_cents=fee,
        primary_employee_id=primary_employee_id,
        collected_at=collected_at,
        created_at=_now(),
    )
    db.add(txn)
    db.commit()
    return _credit_missing(db, ledger, txn, settings)
