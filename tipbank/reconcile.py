"""Recalculation of tip allocations after split configuration changes.

Both reconcilers follow the same pattern: compute what each employee should
have been credited for every in-scope tip transaction, compare it with what
was actually credited, net the differences per employee, write one
``TipAdjustment`` and post one corrective entry per employee.

"Actual" includes earlier reconciler corrections (``TipAllocationDelta``
rows whose ledger entry was posted), so running a reconciler twice in a row
posts nothing the second time, and re-running after an interrupted posting
loop only posts what is still missing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from sqlalchemy import and_, exists
from sqlalchemy.orm import Session

from tipbank.adjustments import create_adjustment
from tipbank.errors import NotFoundError, PreconditionFailedError
from tipbank.groups import current_segment_splits
from tipbank.ledger import TipLedgerPort
from tipbank.models import (
    TipAllocationDelta,
    TipGroup,
    TipGroupSegment,
    TipLedgerEntry,
    TipTransaction,
)
from tipbank.ownership import get_active_ownership
from tipbank.postings import PostingCommand, PostingRun
from tipbank.schemas import (
    TIP_DISTRIBUTION_SOURCES,
    AdjustmentType,
    EntryType,
    LedgerSourceType,
    RecalculationDelta,
    RecalculationResult,
)
from tipbank.shares import calculate_shares, member_order, parse_split

logger = logging.getLogger(__name__)


@dataclass
class _Tally:
    previous_cents: int = 0
    new_cents: int = 0
    per_transaction: dict[int, int] = field(default_factory=dict)

    @property
    def delta_cents(self) -> int:
        return self.new_cents - self.previous_cents


def _actual_by_transaction(
    db: Session,
    transaction_ids: list[int],
    source_types: Iterable[str],
    order_id: Optional[str] = None,
) -> dict[int, dict[int, int]]:
    """Cents credited per transaction and employee, earlier corrections included."""
    actual: dict[int, dict[int, int]] = {}
    if not transaction_ids:
        return actual

    credits = db.query(TipLedgerEntry).filter(
        TipLedgerEntry.type == EntryType.CREDIT.value,
        TipLedgerEntry.source_id.in_(transaction_ids),
        TipLedgerEntry.source_type.in_(list(source_types)),
    )
    if order_id is not None:
        credits = credits.filter(TipLedgerEntry.order_id == order_id)
    for entry in credits:
        received = actual.setdefault(entry.source_id, {})
        received[entry.employee_id] = received.get(entry.employee_id, 0) + entry.amount_cents

    posted = exists().where(
        and_(
            TipLedgerEntry.adjustment_id == TipAllocationDelta.adjustment_id,
            TipLedgerEntry.employee_id == TipAllocationDelta.employee_id,
        )
    )
    corrections = db.query(TipAllocationDelta).filter(
        TipAllocationDelta.tip_transaction_id.in_(transaction_ids),
        posted,
    )
    for row in corrections:
        received = actual.setdefault(row.tip_transaction_id, {})
        received[row.employee_id] = received.get(row.employee_id, 0) + row.delta_cents
    return actual


def _tally(
    transactions: list[TipTransaction],
    split_for: Callable[[TipTransaction], Optional[dict[int, float]]],
    actual: dict[int, dict[int, int]],
) -> dict[int, _Tally]:
    tallies: dict[int, _Tally] = {}
    for txn in transactions:
        if txn.amount_cents <= 0:
            continue
        split = split_for(txn)
        if not split:
            continue
        expected = calculate_shares(txn.amount_cents, split)
        received = actual.get(txn.id, {})
        # employees credited before but absent from the split now get 0
        employee_ids = list(expected) + [e for e in received if e not in expected]
        for employee_id in employee_ids:
            new = expected.get(employee_id, 0)
            previous = received.get(employee_id, 0)
            tally = tallies.setdefault(employee_id, _Tally())
            tally.previous_cents += previous
            tally.new_cents += new
            if new != previous:
                tally.per_transaction[txn.id] = tally.per_transaction.get(txn.id, 0) + new - previous
    return tallies


def _apply(
    db: Session,
    ledger: TipLedgerPort,
    tallies: dict[int, _Tally],
    *,
    location_id: int,
    manager_id: int,
    adjustment_type: AdjustmentType,
    reason: str,
    scope: dict,
    after_extra: Optional[dict] = None,
    memo: str,
    order_id: Optional[str] = None,
) -> RecalculationResult:
    ordered = [(employee_id, tallies[employee_id]) for employee_id in member_order(tallies)]
    before = {str(e): t.previous_cents for e, t in ordered}
    after = {str(e): t.new_cents for e, t in ordered}
    changed = [(e, t) for e, t in ordered if t.delta_cents != 0]

    delta_rows = [
        TipAllocationDelta(tip_transaction_id=txn_id, employee_id=employee_id, delta_cents=cents)
        for employee_id, tally in changed
        for txn_id, cents in tally.per_transaction.items()
        if cents != 0
    ]
    adjustment = create_adjustment(
        db,
        location_id=location_id,
        manager_id=manager_id,
        adjustment_type=adjustment_type,
        reason=reason,
        context={
            "before": {**scope, "allocations": before},
            "after": {**scope, "allocations": after, **(after_extra or {})},
        },
        auto_recalc_ran=True,
        extra_rows=delta_rows,
    )

    commands = [
        PostingCommand.for_delta(
            tally.delta_cents,
            location_id=location_id,
            employee_id=employee_id,
            source_type=LedgerSourceType.ADJUSTMENT,
            adjustment_id=adjustment.id,
            order_id=order_id,
            memo=memo,
        )
        for employee_id, tally in changed
    ]
    run = PostingRun(ledger, adjustment_id=adjustment.id)
    posted = run.run(commands)

    if posted:
        logger.info(
            "adjustment %s posted %d corrective entries (net %d cents)",
            adjustment.id,
            len(posted),
            sum(o.command.signed_cents for o in posted),
        )
    return RecalculationResult(
        adjustment_id=adjustment.id,
        delta_entries=[
            RecalculationDelta(
                employee_id=o.command.employee_id,
                previous_cents=tallies[o.command.employee_id].previous_cents,
                new_cents=tallies[o.command.employee_id].new_cents,
                delta_cents=tallies[o.command.employee_id].delta_cents,
                ledger_entry_id=o.ledger_entry_id,
            )
            for o in posted
        ],
    )


def recalculate_group_allocations(
    db: Session,
    ledger: TipLedgerPort,
    *,
    location_id: int,
    manager_id: int,
    group_id: int,
    reason: str,
    segment_id: Optional[int] = None,
) -> RecalculationResult:
    """Bring group members' credits in line with each segment's current split."""
    group = (
        db.query(TipGroup)
        .filter(TipGroup.id == group_id, TipGroup.active_only())
        .first()
    )
    if group is None:
        raise NotFoundError(f"tip group {group_id} not found", reason="tip_group_not_found")

    segments = db.query(TipGroupSegment).filter(
        TipGroupSegment.group_id == group_id, TipGroupSegment.active_only()
    )
    if segment_id is not None:
        segments = segments.filter(TipGroupSegment.id == segment_id)
    segment_ids = [segment.id for segment in segments]
    if segment_id is not None and not segment_ids:
        raise NotFoundError(
            f"segment {segment_id} not found in tip group {group_id}", reason="tip_group_segment_not_found"
        )
    splits = current_segment_splits(db, segment_ids)

    transactions = db.query(TipTransaction).filter(
        TipTransaction.tip_group_id == group_id, TipTransaction.active_only()
    )
    if segment_id is not None:
        transactions = transactions.filter(TipTransaction.segment_id == segment_id)
    transactions = transactions.order_by(TipTransaction.collected_at, TipTransaction.id).all()

    actual = _actual_by_transaction(db, [t.id for t in transactions], TIP_DISTRIBUTION_SOURCES)
    tallies = _tally(transactions, lambda txn: splits.get(txn.segment_id), actual)

    scope = {"groupId": group_id}
    if segment_id is not None:
        scope["segmentId"] = segment_id
    return _apply(
        db,
        ledger,
        tallies,
        location_id=location_id,
        manager_id=manager_id,
        adjustment_type=AdjustmentType.GROUP_MEMBERSHIP,
        reason=reason,
        scope=scope,
        memo=f"Group recalculation (group {group_id}): {reason}",
    )


def recalculate_order_allocations(
    db: Session,
    ledger: TipLedgerPort,
    *,
    location_id: int,
    manager_id: int,
    order_id: str,
    reason: str,
) -> RecalculationResult:
    """Bring direct-tip credits on an order in line with its active ownership."""
    active = get_active_ownership(db, order_id)
    if active is None or not active.owners:
        raise PreconditionFailedError(
            f"order {order_id} has no active ownership", reason="no_active_ownership"
        )
    owner_split = parse_split({owner.employee_id: owner.share_percent / 100 for owner in active.owners})

    transactions = (
        db.query(TipTransaction)
        .filter(TipTransaction.order_id == order_id, TipTransaction.active_only())
        .order_by(TipTransaction.collected_at, TipTransaction.id)
        .all()
    )
    actual = _actual_by_transaction(
        db,
        [t.id for t in transactions],
        (LedgerSourceType.DIRECT_TIP.value,),
        order_id=order_id,
    )
    tallies = _tally(transactions, lambda txn: owner_split, actual)

    return _apply(
        db,
        ledger,
        tallies,
        location_id=location_id,
        manager_id=manager_id,
        adjustment_type=AdjustmentType.OWNERSHIP_SPLIT,
        reason=reason,
        scope={"orderId": order_id},
        after_extra={"ownerSplits": {str(e): owner_split[e] for e in member_order(owner_split)}},
        memo=f"Order ownership recalculation: {reason}",
        order_id=order_id,
    )
