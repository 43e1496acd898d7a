from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional, Union

from sqlalchemy.orm import Session

from tipbank.ledger import TipLedgerPort
from tipbank.models import TipAdjustment
from tipbank.postings import PostingCommand, PostingRun
from tipbank.schemas import (
    AdjustmentContext,
    AdjustmentEntry,
    AdjustmentResult,
    AdjustmentType,
    EmployeeDelta,
    LedgerSourceType,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def create_adjustment(
    db: Session,
    *,
    location_id: int,
    manager_id: int,
    adjustment_type: AdjustmentType,
    reason: str,
    context: dict,
    auto_recalc_ran: bool,
    extra_rows: Iterable = (),
) -> TipAdjustment:
    """Insert one audit record (plus any rows tied to it) and commit."""
    adjustment = TipAdjustment(
        location_id=location_id,
        created_by_id=manager_id,
        reason=reason,
        adjustment_type=AdjustmentType(adjustment_type).value,
        context_json=context,
        auto_recalc_ran=auto_recalc_ran,
        created_at=_now(),
    )
    db.add(adjustment)
    db.flush()
    for row in extra_rows:
        row.adjustment_id = adjustment.id
        db.add(row)
    db.commit()
    logger.info(
        "tip adjustment %s (%s) created by %s: %s",
        adjustment.id,
        adjustment.adjustment_type,
        manager_id,
        reason,
    )
    return adjustment


def perform_tip_adjustment(
    db: Session,
    ledger: TipLedgerPort,
    *,
    location_id: int,
    manager_id: int,
    reason: str,
    context: Optional[Union[AdjustmentContext, dict]] = None,
    employee_deltas: Optional[list[EmployeeDelta]] = None,
    adjustment_type: AdjustmentType = AdjustmentType.MANUAL_OVERRIDE,
) -> AdjustmentResult:
    """Apply manager-specified deltas directly.

    The adjustment record is written first, even with no deltas, so a
    reason-only correction still leaves an audit trail. Each nonzero delta
    becomes one CREDIT or DEBIT, posted in the order given. Nothing is
    recomputed or compared against expected state.
    """
    if context is None:
        context = AdjustmentContext()
    elif isinstance(context, dict):
        context = AdjustmentContext.model_validate(context)

    adjustment = create_adjustment(
        db,
        location_id=location_id,
        manager_id=manager_id,
        adjustment_type=adjustment_type,
        reason=reason,
        context=context.model_dump(mode="json"),
        auto_recalc_ran=False,
    )

    commands = [
        PostingCommand.for_delta(
            delta.delta_cents,
            location_id=location_id,
            employee_id=delta.employee_id,
            source_type=LedgerSourceType.ADJUSTMENT,
            adjustment_id=adjustment.id,
            memo=f"Manager adjustment: {reason}",
        )
        for delta in employee_deltas or []
        if delta.delta_cents != 0
    ]
    run = PostingRun(ledger, adjustment_id=adjustment.id)
    posted = run.run(commands)

    return AdjustmentResult(
        adjustment_id=adjustment.id,
        adjustment_type=AdjustmentType(adjustment_type),
        reason=reason,
        auto_recalc_ran=False,
        delta_entries=[
            AdjustmentEntry(
                employee_id=o.command.employee_id,
                type=o.command.entry_type,
                amount_cents=o.command.amount_cents,
                ledger_entry_id=o.ledger_entry_id,
            )
            for o in posted
        ],
    )
