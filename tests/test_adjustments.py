from datetime import timedelta

from sqlalchemy import func

from conftest import T0
from tipbank.adjustments import perform_tip_adjustment
from tipbank.audit import get_adjustment_history
from tipbank.models import TipAdjustment, TipLedgerEntry
from tipbank.schemas import AdjustmentContext, AdjustmentType, EmployeeDelta, EntryType


def test_reason_only_adjustment_leaves_audit_record(db, ledger, location, staff) -> None:
    result = perform_tip_adjustment(
        db,
        ledger,
        location_id=location.id,
        manager_id=staff[0],
        reason="audit correction, no monetary change",
        employee_deltas=[],
    )

    assert result.delta_entries == []
    assert result.auto_recalc_ran is False
    assert db.query(func.count(TipAdjustment.id)).scalar() == 1
    assert db.query(func.count(TipLedgerEntry.id)).scalar() == 0


def test_deltas_post_credits_and_debits_in_order(db, ledger, location, staff) -> None:
    a, b, c = staff
    result = perform_tip_adjustment(
        db,
        ledger,
        location_id=location.id,
        manager_id=a,
        reason="clock fix for Ben",
        context={"before": {str(b): 0}, "after": {str(b): 250}},
        employee_deltas=[
            EmployeeDelta(employee_id=b, delta_cents=250),
            EmployeeDelta(employee_id=c, delta_cents=0),
            EmployeeDelta(employee_id=a, delta_cents=-100),
        ],
        adjustment_type=AdjustmentType.CLOCK_FIX,
    )

    assert [(e.employee_id, e.type, e.amount_cents) for e in result.delta_entries] == [
        (b, EntryType.CREDIT, 250),
        (a, EntryType.DEBIT, 100),
    ]
    assert ledger.get_balance(b).current_balance_cents == 250
    assert ledger.get_balance(a).current_balance_cents == -100

    adjustment = db.get(TipAdjustment, result.adjustment_id)
    assert adjustment.adjustment_type == "clock_fix"
    assert adjustment.context_json == {"before": {str(b): 0}, "after": {str(b): 250}}
    entries = db.query(TipLedgerEntry).filter(TipLedgerEntry.adjustment_id == result.adjustment_id).all()
    assert len(entries) == 2


def _adjust(db, ledger, location, manager_id, adjustment_type, reason):
    return perform_tip_adjustment(
        db,
        ledger,
        location_id=location.id,
        manager_id=manager_id,
        reason=reason,
        context=AdjustmentContext(),
        adjustment_type=adjustment_type,
    )


def test_history_is_newest_first_and_filterable(db, ledger, location, staff) -> None:
    first = _adjust(db, ledger, location, staff[0], AdjustmentType.MANUAL_OVERRIDE, "one")
    second = _adjust(db, ledger, location, staff[0], AdjustmentType.CLOCK_FIX, "two")
    third = _adjust(db, ledger, location, staff[1], AdjustmentType.MANUAL_OVERRIDE, "three")

    page = get_adjustment_history(db, location_id=location.id)
    assert page.total == 3
    assert [a.id for a in page.adjustments] == [third.adjustment_id, second.adjustment_id, first.adjustment_id]

    overrides = get_adjustment_history(db, adjustment_type=AdjustmentType.MANUAL_OVERRIDE)
    assert [a.reason for a in overrides.adjustments] == ["three", "one"]

    paged = get_adjustment_history(db, limit=1, offset=1)
    assert paged.total == 3
    assert [a.reason for a in paged.adjustments] == ["two"]


def test_history_date_range(db, ledger, location, staff) -> None:
    _adjust(db, ledger, location, staff[0], AdjustmentType.MANUAL_OVERRIDE, "one")

    assert get_adjustment_history(db, date_from=T0).total == 1
    assert get_adjustment_history(db, date_to=T0 - timedelta(days=1)).total == 0
    assert get_adjustment_history(db, location_id=location.id + 1).total == 0
