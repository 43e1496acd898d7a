from datetime import timedelta

import pytest
from sqlalchemy import func

from conftest import T0, FlakyLedger
from tipbank.allocation import allocate_tip
from tipbank.errors import NotFoundError, PartialCorrectionError, PreconditionFailedError
from tipbank.groups import revise_segment_split, start_tip_group
from tipbank.models import TipAdjustment, TipGroupSegment, TipLedgerEntry
from tipbank.ownership import set_order_owners
from tipbank.reconcile import recalculate_group_allocations, recalculate_order_allocations
from tipbank.schemas import AdjustmentType, CollectionSource, EntryType, LedgerSourceType
from tipbank.tip_settings import TipBankSettings


def _credited_group(db, ledger, location, staff):
    """A 1000-cent tip credited 50/30/20 across a three member group."""
    a, b, c = staff
    group = start_tip_group(db, location_id=location.id, created_by_id=a, member_ids=[b, c], started_at=T0)
    segment_id = _segment_id(db, group.id)
    revise_segment_split(db, segment_id=segment_id, split={a: 0.5, b: 0.3, c: 0.2}, reason="agreed split")
    result = allocate_tip(
        db,
        ledger,
        location_id=location.id,
        order_id="ord-100",
        payment_id="pay-100",
        amount_cents=1000,
        primary_employee_id=a,
        source=CollectionSource.CARD,
        settings=TipBankSettings(),
        collected_at=T0 + timedelta(hours=1),
    )
    assert {x.employee_id: x.amount_cents for x in result.allocations} == {a: 500, b: 300, c: 200}
    return group, segment_id


def _segment_id(db, group_id):
    return db.query(TipGroupSegment.id).filter(TipGroupSegment.group_id == group_id).scalar()


def _balances(ledger, staff):
    return [ledger.get_balance(e).current_balance_cents for e in staff]


def test_group_reconfiguration_claws_back_removed_member(db, ledger, location, staff) -> None:
    a, b, c = staff
    group, segment_id = _credited_group(db, ledger, location, staff)
    revise_segment_split(db, segment_id=segment_id, split={a: 0.6, b: 0.4}, reason="Cy never clocked in")

    result = recalculate_group_allocations(
        db, ledger, location_id=location.id, manager_id=a, group_id=group.id, reason="Cy never clocked in"
    )

    deltas = {d.employee_id: d for d in result.delta_entries}
    assert {e: d.delta_cents for e, d in deltas.items()} == {a: 100, b: 100, c: -200}
    assert deltas[c].previous_cents == 200
    assert deltas[c].new_cents == 0
    assert sum(d.delta_cents for d in result.delta_entries) == 0
    assert _balances(ledger, staff) == [600, 400, 0]

    entries = db.query(TipLedgerEntry).filter(TipLedgerEntry.adjustment_id == result.adjustment_id).all()
    assert {(e.employee_id, e.type, e.amount_cents) for e in entries} == {
        (a, EntryType.CREDIT.value, 100),
        (b, EntryType.CREDIT.value, 100),
        (c, EntryType.DEBIT.value, 200),
    }
    assert all(e.source_type == LedgerSourceType.ADJUSTMENT.value for e in entries)

    adjustment = db.get(TipAdjustment, result.adjustment_id)
    assert adjustment.adjustment_type == AdjustmentType.GROUP_MEMBERSHIP.value
    assert adjustment.auto_recalc_ran is True
    assert adjustment.context_json["before"]["allocations"] == {str(a): 500, str(b): 300, str(c): 200}
    assert adjustment.context_json["after"]["allocations"] == {str(a): 600, str(b): 400, str(c): 0}


def test_second_group_recalculation_posts_nothing(db, ledger, location, staff) -> None:
    a, b, _ = staff
    group, segment_id = _credited_group(db, ledger, location, staff)
    revise_segment_split(db, segment_id=segment_id, split={a: 0.6, b: 0.4}, reason="fix")
    recalculate_group_allocations(db, ledger, location_id=location.id, manager_id=a, group_id=group.id, reason="fix")
    entry_count = db.query(func.count(TipLedgerEntry.id)).scalar()

    again = recalculate_group_allocations(
        db, ledger, location_id=location.id, manager_id=a, group_id=group.id, reason="fix"
    )

    assert again.delta_entries == []
    assert db.query(func.count(TipLedgerEntry.id)).scalar() == entry_count
    assert _balances(ledger, staff) == [600, 400, 0]


def test_unchanged_split_still_records_an_adjustment(db, ledger, location, staff) -> None:
    group, _ = _credited_group(db, ledger, location, staff)

    result = recalculate_group_allocations(
        db, ledger, location_id=location.id, manager_id=staff[0], group_id=group.id, reason="review"
    )

    assert result.delta_entries == []
    assert db.get(TipAdjustment, result.adjustment_id) is not None


def test_segment_scoped_recalculation(db, ledger, location, staff) -> None:
    a, b, _ = staff
    group, segment_id = _credited_group(db, ledger, location, staff)
    revise_segment_split(db, segment_id=segment_id, split={a: 0.6, b: 0.4}, reason="fix")

    result = recalculate_group_allocations(
        db,
        ledger,
        location_id=location.id,
        manager_id=a,
        group_id=group.id,
        reason="fix",
        segment_id=segment_id,
    )

    assert sum(d.delta_cents for d in result.delta_entries) == 0
    adjustment = db.get(TipAdjustment, result.adjustment_id)
    assert adjustment.context_json["before"]["segmentId"] == segment_id


def test_unknown_group_or_segment_is_not_found(db, ledger, location, staff) -> None:
    group, _ = _credited_group(db, ledger, location, staff)
    with pytest.raises(NotFoundError):
        recalculate_group_allocations(db, ledger, location_id=location.id, manager_id=1, group_id=999, reason="x")
    with pytest.raises(NotFoundError):
        recalculate_group_allocations(
            db, ledger, location_id=location.id, manager_id=1, group_id=group.id, reason="x", segment_id=999
        )


def test_interrupted_recalculation_resumes_without_double_posting(db, ledger, location, staff) -> None:
    a, b, c = staff
    group, segment_id = _credited_group(db, ledger, location, staff)
    revise_segment_split(db, segment_id=segment_id, split={a: 0.6, b: 0.4}, reason="fix")

    with pytest.raises(PartialCorrectionError) as excinfo:
        recalculate_group_allocations(
            db, FlakyLedger(ledger, fail_on=2), location_id=location.id, manager_id=a, group_id=group.id, reason="fix"
        )
    statuses = [o["status"] for o in excinfo.value.outcomes]
    assert statuses == ["posted", "failed", "not_attempted"]
    assert excinfo.value.adjustment_id is not None
    assert _balances(ledger, staff) == [600, 300, 200]

    retry = recalculate_group_allocations(
        db, ledger, location_id=location.id, manager_id=a, group_id=group.id, reason="fix (retry)"
    )

    assert {d.employee_id: d.delta_cents for d in retry.delta_entries} == {b: 100, c: -200}
    assert _balances(ledger, staff) == [600, 400, 0]


def _direct_tip(db, ledger, location, primary, order_id="ord-7", payment_id="pay-7", amount=1000):
    return allocate_tip(
        db,
        ledger,
        location_id=location.id,
        order_id=order_id,
        payment_id=payment_id,
        amount_cents=amount,
        primary_employee_id=primary,
        source=CollectionSource.CASH,
        settings=TipBankSettings(),
        collected_at=T0,
    )


def test_order_recalculation_follows_new_owners(db, ledger, location, staff) -> None:
    a, b, _ = staff
    _direct_tip(db, ledger, location, a)
    set_order_owners(db, location_id=location.id, order_id="ord-7", created_by_id=a, employee_ids=[a, b])

    result = recalculate_order_allocations(
        db, ledger, location_id=location.id, manager_id=a, order_id="ord-7", reason="Ben shared the table"
    )

    assert {d.employee_id: d.delta_cents for d in result.delta_entries} == {a: -500, b: 500}
    assert _balances(ledger, staff)[:2] == [500, 500]
    adjustment = db.get(TipAdjustment, result.adjustment_id)
    assert adjustment.adjustment_type == AdjustmentType.OWNERSHIP_SPLIT.value
    assert adjustment.context_json["after"]["ownerSplits"] == {str(a): 0.5, str(b): 0.5}
    entries = db.query(TipLedgerEntry).filter(TipLedgerEntry.adjustment_id == result.adjustment_id).all()
    assert {e.order_id for e in entries} == {"ord-7"}

    again = recalculate_order_allocations(
        db, ledger, location_id=location.id, manager_id=a, order_id="ord-7", reason="Ben shared the table"
    )
    assert again.delta_entries == []


def test_order_without_ownership_fails_precondition(db, ledger, location, staff) -> None:
    _direct_tip(db, ledger, location, staff[0])
    with pytest.raises(PreconditionFailedError) as excinfo:
        recalculate_order_allocations(
            db, ledger, location_id=location.id, manager_id=staff[0], order_id="ord-7", reason="x"
        )
    assert excinfo.value.reason == "no_active_ownership"


def test_group_without_a_live_segment_is_skipped(db, ledger, location, staff) -> None:
    group, segment_id = _credited_group(db, ledger, location, staff)
    db.get(TipGroupSegment, segment_id).soft_delete()
    db.commit()

    result = recalculate_group_allocations(
        db, ledger, location_id=location.id, manager_id=staff[0], group_id=group.id, reason="segment removed"
    )

    assert result.delta_entries == []
    assert _balances(ledger, staff) == [500, 300, 200]
