import pytest

from conftest import FlakyLedger
from tipbank.errors import PartialCorrectionError
from tipbank.ledger import balance_from_entries
from tipbank.models import TipLedger, TipLedgerEntry
from tipbank.postings import PostingCommand, PostingRun, PostingStatus
from tipbank.schemas import EntryType, LedgerSourceType


def _command(employee_id: int, delta: int) -> PostingCommand:
    return PostingCommand.for_delta(
        delta,
        location_id=1,
        employee_id=employee_id,
        source_type=LedgerSourceType.ADJUSTMENT,
        memo="test",
    )


def test_post_entry_updates_cached_balance(db, ledger, location, staff) -> None:
    a = staff[0]
    ledger.post_entry(
        location_id=location.id,
        employee_id=a,
        amount_cents=700,
        entry_type=EntryType.CREDIT,
        source_type=LedgerSourceType.DIRECT_TIP,
    )
    posted = ledger.post_entry(
        location_id=location.id,
        employee_id=a,
        amount_cents=250,
        entry_type=EntryType.DEBIT,
        source_type=LedgerSourceType.ADJUSTMENT,
    )

    assert posted.amount_cents == 250
    assert ledger.get_balance(a).current_balance_cents == 450
    assert balance_from_entries(db, a) == 450


def test_post_entry_rejects_non_positive_amounts(ledger, location, staff) -> None:
    with pytest.raises(ValueError):
        ledger.post_entry(
            location_id=location.id,
            employee_id=staff[0],
            amount_cents=0,
            entry_type=EntryType.CREDIT,
            source_type=LedgerSourceType.DIRECT_TIP,
        )


def test_failed_post_leaves_no_pending_ledger_row(db, ledger, location, staff) -> None:
    with pytest.raises(ValueError):
        ledger.post_entry(
            location_id=location.id,
            employee_id=staff[0],
            amount_cents=100,
            entry_type=EntryType.CREDIT,
            source_type="BOGUS",
        )

    assert db.query(TipLedger).count() == 0
    assert db.query(TipLedgerEntry).count() == 0
    assert ledger.get_balance(staff[0]).current_balance_cents == 0


def test_unknown_employee_has_zero_balance(ledger) -> None:
    assert ledger.get_balance(42).current_balance_cents == 0


def test_for_delta_picks_entry_type_from_sign() -> None:
    credit = _command(1, 120)
    debit = _command(1, -45)
    assert (credit.entry_type, credit.amount_cents, credit.signed_cents) == (EntryType.CREDIT, 120, 120)
    assert (debit.entry_type, debit.amount_cents, debit.signed_cents) == (EntryType.DEBIT, 45, -45)
    with pytest.raises(ValueError):
        _command(1, 0)


def test_run_posts_every_command(ledger, location, staff) -> None:
    run = PostingRun(ledger)
    posted = run.run([_command(staff[0], 100), _command(staff[1], -30)])
    assert [o.status for o in posted] == [PostingStatus.POSTED, PostingStatus.POSTED]
    assert all(o.ledger_entry_id for o in posted)


def test_failed_run_reports_every_outcome(ledger, location, staff) -> None:
    a, b, c = staff
    run = PostingRun(FlakyLedger(ledger, fail_on=2), adjustment_id=17)

    with pytest.raises(PartialCorrectionError) as excinfo:
        run.run([_command(a, 100), _command(b, 200), _command(c, -300)])

    error = excinfo.value
    assert error.adjustment_id == 17
    assert [(o["employee_id"], o["status"]) for o in error.outcomes] == [
        (a, "posted"),
        (b, "failed"),
        (c, "not_attempted"),
    ]
    assert "ledger unavailable" in error.outcomes[1]["error"]
    assert isinstance(error.__cause__, RuntimeError)
    assert ledger.get_balance(a).current_balance_cents == 100
    assert ledger.get_balance(b).current_balance_cents == 0
