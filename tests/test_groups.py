from datetime import timedelta

import pytest

from conftest import T0
from tipbank.errors import InvalidSplitError, NotFoundError, PreconditionFailedError
from tipbank.groups import (
    add_group_member,
    build_equal_split,
    build_weighted_split,
    current_members,
    current_segment_splits,
    find_segment_for_timestamp,
    remove_group_member,
    revise_segment_split,
    start_tip_group,
)
from tipbank.models import TipGroup, TipGroupSegment, TipGroupSegmentSplit


def test_equal_split_sums_to_one() -> None:
    assert build_equal_split([1, 2, 3]) == {1: 0.3333, 2: 0.3333, 3: 0.3334}
    assert build_equal_split([5]) == {5: 1.0}
    assert build_equal_split([]) == {}


def test_weighted_split_follows_role_weights() -> None:
    assert build_weighted_split({1: 2.0, 2: 1.0, 3: 1.0}) == {1: 0.5, 2: 0.25, 3: 0.25}
    assert build_weighted_split({1: 0.0, 2: 0.0}) == {1: 0.5, 2: 0.5}


def test_membership_change_closes_segment_and_opens_new_one(db, location, staff) -> None:
    a, b, c = staff
    group = start_tip_group(db, location_id=location.id, created_by_id=a, member_ids=[b], started_at=T0)
    joined_at = T0 + timedelta(hours=2)

    segment = add_group_member(db, group_id=group.id, employee_id=c, at=joined_at)

    segments = db.query(TipGroupSegment).order_by(TipGroupSegment.id).all()
    assert len(segments) == 2
    assert segments[0].ended_at is not None
    assert segments[1].id == segment.id
    assert segment.member_count == 3
    assert current_members(db, group.id) == [a, b, c]
    assert find_segment_for_timestamp(db, group.id, T0 + timedelta(hours=1)).id == segments[0].id
    assert find_segment_for_timestamp(db, group.id, T0 + timedelta(hours=3)).id == segment.id
    assert find_segment_for_timestamp(db, group.id, T0 - timedelta(hours=1)) is None


def test_role_weighted_group_uses_employee_weights(db, location, staff) -> None:
    a, b, c = staff
    group = start_tip_group(
        db, location_id=location.id, created_by_id=a, member_ids=[b, c], split_mode="role_weighted", started_at=T0
    )
    segment = db.query(TipGroupSegment).filter(TipGroupSegment.group_id == group.id).one()
    assert current_segment_splits(db, [segment.id])[segment.id] == {a: 0.5, b: 0.25, c: 0.25}


def test_unknown_split_mode_is_rejected(db, location, staff) -> None:
    with pytest.raises(InvalidSplitError):
        start_tip_group(db, location_id=location.id, created_by_id=staff[0], member_ids=[], split_mode="by_height")


def test_duplicate_and_missing_members(db, location, staff) -> None:
    a, b, c = staff
    group = start_tip_group(db, location_id=location.id, created_by_id=a, member_ids=[b], started_at=T0)
    with pytest.raises(PreconditionFailedError):
        add_group_member(db, group_id=group.id, employee_id=b)
    with pytest.raises(PreconditionFailedError):
        remove_group_member(db, group_id=group.id, employee_id=c)
    with pytest.raises(NotFoundError):
        add_group_member(db, group_id=999, employee_id=c)


def test_last_member_leaving_closes_group(db, location, staff) -> None:
    a, b, _ = staff
    group = start_tip_group(db, location_id=location.id, created_by_id=a, member_ids=[b], started_at=T0)

    assert remove_group_member(db, group_id=group.id, employee_id=b, at=T0 + timedelta(hours=1)) is not None
    assert remove_group_member(db, group_id=group.id, employee_id=a, at=T0 + timedelta(hours=2)) is None

    closed = db.get(TipGroup, group.id)
    assert closed.status == "closed"
    assert closed.ended_at is not None
    assert current_members(db, group.id) == []
    with pytest.raises(PreconditionFailedError):
        add_group_member(db, group_id=group.id, employee_id=b)


def test_split_revision_appends_and_becomes_current(db, location, staff) -> None:
    a, b, _ = staff
    group = start_tip_group(db, location_id=location.id, created_by_id=a, member_ids=[b], started_at=T0)
    segment = db.query(TipGroupSegment).filter(TipGroupSegment.group_id == group.id).one()

    revise_segment_split(db, segment_id=segment.id, split={str(a): 0.7, str(b): 0.3}, reason="Ben left early")

    assert db.query(TipGroupSegmentSplit).filter(TipGroupSegmentSplit.segment_id == segment.id).count() == 2
    assert current_segment_splits(db, [segment.id])[segment.id] == {a: 0.7, b: 0.3}
    with pytest.raises(InvalidSplitError):
        revise_segment_split(db, segment_id=segment.id, split={a: -1}, reason="bad")
    with pytest.raises(InvalidSplitError):
        revise_segment_split(db, segment_id=segment.id, split={}, reason="empty")
    with pytest.raises(NotFoundError):
        revise_segment_split(db, segment_id=999, split={a: 1.0}, reason="missing")
