"""Tip groups and their time-boxed membership segments.

A membership change never edits a segment: the open segment is closed and a
new one starts with a rebuilt split. A retroactive split correction on an
existing segment appends a new ``TipGroupSegmentSplit`` revision, and the
latest revision is what allocation and reconciliation use.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from tipbank.errors import InvalidSplitError, NotFoundError, PreconditionFailedError
from tipbank.models import Employee, TipGroup, TipGroupSegment, TipGroupSegmentSplit
from tipbank.shares import member_order, parse_split

logger = logging.getLogger(__name__)

SPLIT_MODES = ("equal", "role_weighted")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def build_equal_split(member_ids: list[int]) -> dict[int, float]:
    """Equal four-decimal fractions; the last member absorbs the remainder."""
    split: dict[int, float] = {}
    if not member_ids:
        return split
    ordered = member_order(dict.fromkeys(member_ids))
    per_member = math.floor(10000 / len(ordered)) / 10000
    allocated = 0.0
    for index, member_id in enumerate(ordered):
        if index == len(ordered) - 1:
            split[member_id] = round(1 - allocated, 4)
        else:
            split[member_id] = per_member
            allocated += per_member
    return split


def build_weighted_split(weights: dict[int, float]) -> dict[int, float]:
    """Fractions proportional to role weight; all-zero weights split equally."""
    if not weights:
        return {}
    total = sum(weights.values())
    if total <= 0:
        return build_equal_split(list(weights))
    ordered = member_order(weights)
    split: dict[int, float] = {}
    allocated = 0.0
    for index, member_id in enumerate(ordered):
        if index == len(ordered) - 1:
            split[member_id] = round(1 - allocated, 4)
        else:
            share = math.floor(weights[member_id] / total * 10000) / 10000
            split[member_id] = share
            allocated += share
    return split


def current_segment_splits(db: Session, segment_ids: list[int]) -> dict[int, dict[int, float]]:
    """Latest split revision per segment, validated."""
    if not segment_ids:
        return {}
    revisions = (
        db.query(TipGroupSegmentSplit)
        .filter(TipGroupSegmentSplit.segment_id.in_(segment_ids))
        .order_by(TipGroupSegmentSplit.segment_id, TipGroupSegmentSplit.id)
        .all()
    )
    splits: dict[int, dict[int, float]] = {}
    for revision in revisions:
        splits[revision.segment_id] = parse_split(revision.split_json)
    return splits


def _split_for_members(db: Session, group: TipGroup, member_ids: list[int]) -> dict[int, float]:
    if group.split_mode == "role_weighted" and member_ids:
        employees = db.query(Employee).filter(Employee.id.in_(member_ids)).all()
        weights = {employee.id: float(employee.tip_weight or 1.0) for employee in employees}
        for member_id in member_ids:
            weights.setdefault(member_id, 1.0)
        return build_weighted_split(weights)
    return build_equal_split(member_ids)


def _open_segment(db: Session, group_id: int) -> Optional[TipGroupSegment]:
    return (
        db.query(TipGroupSegment)
        .filter(
            TipGroupSegment.group_id == group_id,
            TipGroupSegment.ended_at.is_(None),
            TipGroupSegment.active_only(),
        )
        .order_by(TipGroupSegment.started_at.desc(), TipGroupSegment.id.desc())
        .first()
    )


def _append_split(
    db: Session,
    segment: TipGroupSegment,
    split: dict[int, float],
    reason: Optional[str],
    created_by_id: Optional[int],
) -> TipGroupSegmentSplit:
    revision = TipGroupSegmentSplit(
        segment_id=segment.id,
        split_json={str(member_id): split[member_id] for member_id in member_order(split)},
        reason=reason,
        created_by_id=created_by_id,
        created_at=_now(),
    )
    db.add(revision)
    return revision


def _start_segment(
    db: Session,
    group: TipGroup,
    member_ids: list[int],
    created_by_id: Optional[int],
    at: datetime,
) -> TipGroupSegment:
    segment = TipGroupSegment(
        location_id=group.location_id,
        group_id=group.id,
        started_at=at,
        member_count=len(member_ids),
        created_at=_now(),
    )
    db.add(segment)
    db.flush()
    _append_split(db, segment, _split_for_members(db, group, member_ids), "membership change", created_by_id)
    return segment


def get_tip_group(db: Session, group_id: int) -> TipGroup:
    group = db.query(TipGroup).filter(TipGroup.id == group_id, TipGroup.active_only()).first()
    if group is None:
        raise NotFoundError(f"tip group {group_id} not found", reason="tip_group_not_found")
    return group


def current_members(db: Session, group_id: int) -> list[int]:
    segment = _open_segment(db, group_id)
    if segment is None:
        return []
    return list(current_segment_splits(db, [segment.id]).get(segment.id, {}))


def start_tip_group(
    db: Session,
    *,
    location_id: int,
    created_by_id: int,
    member_ids: list[int],
    split_mode: str = "equal",
    started_at: Optional[datetime] = None,
) -> TipGroup:
    if split_mode not in SPLIT_MODES:
        raise InvalidSplitError(f"unknown split mode {split_mode}")
    members = list(dict.fromkeys([created_by_id, *member_ids]))
    at = started_at or _now()
    group = TipGroup(
        location_id=location_id,
        created_by_id=created_by_id,
        owner_id=created_by_id,
        status="active",
        split_mode=split_mode,
        started_at=at,
        created_at=_now(),
    )
    db.add(group)
    db.flush()
    _start_segment(db, group, members, created_by_id, at)
    db.commit()
    logger.info("tip group %s started with members %s", group.id, members)
    return group


def _change_membership(
    db: Session,
    group_id: int,
    members: list[int],
    changed_by_id: Optional[int],
    at: Optional[datetime],
) -> TipGroupSegment:
    group = get_tip_group(db, group_id)
    if group.status != "active":
        raise PreconditionFailedError(f"tip group {group_id} is {group.status}", reason="tip_group_closed")
    at = at or _now()
    segment = _open_segment(db, group_id)
    if segment is not None:
        segment.ended_at = at
    new_segment = _start_segment(db, group, members, changed_by_id, at)
    db.commit()
    return new_segment


def add_group_member(
    db: Session,
    *,
    group_id: int,
    employee_id: int,
    changed_by_id: Optional[int] = None,
    at: Optional[datetime] = None,
) -> TipGroupSegment:
    members = current_members(db, group_id)
    if employee_id in members:
        raise PreconditionFailedError(
            f"employee {employee_id} is already in tip group {group_id}", reason="already_member"
        )
    segment = _change_membership(db, group_id, [*members, employee_id], changed_by_id, at)
    logger.info("employee %s joined tip group %s (segment %s)", employee_id, group_id, segment.id)
    return segment


def remove_group_member(
    db: Session,
    *,
    group_id: int,
    employee_id: int,
    changed_by_id: Optional[int] = None,
    at: Optional[datetime] = None,
) -> Optional[TipGroupSegment]:
    """Remove a member; the last member leaving closes the group."""
    members = current_members(db, group_id)
    if employee_id not in members:
        raise PreconditionFailedError(
            f"employee {employee_id} is not in tip group {group_id}", reason="not_a_member"
        )
    remaining = [m for m in members if m != employee_id]
    if not remaining:
        close_tip_group(db, group_id=group_id, at=at)
        return None
    segment = _change_membership(db, group_id, remaining, changed_by_id, at)
    logger.info("employee %s left tip group %s (segment %s)", employee_id, group_id, segment.id)
    return segment


def close_tip_group(db: Session, *, group_id: int, at: Optional[datetime] = None) -> TipGroup:
    group = get_tip_group(db, group_id)
    at = at or _now()
    segment = _open_segment(db, group_id)
    if segment is not None:
        segment.ended_at = at
    group.status = "closed"
    group.ended_at = at
    db.commit()
    logger.info("tip group %s closed", group_id)
    return group


def revise_segment_split(
    db: Session,
    *,
    segment_id: int,
    split: dict,
    reason: str,
    created_by_id: Optional[int] = None,
) -> TipGroupSegmentSplit:
    """Append a corrected split for a segment (for example a missed clock-in).

    Previously credited tips are not touched here; run the group reconciler
    afterwards to post the corrections.
    """
    segment = (
        db.query(TipGroupSegment)
        .filter(TipGroupSegment.id == segment_id, TipGroupSegment.active_only())
        .first()
    )
    if segment is None:
        raise NotFoundError(f"segment {segment_id} not found", reason="tip_group_segment_not_found")
    parsed = parse_split(split)
    if not parsed:
        raise InvalidSplitError("a segment split needs at least one member")
    revision = _append_split(db, segment, parsed, reason, created_by_id)
    db.commit()
    logger.info("segment %s split revised: %s", segment_id, reason)
    return revision


def find_segment_for_timestamp(
    db: Session, group_id: int, timestamp: datetime
) -> Optional[TipGroupSegment]:
    return (
        db.query(TipGroupSegment)
        .filter(
            TipGroupSegment.group_id == group_id,
            TipGroupSegment.active_only(),
            TipGroupSegment.started_at <= timestamp,
            or_(TipGroupSegment.ended_at.is_(None), TipGroupSegment.ended_at > timestamp),
        )
        .order_by(TipGroupSegment.started_at.desc(), TipGroupSegment.id.desc())
        .first()
    )


def find_active_group_for_employee(db: Session, employee_id: int) -> Optional[TipGroup]:
    groups = (
        db.query(TipGroup)
        .filter(TipGroup.status == "active", TipGroup.active_only())
        .order_by(TipGroup.started_at.desc(), TipGroup.id.desc())
        .all()
    )
    for group in groups:
        if employee_id in current_members(db, group.id):
            return group
    return None
