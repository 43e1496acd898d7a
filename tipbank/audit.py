from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from tipbank.models import TipAdjustment
from tipbank.schemas import AdjustmentPage, AdjustmentRecord, AdjustmentType


def _to_record(row: TipAdjustment) -> AdjustmentRecord:
    return AdjustmentRecord(
        id=row.id,
        location_id=row.location_id,
        created_by_id=row.created_by_id,
        reason=row.reason,
        adjustment_type=row.adjustment_type,
        context=row.context_json or {},
        auto_recalc_ran=row.auto_recalc_ran,
        created_at=row.created_at,
    )


def get_adjustment_history(
    db: Session,
    *,
    location_id: Optional[int] = None,
    adjustment_type: Optional[AdjustmentType] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = 50,
    offset: int = 0,
) -> AdjustmentPage:
    """Newest-first page of adjustments plus the total matching count.

    ``date_from`` and ``date_to`` are both inclusive.
    """
    query = db.query(TipAdjustment).filter(TipAdjustment.active_only())
    if location_id is not None:
        query = query.filter(TipAdjustment.location_id == location_id)
    if adjustment_type is not None:
        query = query.filter(TipAdjustment.adjustment_type == AdjustmentType(adjustment_type).value)
    if date_from is not None:
        query = query.filter(TipAdjustment.created_at >= date_from)
    if date_to is not None:
        query = query.filter(TipAdjustment.created_at <= date_to)

    total = query.count()
    rows = (
        query.order_by(TipAdjustment.created_at.desc(), TipAdjustment.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return AdjustmentPage(adjustments=[_to_record(row) for row in rows], total=total)
