from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from tipbank.errors import InvalidSplitError
from tipbank.models import OrderOwnership, OrderOwnershipEntry

logger = logging.getLogger(__name__)


@dataclass
class ActiveOwnership:
    ownership: OrderOwnership
    owners: list[OrderOwnershipEntry]

    def as_dict(self) -> dict:
        return {
            "ownership_id": self.ownership.id,
            "order_id": self.ownership.order_id,
            "owners": [
                {"employee_id": owner.employee_id, "share_percent": owner.share_percent}
                for owner in self.owners
            ],
        }


def _now() -> datetime:
    return datetime.now(timezone.utc)


def build_even_percents(count: int) -> list[float]:
    """Equal percentages with two decimals; the last one absorbs the remainder.

    ``build_even_percents(3) == [33.33, 33.33, 33.34]``
    """
    if count <= 0:
        return []
    if count == 1:
        return [100.0]
    base = math.floor(10000 / count) / 100
    percents = [base] * (count - 1)
    percents.append(round(100 - base * (count - 1), 2))
    return percents


def get_active_ownership(db: Session, order_id: str) -> Optional[ActiveOwnership]:
    ownership = (
        db.query(OrderOwnership)
        .filter(
            OrderOwnership.order_id == order_id,
            OrderOwnership.is_active.is_(True),
            OrderOwnership.active_only(),
        )
        .order_by(OrderOwnership.created_at.desc(), OrderOwnership.id.desc())
        .first()
    )
    if ownership is None:
        return None
    owners = (
        db.query(OrderOwnershipEntry)
        .filter(OrderOwnershipEntry.ownership_id == ownership.id)
        .order_by(OrderOwnershipEntry.id)
        .all()
    )
    return ActiveOwnership(ownership=ownership, owners=owners)


def set_order_owners(
    db: Session,
    *,
    location_id: int,
    order_id: str,
    created_by_id: int,
    employee_ids: list[int],
    share_percents: Optional[list[float]] = None,
) -> ActiveOwnership:
    """Replace the order's active ownership with a new record.

    Previous records are deactivated, not edited, so the ownership history of
    the order stays readable. Without explicit percents the owners split
    evenly.
    """
    if not employee_ids:
        raise InvalidSplitError("an ownership record needs at least one owner")
    if len(set(employee_ids)) != len(employee_ids):
        raise InvalidSplitError("duplicate owner in ownership record")
    if share_percents is None:
        share_percents = build_even_percents(len(employee_ids))
    if len(share_percents) != len(employee_ids):
        raise InvalidSplitError("share_percents must match employee_ids")
    if any(p < 0 or not math.isfinite(p) for p in share_percents):
        raise InvalidSplitError("share percents must be non-negative")
    if abs(sum(share_percents) - 100) > 0.01:
        raise InvalidSplitError("share percents must sum to 100")

    now = _now()
    previous = db.query(OrderOwnership).filter(
        OrderOwnership.order_id == order_id, OrderOwnership.is_active.is_(True)
    )
    for row in previous:
        row.is_active = False
        row.updated_at = now

    ownership = OrderOwnership(
        location_id=location_id,
        order_id=order_id,
        created_by_id=created_by_id,
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    db.add(ownership)
    db.flush()
    owners = [
        OrderOwnershipEntry(ownership_id=ownership.id, employee_id=employee_id, share_percent=percent)
        for employee_id, percent in zip(employee_ids, share_percents)
    ]
    db.add_all(owners)
    db.commit()
    logger.info("order %s ownership replaced: %s", order_id, dict(zip(employee_ids, share_percents)))
    return ActiveOwnership(ownership=ownership, owners=owners)
