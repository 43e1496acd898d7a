from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from tipbank.adjustments import perform_tip_adjustment
from tipbank.allocation import allocate_tip
from tipbank.audit import get_adjustment_history
from tipbank.chargebacks import handle_tip_chargeback
from tipbank.config import settings
from tipbank.db import SessionLocal
from tipbank.debts import collect_tip_debts, debt_as_dict, list_tip_debts, write_off_tip_debt
from tipbank.errors import (
    InvalidSplitError,
    NotFoundError,
    PartialCorrectionError,
    PreconditionFailedError,
    TipBankError,
)
from tipbank.groups import (
    add_group_member,
    current_members,
    remove_group_member,
    revise_segment_split,
    start_tip_group,
)
from tipbank.ledger import SqlTipLedger, balance_from_entries
from tipbank.locks import target_lock
from tipbank.models import Employee, Location
from tipbank.ownership import set_order_owners
from tipbank.reconcile import recalculate_group_allocations, recalculate_order_allocations
from tipbank.schemas import (
    AdjustmentContext,
    AdjustmentType,
    CollectionSource,
    DebtStatus,
    EmployeeDelta,
)
from tipbank.tip_settings import load_tip_bank_settings

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Tip Bank")


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def _list_meta(limit: int, cursor: Optional[int], next_cursor: Optional[int]) -> dict:
    meta = _meta()
    if next_cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(next_cursor)}
    elif cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(cursor)}
    else:
        meta["page"] = {"limit": limit, "cursor": None}
    return meta


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_ledger(db: Session = Depends(get_db)) -> SqlTipLedger:
    return SqlTipLedger(db)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _http_error(exc: TipBankError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=exc.reason)
    if isinstance(exc, PreconditionFailedError):
        return HTTPException(status_code=409, detail=exc.reason)
    if isinstance(exc, InvalidSplitError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, PartialCorrectionError):
        return HTTPException(
            status_code=500,
            detail={
                "reason": exc.reason,
                "adjustment_id": exc.adjustment_id,
                "postings": exc.outcomes,
                "retry": "re-invoke the same operation",
            },
        )
    return HTTPException(status_code=400, detail=exc.reason)


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


class LocationCreate(BaseModel):
    name: str
    settings: Optional[dict] = None


@app.post("/api/v1/locations", tags=["Locations"])
def create_location(payload: LocationCreate, db: Session = Depends(get_db)) -> dict:
    location = Location(name=payload.name, settings=payload.settings, created_at=_now())
    db.add(location)
    db.commit()
    db.refresh(location)
    return {"data": {"location_id": location.id, "name": location.name}, "meta": _meta()}


@app.get("/api/v1/locations/{location_id}/tip-bank-settings", tags=["Locations"])
def get_tip_bank_settings(location_id: int, db: Session = Depends(get_db)) -> dict:
    if db.get(Location, location_id) is None:
        raise HTTPException(status_code=404, detail="location not found")
    resolved = load_tip_bank_settings(db, location_id)
    return {"data": resolved.model_dump(mode="json", by_alias=True), "meta": _meta()}


class EmployeeCreate(BaseModel):
    location_id: int
    full_name: Optional[str] = None
    role: Optional[str] = None
    tip_weight: float = Field(default=1.0, ge=0)
    is_active: bool = True


@app.post("/api/v1/employees", tags=["Employees"])
def create_employee(payload: EmployeeCreate, db: Session = Depends(get_db)) -> dict:
    employee = Employee(
        location_id=payload.location_id,
        full_name=payload.full_name,
        role=payload.role,
        tip_weight=payload.tip_weight,
        is_active=payload.is_active,
    )
    db.add(employee)
    db.commit()
    db.refresh(employee)
    return {"data": {"employee_id": employee.id, "location_id": employee.location_id}, "meta": _meta()}


@app.get("/api/v1/employees/{employee_id}/tip-balance", tags=["Tip Ledger"])
def get_tip_balance(
    employee_id: int,
    db: Session = Depends(get_db),
    ledger: SqlTipLedger = Depends(get_ledger),
) -> dict:
    if db.get(Employee, employee_id) is None:
        raise HTTPException(status_code=404, detail="employee not found")
    balance = ledger.get_balance(employee_id)
    recomputed = balance_from_entries(db, employee_id)
    warnings = []
    if recomputed != balance.current_balance_cents:
        warnings.append("cached_balance_mismatch")
        logger.error(
            "employee %s cached balance %d differs from entries %d",
            employee_id,
            balance.current_balance_cents,
            recomputed,
        )
    return {
        "data": {
            "employee_id": employee_id,
            "current_balance_cents": balance.current_balance_cents,
            "entries_balance_cents": recomputed,
        },
        "meta": _meta(warnings=warnings),
    }


class TipAllocate(BaseModel):
    location_id: int
    order_id: str
    payment_id: str
    amount_cents: int = Field(ge=0)
    primary_employee_id: int
    source: CollectionSource = CollectionSource.CARD
    collected_at: Optional[datetime] = None
    kind: str = "tip"


@app.post("/api/v1/tips:allocate", tags=["Tip Allocation"])
def allocate_tip_route(
    payload: TipAllocate,
    db: Session = Depends(get_db),
    ledger: SqlTipLedger = Depends(get_ledger),
) -> dict:
    tip_settings = load_tip_bank_settings(db, payload.location_id)
    try:
        with target_lock(db, "payment", payload.payment_id):
            result = allocate_tip(
                db,
                ledger,
                location_id=payload.location_id,
                order_id=payload.order_id,
                payment_id=payload.payment_id,
                amount_cents=payload.amount_cents,
                primary_employee_id=payload.primary_employee_id,
                source=payload.source,
                settings=tip_settings,
                collected_at=payload.collected_at,
                kind=payload.kind,
            )
    except TipBankError as exc:
        raise _http_error(exc) from exc
    if result is None:
        return {"data": None, "meta": _meta(warnings=["tip_bank_disabled"])}
    return {"data": result.model_dump(mode="json"), "meta": _meta()}


class TipGroupCreate(BaseModel):
    location_id: int
    created_by_id: int
    member_ids: list[int] = Field(default_factory=list)
    split_mode: str = "equal"
    started_at: Optional[datetime] = None


@app.post("/api/v1/tip-groups", tags=["Tip Groups"])
def create_tip_group(payload: TipGroupCreate, db: Session = Depends(get_db)) -> dict:
    try:
        group = start_tip_group(
            db,
            location_id=payload.location_id,
            created_by_id=payload.created_by_id,
            member_ids=payload.member_ids,
            split_mode=payload.split_mode,
            started_at=payload.started_at,
        )
    except TipBankError as exc:
        raise _http_error(exc) from exc
    return {
        "data": {
            "tip_group_id": group.id,
            "status": group.status,
            "split_mode": group.split_mode,
            "member_ids": current_members(db, group.id),
        },
        "meta": _meta(),
    }


class TipGroupMemberChange(BaseModel):
    employee_id: int
    changed_by_id: Optional[int] = None
    at: Optional[datetime] = None


@app.post("/api/v1/tip-groups/{group_id}/members", tags=["Tip Groups"])
def add_tip_group_member(
    group_id: int, payload: TipGroupMemberChange, db: Session = Depends(get_db)
) -> dict:
    try:
        segment = add_group_member(
            db,
            group_id=group_id,
            employee_id=payload.employee_id,
            changed_by_id=payload.changed_by_id,
            at=payload.at,
        )
    except TipBankError as exc:
        raise _http_error(exc) from exc
    return {
        "data": {"segment_id": segment.id, "member_ids": current_members(db, group_id)},
        "meta": _meta(),
    }


@app.delete("/api/v1/tip-groups/{group_id}/members/{employee_id}", tags=["Tip Groups"])
def remove_tip_group_member(
    group_id: int,
    employee_id: int,
    changed_by_id: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    try:
        segment = remove_group_member(
            db, group_id=group_id, employee_id=employee_id, changed_by_id=changed_by_id
        )
    except TipBankError as exc:
        raise _http_error(exc) from exc
    return {
        "data": {
            "segment_id": segment.id if segment is not None else None,
            "member_ids": current_members(db, group_id),
        },
        "meta": _meta(),
    }


class SegmentSplitRevision(BaseModel):
    split: dict[str, float]
    reason: str
    created_by_id: Optional[int] = None


@app.post("/api/v1/tip-group-segments/{segment_id}/splits", tags=["Tip Groups"])
def revise_tip_group_segment_split(
    segment_id: int, payload: SegmentSplitRevision, db: Session = Depends(get_db)
) -> dict:
    try:
        revision = revise_segment_split(
            db,
            segment_id=segment_id,
            split=payload.split,
            reason=payload.reason,
            created_by_id=payload.created_by_id,
        )
    except TipBankError as exc:
        raise _http_error(exc) from exc
    return {
        "data": {"segment_id": segment_id, "revision_id": revision.id, "split": revision.split_json},
        "meta": _meta(),
    }


class GroupRecalculate(BaseModel):
    location_id: int
    manager_id: int
    reason: str
    segment_id: Optional[int] = None


@app.post("/api/v1/tip-groups/{group_id}:recalculate", tags=["Tip Recalculation"])
def recalculate_tip_group(
    group_id: int,
    payload: GroupRecalculate,
    db: Session = Depends(get_db),
    ledger: SqlTipLedger = Depends(get_ledger),
) -> dict:
    try:
        with target_lock(db, "tip-group", group_id):
            result = recalculate_group_allocations(
                db,
                ledger,
                location_id=payload.location_id,
                manager_id=payload.manager_id,
                group_id=group_id,
                reason=payload.reason,
                segment_id=payload.segment_id,
            )
    except TipBankError as exc:
        raise _http_error(exc) from exc
    return {"data": result.model_dump(mode="json"), "meta": _meta()}


class OrderOwnershipSet(BaseModel):
    location_id: int
    created_by_id: int
    employee_ids: list[int]
    share_percents: Optional[list[float]] = None


@app.put("/api/v1/orders/{order_id}/ownership", tags=["Order Ownership"])
def put_order_ownership(
    order_id: str, payload: OrderOwnershipSet, db: Session = Depends(get_db)
) -> dict:
    try:
        active = set_order_owners(
            db,
            location_id=payload.location_id,
            order_id=order_id,
            created_by_id=payload.created_by_id,
            employee_ids=payload.employee_ids,
            share_percents=payload.share_percents,
        )
    except TipBankError as exc:
        raise _http_error(exc) from exc
    return {"data": active.as_dict(), "meta": _meta()}


class OrderRecalculate(BaseModel):
    location_id: int
    manager_id: int
    reason: str


@app.post("/api/v1/orders/{order_id}/tips:recalculate", tags=["Tip Recalculation"])
def recalculate_order_tips(
    order_id: str,
    payload: OrderRecalculate,
    db: Session = Depends(get_db),
    ledger: SqlTipLedger = Depends(get_ledger),
) -> dict:
    try:
        with target_lock(db, "order", order_id):
            result = recalculate_order_allocations(
                db,
                ledger,
                location_id=payload.location_id,
                manager_id=payload.manager_id,
                order_id=order_id,
                reason=payload.reason,
            )
    except TipBankError as exc:
        raise _http_error(exc) from exc
    return {"data": result.model_dump(mode="json"), "meta": _meta()}


class PaymentChargeback(BaseModel):
    location_id: int
    memo: Optional[str] = None


@app.post("/api/v1/payments/{payment_id}/tips:chargeback", tags=["Tip Chargebacks"])
def chargeback_payment_tips(
    payment_id: str,
    payload: PaymentChargeback,
    db: Session = Depends(get_db),
    ledger: SqlTipLedger = Depends(get_ledger),
) -> dict:
    tip_settings = load_tip_bank_settings(db, payload.location_id)
    try:
        with target_lock(db, "payment", payment_id):
            result = handle_tip_chargeback(
                db,
                ledger,
                location_id=payload.location_id,
                payment_id=payment_id,
                settings=tip_settings,
                memo=payload.memo,
            )
    except TipBankError as exc:
        raise _http_error(exc) from exc
    return {"data": result.model_dump(mode="json"), "meta": _meta()}


class TipAdjustmentCreate(BaseModel):
    location_id: int
    manager_id: int
    reason: str
    adjustment_type: AdjustmentType = AdjustmentType.MANUAL_OVERRIDE
    context: AdjustmentContext = Field(default_factory=AdjustmentContext)
    employee_deltas: list[EmployeeDelta] = Field(default_factory=list)


@app.post("/api/v1/tip-adjustments", tags=["Tip Adjustments"])
def create_tip_adjustment(
    payload: TipAdjustmentCreate,
    db: Session = Depends(get_db),
    ledger: SqlTipLedger = Depends(get_ledger),
) -> dict:
    try:
        with target_lock(db, "location-adjustment", payload.location_id):
            result = perform_tip_adjustment(
                db,
                ledger,
                location_id=payload.location_id,
                manager_id=payload.manager_id,
                reason=payload.reason,
                context=payload.context,
                employee_deltas=payload.employee_deltas,
                adjustment_type=payload.adjustment_type,
            )
    except TipBankError as exc:
        raise _http_error(exc) from exc
    return {"data": result.model_dump(mode="json"), "meta": _meta()}


@app.get("/api/v1/tip-adjustments", tags=["Tip Adjustments"])
def list_tip_adjustments(
    location_id: Optional[int] = Query(default=None),
    adjustment_type: Optional[AdjustmentType] = Query(default=None),
    date_from: Optional[datetime] = Query(default=None),
    date_to: Optional[datetime] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None, ge=0),
    db: Session = Depends(get_db),
) -> dict:
    offset = cursor or 0
    page = get_adjustment_history(
        db,
        location_id=location_id,
        adjustment_type=adjustment_type,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )
    next_cursor = offset + limit if offset + limit < page.total else None
    meta = _list_meta(limit, cursor, next_cursor)
    meta["page"]["total"] = page.total
    return {"data": [record.model_dump(mode="json") for record in page.adjustments], "meta": meta}


@app.get("/api/v1/tip-debts", tags=["Tip Debts"])
def list_tip_debts_route(
    location_id: Optional[int] = Query(default=None),
    employee_id: Optional[int] = Query(default=None),
    status: Optional[DebtStatus] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    debts = list_tip_debts(db, location_id=location_id, employee_id=employee_id, status=status)
    return {"data": [debt_as_dict(debt) for debt in debts], "meta": _meta()}


@app.post("/api/v1/employees/{employee_id}/tip-debts:collect", tags=["Tip Debts"])
def collect_employee_tip_debts(
    employee_id: int,
    db: Session = Depends(get_db),
    ledger: SqlTipLedger = Depends(get_ledger),
) -> dict:
    try:
        with target_lock(db, "employee", employee_id):
            debts = collect_tip_debts(db, ledger, employee_id=employee_id)
    except TipBankError as exc:
        raise _http_error(exc) from exc
    return {"data": [debt_as_dict(debt) for debt in debts], "meta": _meta()}


class TipDebtWriteOff(BaseModel):
    manager_id: int


@app.post("/api/v1/tip-debts/{debt_id}:write-off", tags=["Tip Debts"])
def write_off_tip_debt_route(
    debt_id: int, payload: TipDebtWriteOff, db: Session = Depends(get_db)
) -> dict:
    try:
        debt = write_off_tip_debt(db, debt_id=debt_id, manager_id=payload.manager_id)
    except TipBankError as exc:
        raise _http_error(exc) from exc
    return {"data": debt_as_dict(debt), "meta": _meta()}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
