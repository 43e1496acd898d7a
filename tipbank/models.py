from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from tipbank.db import Base
from tipbank.lifecycle import SoftDeleteMixin

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
FK_TYPE = BigInteger().with_variant(Integer, "sqlite")
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")


class Location(Base):
    __tablename__ = "location"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    settings: Mapped[dict | None] = mapped_column(JSON_TYPE)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Employee(Base):
    __tablename__ = "employee"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    location_id: Mapped[int] = mapped_column(FK_TYPE, ForeignKey("location.id"), nullable=False)
    full_name: Mapped[str | None] = mapped_column(Text)
    role: Mapped[str | None] = mapped_column(Text)
    tip_weight: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class TipGroup(SoftDeleteMixin, Base):
    __tablename__ = "tip_group"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    location_id: Mapped[int] = mapped_column(FK_TYPE, ForeignKey("location.id"), nullable=False)
    created_by_id: Mapped[int] = mapped_column(FK_TYPE, ForeignKey("employee.id"), nullable=False)
    owner_id: Mapped[int] = mapped_column(FK_TYPE, ForeignKey("employee.id"), nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="active")
    split_mode: Mapped[str] = mapped_column(Text, nullable=False, default="equal")
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TipGroupSegment(SoftDeleteMixin, Base):
    __tablename__ = "tip_group_segment"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    location_id: Mapped[int] = mapped_column(FK_TYPE, ForeignKey("location.id"), nullable=False)
    group_id: Mapped[int] = mapped_column(FK_TYPE, ForeignKey("tip_group.id"), nullable=False, index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    member_count: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TipGroupSegmentSplit(Base):
    """Append-only split revision; the latest row is the segment's current split."""

    __tablename__ = "tip_group_segment_split"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    segment_id: Mapped[int] = mapped_column(
        FK_TYPE, ForeignKey("tip_group_segment.id"), nullable=False, index=True
    )
    split_json: Mapped[dict] = mapped_column(JSON_TYPE, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    created_by_id: Mapped[int | None] = mapped_column(FK_TYPE, ForeignKey("employee.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class OrderOwnership(SoftDeleteMixin, Base):
    __tablename__ = "order_ownership"
    __table_args__ = (Index("ix_order_ownership_order_active", "order_id", "is_active"),)

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    location_id: Mapped[int] = mapped_column(FK_TYPE, ForeignKey("location.id"), nullable=False)
    order_id: Mapped[str] = mapped_column(Text, nullable=False)
    created_by_id: Mapped[int] = mapped_column(FK_TYPE, ForeignKey("employee.id"), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class OrderOwnershipEntry(Base):
    __tablename__ = "order_ownership_entry"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    ownership_id: Mapped[int] = mapped_column(
        FK_TYPE, ForeignKey("order_ownership.id"), nullable=False, index=True
    )
    employee_id: Mapped[int] = mapped_column(FK_TYPE, ForeignKey("employee.id"), nullable=False)
    share_percent: Mapped[float] = mapped_column(Float, nullable=False)


class TipTransaction(SoftDeleteMixin, Base):
    __tablename__ = "tip_transaction"
    __table_args__ = (
        Index("ix_tip_transaction_payment", "payment_id"),
        Index("ix_tip_transaction_order", "order_id"),
        Index("ix_tip_transaction_group", "tip_group_id", "segment_id"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    location_id: Mapped[int] = mapped_column(FK_TYPE, ForeignKey("location.id"), nullable=False)
    order_id: Mapped[str] = mapped_column(Text, nullable=False)
    payment_id: Mapped[str | None] = mapped_column(Text)
    tip_group_id: Mapped[int | None] = mapped_column(FK_TYPE, ForeignKey("tip_group.id"))
    segment_id: Mapped[int | None] = mapped_column(FK_TYPE, ForeignKey("tip_group_segment.id"))
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    source_type: Mapped[str] = mapped_column(Text, nullable=False)
    kind: Mapped[str] = mapped_column(Text, nullable=False, default="tip")
    cc_fee_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    primary_employee_id: Mapped[int | None] = mapped_column(FK_TYPE, ForeignKey("employee.id"))
    collected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TipLedger(Base):
    __tablename__ = "tip_ledger"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    location_id: Mapped[int] = mapped_column(FK_TYPE, ForeignKey("location.id"), nullable=False)
    employee_id: Mapped[int] = mapped_column(
        FK_TYPE, ForeignKey("employee.id"), nullable=False, unique=True
    )
    current_balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TipLedgerEntry(Base):
    __tablename__ = "tip_ledger_entry"
    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_tip_ledger_entry_amount_non_negative"),
        CheckConstraint("type IN ('CREDIT', 'DEBIT')", name="ck_tip_ledger_entry_type"),
        Index("ix_tip_ledger_entry_source", "source_type", "source_id"),
        Index("ix_tip_ledger_entry_adjustment", "adjustment_id", "employee_id"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    location_id: Mapped[int] = mapped_column(FK_TYPE, ForeignKey("location.id"), nullable=False)
    ledger_id: Mapped[int] = mapped_column(FK_TYPE, ForeignKey("tip_ledger.id"), nullable=False)
    employee_id: Mapped[int] = mapped_column(
        FK_TYPE, ForeignKey("employee.id"), nullable=False, index=True
    )
    type: Mapped[str] = mapped_column(Text, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    source_type: Mapped[str] = mapped_column(Text, nullable=False)
    source_id: Mapped[int | None] = mapped_column(FK_TYPE)
    order_id: Mapped[str | None] = mapped_column(Text)
    adjustment_id: Mapped[int | None] = mapped_column(FK_TYPE, ForeignKey("tip_adjustment.id"))
    memo: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TipAdjustment(SoftDeleteMixin, Base):
    __tablename__ = "tip_adjustment"
    __table_args__ = (Index("ix_tip_adjustment_location_created", "location_id", "created_at"),)

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    location_id: Mapped[int] = mapped_column(FK_TYPE, ForeignKey("location.id"), nullable=False)
    created_by_id: Mapped[int] = mapped_column(FK_TYPE, ForeignKey("employee.id"), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    adjustment_type: Mapped[str] = mapped_column(Text, nullable=False)
    context_json: Mapped[dict] = mapped_column(JSON_TYPE, nullable=False)
    auto_recalc_ran: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TipAllocationDelta(Base):
    """Per-transaction attribution of a reconciler correction.

    Only rows whose adjustment already has a ledger entry for the same
    employee count as credited.
    """

    __tablename__ = "tip_allocation_delta"
    __table_args__ = (Index("ix_tip_allocation_delta_txn", "tip_transaction_id", "employee_id"),)

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    adjustment_id: Mapped[int] = mapped_column(
        FK_TYPE, ForeignKey("tip_adjustment.id"), nullable=False, index=True
    )
    tip_transaction_id: Mapped[int] = mapped_column(
        FK_TYPE, ForeignKey("tip_transaction.id"), nullable=False
    )
    employee_id: Mapped[int] = mapped_column(FK_TYPE, ForeignKey("employee.id"), nullable=False)
    delta_cents: Mapped[int] = mapped_column(Integer, nullable=False)


class TipDebt(SoftDeleteMixin, Base):
    __tablename__ = "tip_debt"
    __table_args__ = (
        CheckConstraint("remaining_cents >= 0", name="ck_tip_debt_remaining_non_negative"),
        Index("ix_tip_debt_employee_status", "employee_id", "status"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    location_id: Mapped[int] = mapped_column(FK_TYPE, ForeignKey("location.id"), nullable=False)
    employee_id: Mapped[int] = mapped_column(FK_TYPE, ForeignKey("employee.id"), nullable=False)
    original_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    remaining_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    source_payment_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    source_type: Mapped[str] = mapped_column(Text, nullable=False, default="CHARGEBACK")
    memo: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="open")
    resolution: Mapped[str | None] = mapped_column(Text)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    resolved_by_id: Mapped[int | None] = mapped_column(FK_TYPE, ForeignKey("employee.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
