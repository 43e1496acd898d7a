from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class EntryType(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class LedgerSourceType(str, Enum):
    DIRECT_TIP = "DIRECT_TIP"
    TIP_GROUP = "TIP_GROUP"
    ADJUSTMENT = "ADJUSTMENT"
    CHARGEBACK = "CHARGEBACK"
    DEBT_RECOVERY = "DEBT_RECOVERY"


TIP_DISTRIBUTION_SOURCES = (LedgerSourceType.DIRECT_TIP.value, LedgerSourceType.TIP_GROUP.value)


class AdjustmentType(str, Enum):
    GROUP_MEMBERSHIP = "group_membership"
    OWNERSHIP_SPLIT = "ownership_split"
    CLOCK_FIX = "clock_fix"
    MANUAL_OVERRIDE = "manual_override"
    TIP_AMOUNT = "tip_amount"


class ChargebackPolicy(str, Enum):
    BUSINESS_ABSORBS = "BUSINESS_ABSORBS"
    EMPLOYEE_CHARGEBACK = "EMPLOYEE_CHARGEBACK"


class CollectionSource(str, Enum):
    CARD = "CARD"
    CASH = "CASH"


class DebtStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class EmployeeDelta(BaseModel):
    employee_id: int
    delta_cents: int


class AdjustmentContext(BaseModel):
    before: dict[str, Any] = Field(default_factory=dict)
    after: dict[str, Any] = Field(default_factory=dict)


class AdjustmentEntry(BaseModel):
    employee_id: int
    type: EntryType
    amount_cents: int
    ledger_entry_id: int


class AdjustmentResult(BaseModel):
    adjustment_id: int
    adjustment_type: AdjustmentType
    reason: str
    auto_recalc_ran: bool
    delta_entries: list[AdjustmentEntry]


class RecalculationDelta(BaseModel):
    employee_id: int
    previous_cents: int
    new_cents: int
    delta_cents: int
    ledger_entry_id: int


class RecalculationResult(BaseModel):
    adjustment_id: int
    delta_entries: list[RecalculationDelta]


class ChargebackEntry(BaseModel):
    employee_id: int
    amount_cents: int
    ledger_entry_id: Optional[int] = None
    capped_at_balance: bool = False


class ChargebackResult(BaseModel):
    policy: ChargebackPolicy
    tip_transaction_id: int
    tip_transaction_ids: list[int]
    original_tip_cents: int
    charged_back_cents: int
    flagged_for_review_cents: int
    tip_debt_ids: list[int]
    entries: list[ChargebackEntry]


class AdjustmentRecord(BaseModel):
    id: int
    location_id: int
    created_by_id: int
    reason: str
    adjustment_type: str
    context: dict[str, Any]
    auto_recalc_ran: bool
    created_at: datetime


class AdjustmentPage(BaseModel):
    adjustments: list[AdjustmentRecord]
    total: int


class TipAllocation(BaseModel):
    employee_id: int
    amount_cents: int
    source_type: LedgerSourceType
    ledger_entry_id: int


class TipAllocationResult(BaseModel):
    tip_transaction_id: int
    allocations: list[TipAllocation]
