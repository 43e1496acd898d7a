"""Ordered ledger posting commands with per-command outcome capture."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional

from tipbank.errors import PartialCorrectionError
from tipbank.ledger import TipLedgerPort
from tipbank.schemas import EntryType, LedgerSourceType

logger = logging.getLogger(__name__)


class PostingStatus(str, Enum):
    POSTED = "posted"
    FAILED = "failed"
    NOT_ATTEMPTED = "not_attempted"


@dataclass(frozen=True)
class PostingCommand:
    location_id: int
    employee_id: int
    amount_cents: int
    entry_type: EntryType
    source_type: LedgerSourceType
    memo: Optional[str] = None
    source_id: Optional[int] = None
    order_id: Optional[str] = None
    adjustment_id: Optional[int] = None

    @classmethod
    def for_delta(cls, delta_cents: int, **fields: Any) -> "PostingCommand":
        """CREDIT for a positive delta, DEBIT for a negative one."""
        if delta_cents == 0:
            raise ValueError("zero deltas are never posted")
        entry_type = EntryType.CREDIT if delta_cents > 0 else EntryType.DEBIT
        return cls(amount_cents=abs(delta_cents), entry_type=entry_type, **fields)

    @property
    def signed_cents(self) -> int:
        return self.amount_cents if self.entry_type == EntryType.CREDIT else -self.amount_cents


@dataclass
class PostingOutcome:
    command: PostingCommand
    status: PostingStatus
    ledger_entry_id: Optional[int] = None
    error: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "employee_id": self.command.employee_id,
            "type": self.command.entry_type.value,
            "amount_cents": self.command.amount_cents,
            "status": self.status.value,
            "ledger_entry_id": self.ledger_entry_id,
            "error": self.error,
        }


@dataclass
class PostingRun:
    """Posts commands one at a time; stops at the first failure.

    On failure the run raises ``PartialCorrectionError`` carrying every
    outcome: the commands already posted, the one that failed and the ones
    never attempted.
    """

    ledger: TipLedgerPort
    adjustment_id: Optional[int] = None
    outcomes: list[PostingOutcome] = field(default_factory=list)

    @property
    def posted(self) -> list[PostingOutcome]:
        return [o for o in self.outcomes if o.status == PostingStatus.POSTED]

    def post(self, command: PostingCommand, pending: Iterable[PostingCommand] = ()) -> PostingOutcome:
        try:
            entry = self.ledger.post_entry(
                location_id=command.location_id,
                employee_id=command.employee_id,
                amount_cents=command.amount_cents,
                entry_type=command.entry_type,
                source_type=command.source_type,
                source_id=command.source_id,
                order_id=command.order_id,
                adjustment_id=command.adjustment_id,
                memo=command.memo,
            )
        except Exception as exc:
            self.outcomes.append(PostingOutcome(command, PostingStatus.FAILED, error=str(exc)))
            self.outcomes.extend(PostingOutcome(c, PostingStatus.NOT_ATTEMPTED) for c in pending)
            logger.error(
                "ledger posting failed for employee %s after %d of %d postings (adjustment %s): %s",
                command.employee_id,
                len(self.posted),
                len(self.outcomes),
                self.adjustment_id,
                exc,
            )
            raise PartialCorrectionError(
                f"posting stopped at employee {command.employee_id}: {exc}",
                adjustment_id=self.adjustment_id,
                outcomes=[o.as_dict() for o in self.outcomes],
            ) from exc
        outcome = PostingOutcome(command, PostingStatus.POSTED, ledger_entry_id=entry.id)
        self.outcomes.append(outcome)
        return outcome

    def run(self, commands: list[PostingCommand]) -> list[PostingOutcome]:
        for index, command in enumerate(commands):
            self.post(command, pending=commands[index + 1 :])
        return self.posted
