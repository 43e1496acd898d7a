"""Domain errors raised by the tip bank engine.

Routes translate these into HTTP responses; everything else lets them
propagate to the caller unchanged.
"""

from __future__ import annotations

from typing import Any, Optional


class TipBankError(Exception):
    """Base class for every tip bank domain error."""

    reason = "tip_bank_error"

    def __init__(self, message: str, reason: Optional[str] = None) -> None:
        super().__init__(message)
        if reason is not None:
            self.reason = reason


class NotFoundError(TipBankError):
    reason = "not_found"


class PreconditionFailedError(TipBankError):
    reason = "precondition_failed"


class InvalidSplitError(TipBankError, ValueError):
    reason = "invalid_split"


class PartialCorrectionError(TipBankError):
    """A sequential posting loop stopped after some entries were written.

    ``outcomes`` lists every planned posting with its status so the caller
    can see exactly what landed. Re-invoking the same operation finishes the
    correction.
    """

    reason = "partial_correction"

    def __init__(
        self,
        message: str,
        adjustment_id: Optional[int] = None,
        outcomes: Optional[list[Any]] = None,
    ) -> None:
        super().__init__(message)
        self.adjustment_id = adjustment_id
        self.outcomes = outcomes or []
