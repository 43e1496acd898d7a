from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column


class RecordState(str, Enum):
    ACTIVE = "ACTIVE"
    DELETED = "DELETED"


class InvalidTransition(Exception):
    pass


class SoftDeleteMixin:
    """Active/Deleted lifecycle for records that are never hard-deleted."""

    state: Mapped[str] = mapped_column(
        String(16), nullable=False, default=RecordState.ACTIVE.value, index=True
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    @property
    def is_deleted(self) -> bool:
        return self.state == RecordState.DELETED.value

    def soft_delete(self, at: Optional[datetime] = None) -> None:
        if self.state != RecordState.ACTIVE.value:
            raise InvalidTransition(f"cannot delete a record in state {self.state}")
        self.state = RecordState.DELETED.value
        self.deleted_at = at or datetime.now(timezone.utc)

    @classmethod
    def active_only(cls):
        return cls.state == RecordState.ACTIVE.value
