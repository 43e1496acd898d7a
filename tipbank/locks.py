"""Per-target mutual exclusion for reconciliation, chargeback and adjustment runs.

The engine reads "what was credited", computes, then posts entry by entry,
so two runs against the same group, order or payment must not interleave.
On PostgreSQL the guard is a session-level advisory lock held on a dedicated
connection (the engine's own session commits per entry, which would drop a
transaction-scoped lock). Other dialects fall back to a process-local lock.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Union

from sqlalchemy import text
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


@dataclass
class _LocalLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


_local_locks: dict[str, _LocalLock] = {}
_registry_lock = threading.Lock()


def lock_key(scope: str, target_id: Union[int, str]) -> str:
    return f"tipbank:{scope}:{target_id}"


def advisory_lock_id(key: str) -> int:
    digest = hashlib.blake2b(key.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


def _checkout_local_lock(key: str) -> threading.Lock:
    with _registry_lock:
        entry = _local_locks.setdefault(key, _LocalLock())
        entry.users += 1
        return entry.lock


def _return_local_lock(key: str) -> None:
    with _registry_lock:
        entry = _local_locks[key]
        entry.users -= 1
        if entry.users == 0:
            del _local_locks[key]


@contextmanager
def target_lock(db: Session, scope: str, target_id: Union[int, str]) -> Iterator[None]:
    key = lock_key(scope, target_id)
    engine = db.get_bind()
    if engine.dialect.name == "postgresql":
        lock_id = advisory_lock_id(key)
        with engine.connect() as conn:
            conn.execute(text("SELECT pg_advisory_lock(:lock_id)"), {"lock_id": lock_id})
            logger.debug("acquired advisory lock %s (%s)", key, lock_id)
            try:
                yield
            finally:
                conn.execute(text("SELECT pg_advisory_unlock(:lock_id)"), {"lock_id": lock_id})
                conn.commit()
        return

    lock = _checkout_local_lock(key)
    try:
        with lock:
            logger.debug("acquired local lock %s", key)
            yield
    finally:
        _return_local_lock(key)
