from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tipbank.db import init_db
from tipbank.ledger import SqlTipLedger
from tipbank.models import Employee, Location

T0 = datetime(2024, 5, 3, 17, 0, tzinfo=timezone.utc)


class FlakyLedger:
    """Wraps a ledger and fails the n-th ``post_entry`` call."""

    def __init__(self, inner, fail_on: int) -> None:
        self.inner = inner
        self.fail_on = fail_on
        self.calls = 0

    def post_entry(self, **kwargs):
        self.calls += 1
        if self.calls == self.fail_on:
            raise RuntimeError("ledger unavailable")
        return self.inner.post_entry(**kwargs)

    def get_balance(self, employee_id: int):
        return self.inner.get_balance(employee_id)


@pytest.fixture()
def db():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture()
def ledger(db):
    return SqlTipLedger(db)


@pytest.fixture()
def location(db):
    row = Location(name="Harbor Street", settings=None, created_at=T0)
    db.add(row)
    db.commit()
    return row


@pytest.fixture()
def staff(db, location):
    """Three employees: ids 1, 2 and 3."""
    employees = [
        Employee(location_id=location.id, full_name="Ana", role="server", tip_weight=2.0),
        Employee(location_id=location.id, full_name="Ben", role="server", tip_weight=1.0),
        Employee(location_id=location.id, full_name="Cy", role="busser", tip_weight=1.0),
    ]
    db.add_all(employees)
    db.commit()
    return [employee.id for employee in employees]
