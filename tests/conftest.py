"""Shared test fixtures."""
from datetime import datetime, timedelta
from typing import Generator

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from budget.models.connection import RevolutConnection
from budget.models.ledger import LedgerTransaction, Pocket  # noqa: F401
from budget.models.sync import SyncLog  # noqa: F401
from budget.revolut import auth as revolut_auth

HOUSEHOLD_ID = "household-1"


@pytest.fixture(autouse=True)
def _reset_refresh_locks():
    """Refresh locks bind to an event loop; each test runs on a fresh one."""
    revolut_auth._refresh_locks.clear()
    yield
    revolut_auth._refresh_locks.clear()


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="active_connection")
def active_connection_fixture(test_session: Session) -> RevolutConnection:
    """An active connection whose access token is valid for another hour."""
    connection = RevolutConnection(
        household_id=HOUSEHOLD_ID,
        access_token="access-1",
        refresh_token="refresh-1",
        expires_at=datetime.utcnow() + timedelta(hours=1),
        is_active=True,
    )
    test_session.add(connection)
    test_session.commit()
    test_session.refresh(connection)
    return connection
