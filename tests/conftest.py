from datetime import datetime

import pytest
from sqlalchemy import update

from database import execute, get_session, init_db, make_engine, transaction
from models import Patient


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'queue.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    session = get_session(engine)
    yield session
    session.close()


@pytest.fixture
def set_patient_fields(session):
    """Overwrite columns directly, e.g. to backdate ``created_at``."""

    def _set(ticket_number: str, **values) -> None:
        with transaction(session, "test update"):
            execute(session, update(Patient).where(Patient.ticket_number == ticket_number).values(**values))

    return _set


@pytest.fixture
def arrivals(set_patient_fields):
    """Give tickets explicit arrival times."""

    def _arrive(*pairs) -> None:
        for ticket_number, created_at in pairs:
            assert isinstance(created_at, datetime)
            set_patient_fields(ticket_number, created_at=created_at)

    return _arrive
