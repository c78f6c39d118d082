"""Database models for the clinic queue.

We use SQLModel to define the schema.  The database stores patients (queue
entries), a singleton settings row that also holds the ticket counter, and
an append-only service log written once per completed visit.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, Optional

from sqlalchemy import Column, DateTime, Enum as SAEnum
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel, select

import config


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timestamps are written as UTC and always read back timezone-aware.

    SQLite has no timezone support, so there the value is stored as naive
    UTC and the offset is reattached on load.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class PatientStatus(str, Enum):
    """Possible statuses for a queue entry."""

    waiting = "waiting"
    in_progress = "in-progress"
    served = "served"
    no_show = "no-show"


ACTIVE_STATUSES = (PatientStatus.waiting, PatientStatus.in_progress)
TERMINAL_STATUSES = (PatientStatus.served, PatientStatus.no_show)

# Every legal status change.  Anything not listed here is rejected.
TRANSITIONS: Dict[PatientStatus, FrozenSet[PatientStatus]] = {
    PatientStatus.waiting: frozenset({PatientStatus.in_progress, PatientStatus.no_show}),
    PatientStatus.in_progress: frozenset({PatientStatus.served}),
    PatientStatus.served: frozenset(),
    PatientStatus.no_show: frozenset(),
}


def can_transition(current: PatientStatus, target: PatientStatus) -> bool:
    return target in TRANSITIONS[PatientStatus(current)]


class Patient(SQLModel, table=True):
    __tablename__ = "patients"

    # Insertion sequence; breaks ties between identical created_at values.
    id: Optional[int] = Field(default=None, primary_key=True)
    ticket_number: str = Field(index=True, unique=True)
    # Stored by value ("in-progress"), not by member name.
    status: PatientStatus = Field(
        default=PatientStatus.waiting,
        sa_column=Column(
            SAEnum(
                PatientStatus,
                name="patient_status",
                values_callable=lambda statuses: [s.value for s in statuses],
            ),
            nullable=False,
            index=True,
        ),
    )
    phone: Optional[str] = Field(default=None, index=True)
    email: Optional[str] = Field(default=None, index=True)
    estimated_wait_minutes: Optional[int] = None
    actual_wait_minutes: Optional[int] = None
    served_by: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, index=True)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    called_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    served_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)


class ClinicSettings(SQLModel, table=True):
    """Singleton row (id = 1): the ticket counter plus clinic configuration."""

    __tablename__ = "clinic_settings"

    id: Optional[int] = Field(default=1, primary_key=True)
    clinic_name: str = Field(default=config.CLINIC_NAME)
    current_queue_number: int = Field(default=config.DEFAULT_QUEUE_NUMBER)
    avg_service_minutes: int = Field(default=config.AVERAGE_SERVICE_MINUTES)
    opening_time: Optional[str] = Field(default=config.OPENING_TIME)
    closing_time: Optional[str] = Field(default=config.CLOSING_TIME)
    contact_phone: Optional[str] = None
    contact_email: Optional[str] = None
    address: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class ServiceLogEntry(SQLModel, table=True):
    """One completed service.  Read by reporting only."""

    __tablename__ = "service_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    ticket_number: str = Field(index=True)
    checkin_time: datetime = Field(sa_type=UTCDateTime)
    served_time: datetime = Field(sa_type=UTCDateTime, index=True)
    total_wait_minutes: int
    served_by: Optional[int] = None


def select_patients():
    """SELECT over patients that refreshes instances already in the session."""
    return select(Patient).execution_options(populate_existing=True)
