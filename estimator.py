"""Queue position and wait-time estimation.

Position is never stored: it is the number of waiting patients who arrived
earlier, counted fresh on every call.  The estimate is that count times the
clinic's average service time, a point-in-time figure that is recomputed on
each request rather than counted down.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from sqlalchemy import and_, func, or_
from sqlmodel import Session, select

import config
from database import transaction
from errors import TicketNotFound
from models import ClinicSettings, Patient, PatientStatus, select_patients


@dataclass
class WaitEstimate:
    patients_ahead: int
    estimated_minutes: int
    display: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def format_wait(minutes: int) -> str:
    if minutes < 60:
        return f"{minutes} minutes"
    return f"{minutes // 60}h {minutes % 60}m"


def make_estimate(patients_ahead: int, avg_service_minutes: int) -> WaitEstimate:
    minutes = patients_ahead * avg_service_minutes
    return WaitEstimate(patients_ahead, minutes, format_wait(minutes))


def average_service_minutes(session: Session) -> int:
    avg = session.exec(
        select(ClinicSettings.avg_service_minutes).where(ClinicSettings.id == 1)
    ).first()
    return avg or config.AVERAGE_SERVICE_MINUTES


def waiting_count(session: Session) -> int:
    return session.exec(
        select(func.count()).select_from(Patient).where(Patient.status == PatientStatus.waiting)
    ).one()


def count_ahead(session: Session, patient: Patient) -> int:
    """Waiting patients ahead of ``patient``; equal timestamps fall back to id."""
    earlier = or_(
        Patient.created_at < patient.created_at,
        and_(Patient.created_at == patient.created_at, Patient.id < patient.id),
    )
    return session.exec(
        select(func.count())
        .select_from(Patient)
        .where(Patient.status == PatientStatus.waiting, earlier)
    ).one()


def _load(session: Session, ticket_number: str) -> Patient:
    patient = session.exec(select_patients().where(Patient.ticket_number == ticket_number)).first()
    if patient is None:
        raise TicketNotFound(ticket_number)
    return patient


def position(session: Session, ticket_number: str) -> int:
    with transaction(session, "get position"):
        return count_ahead(session, _load(session, ticket_number))


def estimate(session: Session, ticket_number: Optional[str] = None) -> WaitEstimate:
    """Estimated wait for one ticket, or for a newcomer when no ticket is given."""
    with transaction(session, "estimate wait"):
        avg = average_service_minutes(session)
        if ticket_number is None:
            ahead = waiting_count(session)
        else:
            ahead = count_ahead(session, _load(session, ticket_number))
    return make_estimate(ahead, avg)
