"""Queue store: patient records and the queries over them.

Every function takes a SQLModel ``Session`` and scopes its own transaction,
so nothing holds a database lock once it returns.  The queue order of truth
is ``created_at`` (then ``id``) over waiting records; no position column is
kept.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.attributes import set_committed_value
from sqlmodel import Session, col, select

import config
from database import execute, transaction
from errors import AllocationFailure, ClinicQueueError, DuplicateActiveTicket, StoreUnavailable, TicketNotFound
from estimator import average_service_minutes, count_ahead, make_estimate, waiting_count
from events import EventBroadcaster, transition_event
from models import ACTIVE_STATUSES, TERMINAL_STATUSES, Patient, PatientStatus, select_patients, utcnow
from sequence import format_ticket, increment_counter

logger = logging.getLogger(__name__)


@dataclass
class QueueStats:
    total: int = 0
    waiting_count: int = 0
    active_count: int = 0
    served_count_today: int = 0
    oldest_waiting: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def clean_contact(phone: Optional[str], email: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    phone = (phone or "").strip() or None
    email = (email or "").strip().lower() or None
    return phone, email


def _active_for_contact(session: Session, phone: Optional[str], email: Optional[str]) -> Optional[Patient]:
    matches = []
    if phone:
        matches.append(Patient.phone == phone)
    if email:
        matches.append(Patient.email == email)
    if not matches:
        return None
    return session.exec(
        select_patients()
        .where(col(Patient.status).in_(ACTIVE_STATUSES), or_(*matches))
        .order_by(col(Patient.created_at).desc())
    ).first()


def create(session: Session, phone: Optional[str] = None, email: Optional[str] = None) -> Patient:
    """Put a new patient in the queue as ``waiting``.

    The counter increment runs first: it takes the write lock, so a second
    join from the same contact cannot pass the duplicate check until this
    one has committed.  On a duplicate the whole transaction, increment
    included, is rolled back.
    """
    phone, email = clean_contact(phone, email)
    try:
        with transaction(session, "create patient"):
            number = increment_counter(session)
            existing = _active_for_contact(session, phone, email)
            if existing is not None:
                raise DuplicateActiveTicket(existing.ticket_number)

            initial = make_estimate(waiting_count(session), average_service_minutes(session))
            now = utcnow()
            patient = Patient(
                ticket_number=format_ticket(number),
                status=PatientStatus.waiting,
                phone=phone,
                email=email,
                estimated_wait_minutes=initial.estimated_minutes,
                created_at=now,
                updated_at=now,
            )
            session.add(patient)
            try:
                session.flush()
            except IntegrityError as exc:
                raise AllocationFailure(
                    f"Ticket {patient.ticket_number} was already issued; was the counter reset?"
                ) from exc
    except ClinicQueueError as exc:
        logger.warning("Error creating patient: %s", exc)
        raise
    logger.info("New patient created: %s", patient.ticket_number)
    return patient


def find_by_ticket(session: Session, ticket_number: str) -> Optional[Patient]:
    """Look a ticket up.

    Waiting records come back with a fresh estimate.  It is set on the
    returned instance only; the stored join-time estimate is left alone.
    """
    with transaction(session, "find patient"):
        patient = session.exec(select_patients().where(Patient.ticket_number == ticket_number)).first()
        if patient is not None and patient.status == PatientStatus.waiting:
            fresh = make_estimate(count_ahead(session, patient), average_service_minutes(session))
            set_committed_value(patient, "estimated_wait_minutes", fresh.estimated_minutes)
    return patient


def get_patient(session: Session, ticket_number: str) -> Patient:
    patient = find_by_ticket(session, ticket_number)
    if patient is None:
        raise TicketNotFound(ticket_number)
    return patient


def find_active_by_contact(session: Session, phone: Optional[str] = None, email: Optional[str] = None) -> Optional[Patient]:
    phone, email = clean_contact(phone, email)
    with transaction(session, "find active ticket"):
        return _active_for_contact(session, phone, email)


def list_waiting(session: Session) -> List[Patient]:
    with transaction(session, "list waiting patients"):
        return list(
            session.exec(
                select_patients()
                .where(Patient.status == PatientStatus.waiting)
                .order_by(col(Patient.created_at), col(Patient.id))
            ).all()
        )


def list_active(session: Session) -> List[Patient]:
    """Patients being seen, oldest call first."""
    with transaction(session, "list active patients"):
        return list(
            session.exec(
                select_patients()
                .where(Patient.status == PatientStatus.in_progress)
                .order_by(col(Patient.updated_at), col(Patient.id))
            ).all()
        )


def _count(session: Session, *conditions) -> int:
    return session.exec(select(func.count()).select_from(Patient).where(*conditions)).one()


def stats(session: Session, strict: bool = False) -> QueueStats:
    """Queue counters computed from the current records.

    On a store failure a zeroed ``QueueStats`` is returned so dashboards keep
    rendering; pass ``strict=True`` to get the ``StoreUnavailable`` instead.
    """
    midnight = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
    try:
        with transaction(session, "queue stats"):
            return QueueStats(
                total=_count(session),
                waiting_count=waiting_count(session),
                active_count=_count(session, Patient.status == PatientStatus.in_progress),
                served_count_today=_count(
                    session,
                    Patient.status == PatientStatus.served,
                    col(Patient.served_at) >= midnight,
                ),
                oldest_waiting=session.exec(
                    select(func.min(Patient.created_at)).where(Patient.status == PatientStatus.waiting)
                ).one(),
            )
    except StoreUnavailable:
        if strict:
            raise
        logger.error("Error getting queue stats; returning empty stats", exc_info=True)
        return QueueStats()


def mark_no_show(session: Session, ticket_number: str, broadcaster: Optional[EventBroadcaster] = None) -> bool:
    """Mark a waiting patient as a no-show.  Any other status is a no-op."""
    statement = (
        update(Patient)
        .where(Patient.ticket_number == ticket_number, Patient.status == PatientStatus.waiting)
        .values(status=PatientStatus.no_show, updated_at=utcnow())
    )
    with transaction(session, "mark no-show"):
        marked = execute(session, statement).rowcount > 0
    if not marked:
        return False
    logger.info("Patient %s marked as no-show", ticket_number)
    if broadcaster is not None:
        broadcaster.publish(*transition_event(ticket_number, PatientStatus.no_show, None))
    return True


def cleanup(session: Session, retention_hours: int = config.CLEANUP_RETENTION_HOURS) -> int:
    """Delete served and no-show records older than the retention window."""
    cutoff = utcnow() - timedelta(hours=retention_hours)
    statement = delete(Patient).where(
        col(Patient.status).in_(TERMINAL_STATUSES), col(Patient.created_at) < cutoff
    )
    with transaction(session, "clean up patients"):
        removed = execute(session, statement).rowcount
    logger.info("Cleaned up %s old patient records", removed)
    return removed
