"""Patient status transitions.

Legal moves are listed once, in ``models.TRANSITIONS``.  Each transition
is a conditional ``UPDATE ... WHERE status = <expected>``: when two staff
members call the same waiting ticket at the same moment, exactly one update
matches a row and the other sees zero rows and gets ``InvalidTransition``.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlmodel import Session, col, select

from database import execute, transaction
from errors import InvalidTransition, TicketNotFound
from events import EventBroadcaster, transition_event
from models import Patient, PatientStatus, ServiceLogEntry, can_transition, select_patients, utcnow

logger = logging.getLogger(__name__)


@dataclass
class TransitionResult:
    ticket_number: str
    status: PatientStatus
    staff_id: Optional[int]
    updated_at: datetime
    actual_wait_minutes: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


def wait_minutes(checkin: datetime, served: datetime) -> int:
    """Whole minutes between check-in and service, rounded down."""
    return int((served - checkin).total_seconds() // 60)


def _changes_for(patient: Patient, target: PatientStatus, staff_id: Optional[int], now: datetime) -> Dict[str, Any]:
    changes: Dict[str, Any] = {"status": target, "updated_at": now}
    if target == PatientStatus.in_progress:
        changes.update(served_by=staff_id, called_at=now)
    elif target == PatientStatus.served:
        changes.update(
            served_by=staff_id,
            served_at=now,
            actual_wait_minutes=wait_minutes(patient.created_at, now),
        )
    return changes


def transition(
    session: Session,
    ticket_number: str,
    target: PatientStatus,
    staff_id: Optional[int] = None,
    broadcaster: Optional[EventBroadcaster] = None,
) -> TransitionResult:
    target = PatientStatus(target)
    with transaction(session, f"update status for {ticket_number}"):
        patient = session.exec(select_patients().where(Patient.ticket_number == ticket_number)).first()
        if patient is None:
            raise TicketNotFound(ticket_number)
        current = patient.status
        if not can_transition(current, target):
            raise InvalidTransition(ticket_number, current.value, target.value)

        now = utcnow()
        changes = _changes_for(patient, target, staff_id, now)
        updated = execute(
            session,
            update(Patient)
            .where(Patient.id == patient.id, Patient.status == current)
            .values(**changes),
        ).rowcount
        if updated == 0:
            # Someone else moved it between our read and our write.
            raise InvalidTransition(ticket_number, current.value, target.value)

        if target == PatientStatus.served:
            session.add(
                ServiceLogEntry(
                    ticket_number=ticket_number,
                    checkin_time=patient.created_at,
                    served_time=now,
                    total_wait_minutes=changes["actual_wait_minutes"],
                    served_by=staff_id,
                )
            )
        # The Core UPDATE bypassed the identity map.
        session.expire(patient)

    if target == PatientStatus.served:
        logger.info(
            "Patient %s marked as served. Wait time: %s minutes",
            ticket_number,
            changes["actual_wait_minutes"],
        )
    else:
        logger.info("Patient %s status updated to: %s", ticket_number, target.value)

    if broadcaster is not None:
        broadcaster.publish(*transition_event(ticket_number, target, staff_id))

    return TransitionResult(
        ticket_number=ticket_number,
        status=target,
        staff_id=staff_id,
        updated_at=now,
        actual_wait_minutes=changes.get("actual_wait_minutes"),
    )


def call_next(
    session: Session, staff_id: Optional[int], broadcaster: Optional[EventBroadcaster] = None
) -> Optional[TransitionResult]:
    """Call the patient at the head of the queue.  ``None`` if nobody waits.

    If another staff member calls the same head first this raises
    ``InvalidTransition``; calling again picks the new head.
    """
    with transaction(session, "find next patient"):
        head = session.exec(
            select(Patient.ticket_number)
            .where(Patient.status == PatientStatus.waiting)
            .order_by(col(Patient.created_at), col(Patient.id))
        ).first()
    if head is None:
        return None
    result = transition(session, head, PatientStatus.in_progress, staff_id, broadcaster)
    logger.info("Patient called: %s by staff %s", head, staff_id)
    return result
