"""Ticket number allocation.

The counter lives in the singleton ``clinic_settings`` row.  Allocation is
one ``UPDATE ... SET n = n + 1 ... RETURNING n`` statement, so the store
performs the read-increment-write and concurrent joins can never be handed
the same number.
"""

from __future__ import annotations

import logging

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

import config
from database import execute, transaction
from errors import AllocationFailure
from models import ClinicSettings, utcnow

logger = logging.getLogger(__name__)


def format_ticket(number: int) -> str:
    return f"{config.CLINIC_CODE}-{number}"


def increment_counter(session: Session) -> int:
    """Bump the counter inside the caller's transaction and return it."""
    statement = (
        update(ClinicSettings)
        .where(ClinicSettings.id == 1)
        .values(current_queue_number=ClinicSettings.current_queue_number + 1)
        .returning(ClinicSettings.current_queue_number)
    )
    try:
        number = execute(session, statement).scalar_one_or_none()
    except SQLAlchemyError as exc:
        logger.error("Error generating ticket: %s", exc)
        raise AllocationFailure("Failed to generate ticket number") from exc
    if number is None:
        raise AllocationFailure("Clinic settings row is missing; run init_db first")
    return number


def allocate(session: Session) -> str:
    """Issue the next ticket number and commit it."""
    with transaction(session, "allocate ticket"):
        number = increment_counter(session)
    ticket_number = format_ticket(number)
    logger.info("Generated ticket: %s", ticket_number)
    return ticket_number


def peek_next(session: Session) -> str:
    """The ticket that would be issued next.  Display only."""
    with transaction(session, "peek next ticket"):
        current = session.exec(
            select(ClinicSettings.current_queue_number).where(ClinicSettings.id == 1)
        ).first()
    if current is None:
        current = config.DEFAULT_QUEUE_NUMBER
    return format_ticket(current + 1)


def reset_counter(session: Session, start: int = config.DEFAULT_QUEUE_NUMBER) -> bool:
    """Set the counter to ``start``.  Only safe with an empty queue."""
    statement = (
        update(ClinicSettings)
        .where(ClinicSettings.id == 1)
        .values(current_queue_number=start, updated_at=utcnow())
    )
    with transaction(session, "reset queue number"):
        reset = execute(session, statement).rowcount > 0
    if reset:
        logger.info("Queue number reset to: %s", start)
    return reset
