"""Clinic settings: the singleton configuration row.

Updates are partial and go through ``SettingsUpdate``, a fixed allow-list;
a field outside the list is rejected, never silently dropped.  The ticket
counter shares the row but is only changed by ``sequence``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import ValidationError
from sqlalchemy import update
from sqlmodel import Session, col, select

import config
from database import execute, transaction
from errors import InvalidSettingsUpdate
from models import ClinicSettings, Patient, PatientStatus, utcnow
from schemas import SettingsUpdate

logger = logging.getLogger(__name__)


def get_settings(session: Session) -> ClinicSettings:
    """Return the settings row, creating the default one if it is missing."""
    with transaction(session, "get clinic settings"):
        settings = session.get(ClinicSettings, 1, populate_existing=True)
        if settings is None:
            settings = ClinicSettings(id=1)
            session.add(settings)
            logger.info("Default clinic settings created")
    return settings


def update_settings(session: Session, changes: Dict[str, Any]) -> ClinicSettings:
    try:
        values = SettingsUpdate.model_validate(changes).model_dump(exclude_unset=True)
    except ValidationError as exc:
        raise InvalidSettingsUpdate(f"Invalid settings update: {exc.errors()}") from exc
    if not values:
        raise InvalidSettingsUpdate("No valid fields to update")

    values["updated_at"] = utcnow()
    with transaction(session, "update clinic settings"):
        execute(session, update(ClinicSettings).where(ClinicSettings.id == 1).values(**values))
    logger.info("Clinic settings updated: %s", ", ".join(sorted(values)))
    return get_settings(session)


def refresh_average_service_minutes(session: Session, sample_size: int = 20) -> int:
    """Recompute the average service time from the most recent visits.

    Service time is ``served_at - called_at``.  With no completed visits the
    configured value is kept.
    """
    with transaction(session, "refresh average service time"):
        recent = session.exec(
            select(Patient.called_at, Patient.served_at)
            .where(
                Patient.status == PatientStatus.served,
                col(Patient.called_at).is_not(None),
                col(Patient.served_at).is_not(None),
            )
            .order_by(col(Patient.served_at).desc())
            .limit(sample_size)
        ).all()
        current = session.exec(
            select(ClinicSettings.avg_service_minutes).where(ClinicSettings.id == 1)
        ).first() or config.AVERAGE_SERVICE_MINUTES
        if not recent:
            return current

        seconds = sum((served - called).total_seconds() for called, served in recent)
        average = max(1, round(seconds / len(recent) / 60))
        execute(
            session,
            update(ClinicSettings)
            .where(ClinicSettings.id == 1)
            .values(avg_service_minutes=average, updated_at=utcnow()),
        )
    logger.info("Updated average service time: %s minutes", average)
    return average


def _minutes(clock: str) -> int:
    hours, minutes = clock.split(":")[:2]
    return int(hours) * 60 + int(minutes)


def is_open(settings: ClinicSettings, now: Optional[datetime] = None) -> bool:
    """True within opening hours, or always when no hours are set."""
    if not settings.opening_time or not settings.closing_time:
        return True
    now = now or datetime.now()
    current = now.hour * 60 + now.minute
    return _minutes(settings.opening_time) <= current <= _minutes(settings.closing_time)


def operating_hours(settings: ClinicSettings) -> str:
    if not settings.opening_time or not settings.closing_time:
        return "24/7"

    def twelve_hour(clock: str) -> str:
        hours, minutes = clock.split(":")[:2]
        hour = int(hours)
        suffix = "PM" if hour >= 12 else "AM"
        return f"{hour % 12 or 12}:{minutes} {suffix}"

    return f"{twelve_hour(settings.opening_time)} - {twelve_hour(settings.closing_time)}"
