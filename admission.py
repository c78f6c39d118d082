"""Admission policy applied by the caller before a join.

Opening hours and queue capacity are configuration, not queue logic, so
``services.create`` never raises these; the web layer calls
``check_admission`` with data the core already exposes.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

import config
from clinic_settings import is_open, operating_hours
from errors import ClinicQueueError
from models import ClinicSettings
from services import QueueStats


class ClinicClosed(ClinicQueueError):
    status_code = 400
    error = "clinic_closed"


class QueueFull(ClinicQueueError):
    status_code = 400
    error = "queue_full"


def check_admission(
    settings: ClinicSettings,
    queue_stats: QueueStats,
    now: Optional[datetime] = None,
    max_queue_length: int = config.MAX_QUEUE_LENGTH,
) -> None:
    if not is_open(settings, now):
        raise ClinicClosed(
            f"The clinic is currently closed. Opening hours: {operating_hours(settings)}"
        )
    if queue_stats.waiting_count >= max_queue_length:
        raise QueueFull("Queue is currently full. Please try again later.")
