"""Pydantic schemas for requests.

Request bodies for the web layer, plus the settings allow-list.  Responses
are returned as plain dicts built from the core's records.
"""
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import PatientStatus

CLOCK_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d(:[0-5]\d)?$"


class JoinRequest(BaseModel):
    phone: Optional[str] = None
    email: Optional[str] = None


class StaffAction(BaseModel):
    staff_id: int


class TransitionRequest(BaseModel):
    status: PatientStatus
    staff_id: Optional[int] = None


class SettingsUpdate(BaseModel):
    """Fields an administrator may change.  Anything else is rejected."""

    model_config = ConfigDict(extra="forbid")

    clinic_name: Optional[str] = Field(default=None, min_length=1)
    avg_service_minutes: Optional[int] = Field(default=None, ge=1)
    opening_time: Optional[str] = Field(default=None, pattern=CLOCK_PATTERN)
    closing_time: Optional[str] = Field(default=None, pattern=CLOCK_PATTERN)
    contact_phone: Optional[str] = None
    contact_email: Optional[str] = None
    address: Optional[str] = None

    @field_validator("clinic_name", "avg_service_minutes")
    @classmethod
    def not_null(cls, value):
        # Optional only so they can be left out; the columns are NOT NULL.
        if value is None:
            raise ValueError("may not be null")
        return value


class MaintenanceRequest(BaseModel):
    passcode: str
    action: str
    start_number: Optional[int] = Field(default=None, ge=0)
    retention_hours: Optional[int] = Field(default=None, ge=0)
