"""
Domain types used across the application.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Role(str, Enum):
    """The closed set of portal roles."""
    PATIENT = "patient"
    HEALTHCARE = "healthcare"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value) -> "Role":
        """Parse a stored or submitted role string; raises ValueError if unknown."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unsupported role '{value}'.")

    @property
    def label(self) -> str:
        return {
            Role.PATIENT: "Patient",
            Role.HEALTHCARE: "Healthcare Worker",
            Role.ADMIN: "Administrator",
        }[self]


@dataclass
class Identity:
    """An identity as issued by the auth provider."""
    uid: str
    email: str
    display_name: str


@dataclass
class AccessContext:
    """The resolved caller: identity plus role. Passed to every data-access call."""
    user_id: str
    email: str
    display_name: str
    role: Role


@dataclass
class Policy:
    """Row-scoping rules derived from an AccessContext.

    Each ``*_column`` names the column that must equal the caller's id,
    or is None when the role is unrestricted for that entity.
    """
    role: Role
    appointment_column: Optional[str]
    record_column: Optional[str]
    access_request_column: Optional[str]
    can_add_records_for_others: bool
    can_approve_any_request: bool
    notes: str


@dataclass
class Notice:
    """A user-facing notification (toast) produced by a panel."""
    title: str
    description: str
    variant: str = "default"   # "default" or "destructive"

    def to_dict(self) -> dict:
        return {"title": self.title, "description": self.description, "variant": self.variant}


@dataclass
class BookingForm:
    """Raw booking-dialog selections, before lookup-table mapping."""
    date: Optional[str] = None
    appointment_type: Optional[str] = None
    department: Optional[str] = None
    doctor: Optional[str] = None
    time: Optional[str] = None
    notes: str = ""
    patient_id: Optional[str] = None
    appointment_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "BookingForm":
        return cls(
            date=data.get("date"),
            appointment_type=data.get("type") or data.get("appointment_type"),
            department=data.get("department"),
            doctor=data.get("doctor") or data.get("doctor_id"),
            time=data.get("time"),
            notes=data.get("notes") or "",
            patient_id=data.get("patient_id"),
            appointment_id=data.get("appointment_id") or data.get("id"),
        )


@dataclass
class RecordForm:
    """Fields submitted when adding a health record."""
    title: str = ""
    date: str = ""
    record_type: str = ""
    description: str = ""
    file_url: Optional[str] = None
    hospital: Optional[str] = None
    patient_id: Optional[str] = None
    doctor_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "RecordForm":
        return cls(
            title=(data.get("title") or "").strip(),
            date=(data.get("date") or "").strip(),
            record_type=(data.get("record_type") or data.get("type") or "").strip(),
            description=data.get("description") or "",
            file_url=data.get("file_url"),
            hospital=data.get("hospital"),
            patient_id=data.get("patient_id"),
            doctor_id=data.get("doctor_id"),
        )
