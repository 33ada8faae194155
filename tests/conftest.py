"""
Shared fixtures: an in-memory database with the portal schema and a few users.
"""

import pytest
from sqlalchemy import create_engine, insert
from sqlalchemy.pool import StaticPool

from careportal.database import appointments, create_schema, health_records, new_id, users
from careportal.models import AccessContext, Role


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    create_schema(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def make_user(engine):
    """Insert a user row and return its AccessContext."""
    def _make(user_id, role="patient", display_name=None):
        role = Role.parse(role)
        name = display_name or user_id
        with engine.begin() as conn:
            conn.execute(insert(users).values(
                id=user_id, email=f"{user_id.lower()}@example.com", display_name=name, role=role.value,
            ))
        return AccessContext(user_id=user_id, email=f"{user_id.lower()}@example.com",
                             display_name=name, role=role)
    return _make


@pytest.fixture
def add_appointment(engine):
    def _add(patient_id, doctor_id=None, date="2024-06-01", status="scheduled", time="09:00",
             department="General Medicine", title="General Checkup"):
        appointment_id = new_id()
        with engine.begin() as conn:
            conn.execute(insert(appointments).values(
                id=appointment_id, patient_id=patient_id, doctor_id=doctor_id, date=date, time=time,
                status=status, department=department, title=title, notes="",
            ))
        return appointment_id
    return _add


@pytest.fixture
def add_record(engine):
    def _add(patient_id, doctor_id=None, date="2024-01-01", title="Blood Test Results",
             description="All values in range", file_url="https://files.example.com/r.pdf"):
        record_id = new_id()
        with engine.begin() as conn:
            conn.execute(insert(health_records).values(
                id=record_id, patient_id=patient_id, doctor_id=doctor_id, title=title,
                record_type="Lab Results", date=date, description=description, file_url=file_url,
                status="active",
            ))
        return record_id
    return _add


@pytest.fixture
def people(make_user):
    """Two patients, two healthcare workers and an admin."""
    return {
        "p1": make_user("P1", "patient", "Jane Doe"),
        "p2": make_user("P2", "patient", "John Smith"),
        "d1": make_user("D1", "healthcare", "Dr. Sarah Johnson"),
        "d2": make_user("D2", "healthcare", "Dr. Michael Chen"),
        "admin": make_user("A1", "admin", "Admin"),
    }
