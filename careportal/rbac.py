"""
Role-Based Access Control – building policies and role-scoped queries.

Every query builder takes the caller's AccessContext explicitly and returns a
SQLAlchemy ``Select``; nothing here touches the database.
"""

from typing import Optional

from sqlalchemy import select

from careportal.config import ACCESS_REQUEST_STATUSES, APPOINTMENT_STATUSES, APPOINTMENT_TABS
from careportal.database import access_requests, appointments, health_records
from careportal.errors import NotAuthenticatedError, ValidationError
from careportal.models import AccessContext, Policy, Role


def require_context(ctx: Optional[AccessContext]) -> AccessContext:
    """Return *ctx* or raise NotAuthenticatedError when there is no caller."""
    if ctx is None or not ctx.user_id:
        raise NotAuthenticatedError("Not authenticated")
    return ctx


def build_policy(ctx: AccessContext) -> Policy:
    """Derive a row-scoping Policy from an AccessContext."""
    ctx = require_context(ctx)

    if ctx.role == Role.PATIENT:
        return Policy(
            role=Role.PATIENT,
            appointment_column="patient_id",
            record_column="patient_id",
            access_request_column="patient_id",
            can_add_records_for_others=False,
            can_approve_any_request=False,
            notes="Patients see only their own appointments, records and the access requests made for them.",
        )

    if ctx.role == Role.HEALTHCARE:
        return Policy(
            role=Role.HEALTHCARE,
            appointment_column="doctor_id",
            record_column=None,
            access_request_column="requester_id",
            can_add_records_for_others=True,
            can_approve_any_request=False,
            notes=(
                "Healthcare workers see appointments where they are the doctor (or a chosen patient's), "
                "may browse records but need an approved access request to read another doctor's record, "
                "and see the access requests they made."
            ),
        )

    if ctx.role == Role.ADMIN:
        return Policy(
            role=Role.ADMIN,
            appointment_column=None,
            record_column=None,
            access_request_column=None,
            can_add_records_for_others=True,
            can_approve_any_request=True,
            notes="Admin can access all rows.",
        )

    raise ValueError(f"Unknown role: {ctx.role}")


# ── Status filters ───────────────────────────────────────────────────

def resolve_appointment_status(status: Optional[str]) -> Optional[str]:
    """Map a status or dashboard tab name to a stored appointment status."""
    if not status:
        return None
    status = status.strip().lower()
    if status in APPOINTMENT_TABS:
        return APPOINTMENT_TABS[status]
    if status in APPOINTMENT_STATUSES:
        return status
    raise ValidationError(f"Unknown appointment status filter '{status}'.")


def resolve_request_status(status: Optional[str]) -> Optional[str]:
    if not status:
        return None
    status = status.strip().lower()
    if status not in ACCESS_REQUEST_STATUSES:
        raise ValidationError(f"Unknown access request status filter '{status}'.")
    return status


# ── Query builders ───────────────────────────────────────────────────

def scope_appointments(ctx: AccessContext, status: Optional[str] = None, patient_id: Optional[str] = None):
    """Appointments visible to the caller, ordered by date then time ascending.

    Patients are always pinned to their own rows. Healthcare workers see the
    rows where they are the doctor, or a target patient's rows when
    *patient_id* is given. Admins are unrestricted.
    """
    policy = build_policy(ctx)
    stmt = select(appointments)

    if patient_id and policy.role != Role.PATIENT:
        stmt = stmt.where(appointments.c.patient_id == patient_id)
    elif policy.appointment_column:
        stmt = stmt.where(appointments.c[policy.appointment_column] == ctx.user_id)

    resolved = resolve_appointment_status(status)
    if resolved:
        stmt = stmt.where(appointments.c.status == resolved)

    return stmt.order_by(appointments.c.date.asc(), appointments.c.time.asc())


def scope_health_records(ctx: AccessContext, patient_id: Optional[str] = None):
    """Health records visible to the caller, newest date first."""
    policy = build_policy(ctx)
    stmt = select(health_records)

    if policy.record_column:
        stmt = stmt.where(health_records.c[policy.record_column] == ctx.user_id)
    elif patient_id:
        stmt = stmt.where(health_records.c.patient_id == patient_id)

    return stmt.order_by(health_records.c.date.desc(), health_records.c.created_at.desc())


def scope_access_requests(ctx: AccessContext, status: Optional[str] = None):
    """Access requests visible to the caller, newest first."""
    policy = build_policy(ctx)
    stmt = select(access_requests)

    if policy.access_request_column:
        stmt = stmt.where(access_requests.c[policy.access_request_column] == ctx.user_id)

    resolved = resolve_request_status(status)
    if resolved:
        stmt = stmt.where(access_requests.c.status == resolved)

    return stmt.order_by(access_requests.c.created_at.desc())


def approved_grants(ctx: AccessContext, patient_ids=None):
    """Approved access requests held by a healthcare caller."""
    stmt = (
        select(access_requests.c.patient_id, access_requests.c.record_id)
        .where(access_requests.c.requester_id == ctx.user_id)
        .where(access_requests.c.status == "approved")
    )
    if patient_ids is not None:
        stmt = stmt.where(access_requests.c.patient_id.in_(list(patient_ids)))
    return stmt


def can_read_record(ctx: AccessContext, record: dict, grants) -> bool:
    """Whether the caller may read the content of *record*.

    *grants* is an iterable of ``(patient_id, record_id)`` pairs from approved
    access requests; a None record_id grants all of that patient's records.
    """
    policy = build_policy(ctx)
    if policy.role == Role.ADMIN:
        return True
    if policy.role == Role.PATIENT:
        return record["patient_id"] == ctx.user_id
    if policy.role == Role.HEALTHCARE:
        if record.get("doctor_id") == ctx.user_id:
            return True
        for patient_id, record_id in grants:
            if patient_id == record["patient_id"] and record_id in (None, record["id"]):
                return True
        return False
    raise ValueError(f"Unknown role: {policy.role}")
