"""
Workflow mutators – the write side of the portal.

Each mutator validates its input before touching the store and locates the
target row through the caller's role-scoped query, so a row outside the
caller's scope is reported as not found.
"""

from datetime import date as date_cls
from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, insert, select, update

from careportal.config import (
    APPOINTMENT_TIMES, APPOINTMENT_TYPES, COMMUNITY_CATEGORIES, DEPARTMENTS, DOCTOR_DIRECTORY,
)
from careportal.database import (
    access_requests, appointments, community_comments, community_posts,
    conversation_participants, conversations, execute_write, fetch_all, fetch_one,
    health_records, messages, new_id, users,
)
from careportal.errors import (
    AccessDeniedError, InvalidTransitionError, NotFoundError, ValidationError,
)
from careportal.models import AccessContext, BookingForm, RecordForm, Role
from careportal.queries import get_community_post, require_participant
from careportal.rbac import build_policy, require_context, scope_access_requests, scope_appointments


def _valid_date(value: Optional[str], field: str = "date") -> str:
    if not value:
        raise ValidationError(f"Please select a {field}.")
    value = str(value).strip()
    parsed = None
    if len(value) == 10:
        try:
            parsed = date_cls.fromisoformat(value)
        except ValueError:
            parsed = None
    if parsed is None:
        raise ValidationError(f"Invalid {field} '{value}', expected YYYY-MM-DD.")
    # stored dates compare as strings, so keep the canonical form
    return parsed.isoformat()


# ── Appointments ─────────────────────────────────────────────────────

def _map_choice(value: Optional[str], table: dict, field: str, required: bool = False) -> str:
    """Map a UI selection to its stored value; stored values pass through."""
    if not value:
        if required:
            raise ValidationError(f"Please select a {field}.")
        return ""
    if value in table:
        return table[value]
    if value in table.values():
        return value
    raise ValidationError(f"Unknown {field} '{value}'.")


def _resolve_doctor(engine, ctx: AccessContext, selection: Optional[str]) -> Optional[str]:
    """Turn a doctor picker value (directory key or user id) into a healthcare user id."""
    if not selection:
        return ctx.user_id if ctx.role == Role.HEALTHCARE else None

    stmt = select(users.c.id).where(users.c.role == Role.HEALTHCARE.value)
    if selection in DOCTOR_DIRECTORY:
        stmt = stmt.where(users.c.display_name == DOCTOR_DIRECTORY[selection])
    else:
        stmt = stmt.where(users.c.id == selection)
    row = fetch_one(engine, stmt, "doctor")
    if row is None:
        raise ValidationError(f"Unknown doctor '{selection}'.")
    return row["id"]


def _require_patient(engine, patient_id: Optional[str]) -> str:
    """Check that *patient_id* names an existing patient-role user."""
    if not patient_id:
        raise ValidationError("Please select a patient.")
    patient = fetch_one(engine, select(users.c.role).where(users.c.id == patient_id), "patient")
    if patient is None or patient["role"] != Role.PATIENT.value:
        raise ValidationError("Unknown patient.")
    return patient_id


def _resolve_patient(engine, ctx: AccessContext, patient_id: Optional[str]) -> str:
    if ctx.role == Role.PATIENT:
        return ctx.user_id
    return _require_patient(engine, patient_id)


def find_appointment(engine, ctx: AccessContext, appointment_id: str) -> dict:
    """Locate an appointment within the caller's scope."""
    stmt = scope_appointments(ctx).where(appointments.c.id == appointment_id)
    row = fetch_one(engine, stmt, "appointment")
    if row is None:
        raise NotFoundError("Appointment not found.")
    return row


def book_appointment(engine, ctx: AccessContext, form: BookingForm) -> dict:
    """Create a scheduled appointment, or update an existing one when editing."""
    ctx = require_context(ctx)
    appointment_date = _valid_date(form.date)

    values = {
        "date": appointment_date,
        "title": _map_choice(form.appointment_type, APPOINTMENT_TYPES, "appointment type"),
        "department": _map_choice(form.department, DEPARTMENTS, "department"),
        "time": _map_choice(form.time, APPOINTMENT_TIMES, "time", required=True),
        "doctor_id": _resolve_doctor(engine, ctx, form.doctor),
        "notes": form.notes or "",
        "updated_at": datetime.utcnow(),
    }
    if form.appointment_id and not form.doctor:
        values.pop("doctor_id")

    if form.appointment_id:
        existing = find_appointment(engine, ctx, form.appointment_id)
        if existing["status"] != "scheduled":
            raise InvalidTransitionError(f"Cannot edit a {existing['status']} appointment.")
        execute_write(
            engine,
            update(appointments).where(appointments.c.id == existing["id"]).values(**values),
            "updating appointment",
        )
        appointment_id = existing["id"]
    else:
        appointment_id = new_id()
        execute_write(engine, insert(appointments).values(
            id=appointment_id,
            patient_id=_resolve_patient(engine, ctx, form.patient_id),
            status="scheduled",
            **values,
        ), "adding appointment")

    return fetch_one(engine, select(appointments).where(appointments.c.id == appointment_id), "appointment")


def cancel_appointment(engine, ctx: AccessContext, appointment_id: str) -> dict:
    """scheduled -> cancelled. There is no way back except rebooking."""
    ctx = require_context(ctx)
    row = find_appointment(engine, ctx, appointment_id)
    if row["status"] != "scheduled":
        raise InvalidTransitionError(f"Cannot cancel a {row['status']} appointment.")
    changed = execute_write(
        engine,
        update(appointments)
        .where(appointments.c.id == row["id"])
        .where(appointments.c.status == "scheduled")
        .values(status="cancelled", updated_at=datetime.utcnow()),
        "cancelling appointment",
    )
    if not changed:
        raise InvalidTransitionError("Appointment is no longer scheduled.")
    row["status"] = "cancelled"
    return row


def rebook_appointment(engine, ctx: AccessContext, appointment_id: str, new_date: Optional[str],
                       new_time: Optional[str] = None) -> dict:
    """Book a fresh appointment from a cancelled one.

    A new date is required; the time defaults to the cancelled appointment's.
    """
    ctx = require_context(ctx)
    appointment_date = _valid_date(new_date)
    old = find_appointment(engine, ctx, appointment_id)
    if old["status"] != "cancelled":
        raise InvalidTransitionError("Only cancelled appointments can be rebooked.")

    new = BookingForm(
        date=appointment_date,
        appointment_type=old["title"] or None,
        department=old["department"] or None,
        doctor=old["doctor_id"],
        time=new_time or old["time"],
        notes=old["notes"],
        patient_id=old["patient_id"],
    )
    return book_appointment(engine, ctx, new)


def complete_due_appointments(engine, today: Optional[str] = None) -> int:
    """Mark scheduled appointments dated before *today* as completed."""
    today = _valid_date(today, "cutoff date") if today else date_cls.today().isoformat()
    due = fetch_all(
        engine,
        select(appointments.c.id)
        .where(appointments.c.status == "scheduled")
        .where(appointments.c.date < today),
        "due appointments",
    )
    if due:
        execute_write(
            engine,
            update(appointments)
            .where(appointments.c.id.in_([r["id"] for r in due]))
            .values(status="completed", updated_at=datetime.utcnow()),
            "completing appointments",
        )
    return len(due)


# ── Health records ───────────────────────────────────────────────────

def add_health_record(engine, ctx: AccessContext, form: RecordForm) -> dict:
    """Insert an active record. Patient defaults to the caller, doctor to the caller."""
    ctx = require_context(ctx)
    policy = build_policy(ctx)

    if not form.title or not form.date or not form.record_type:
        raise ValidationError("Please fill in all required fields.")
    record_date = _valid_date(form.date)

    patient_id = form.patient_id or ctx.user_id
    if patient_id != ctx.user_id and not policy.can_add_records_for_others:
        raise AccessDeniedError("Patients can only add records to their own file.")
    if patient_id != ctx.user_id:
        _require_patient(engine, patient_id)
    doctor_id = form.doctor_id or ctx.user_id

    record_id = new_id()
    execute_write(engine, insert(health_records).values(
        id=record_id,
        patient_id=patient_id,
        doctor_id=doctor_id,
        title=form.title,
        record_type=form.record_type,
        date=record_date,
        description=form.description or "",
        file_url=form.file_url,
        hospital=form.hospital,
        status="active",
    ), "adding health record")
    return fetch_one(engine, select(health_records).where(health_records.c.id == record_id), "health record")


EDITABLE_RECORD_FIELDS = ("title", "record_type", "date", "description", "file_url", "hospital")


def update_health_record(engine, ctx: AccessContext, record_id: str, updates: dict) -> dict:
    """Edit a record. Only its author or an admin may do so."""
    ctx = require_context(ctx)
    row = fetch_one(engine, select(health_records).where(health_records.c.id == record_id), "health record")
    if row is None:
        raise NotFoundError("Health record not found.")
    if ctx.role != Role.ADMIN and row["doctor_id"] != ctx.user_id:
        raise AccessDeniedError("Only the record's author or an admin can edit it.")

    values = {k: v for k, v in updates.items() if k in EDITABLE_RECORD_FIELDS}
    if not values:
        raise ValidationError("Nothing to update.")
    for key in ("title", "record_type"):
        if key in values and not (values[key] or "").strip():
            raise ValidationError(f"{key} cannot be empty.")
    if "date" in values:
        values["date"] = _valid_date(values["date"])

    execute_write(
        engine,
        update(health_records).where(health_records.c.id == record_id).values(**values),
        "updating health record",
    )
    return fetch_one(engine, select(health_records).where(health_records.c.id == record_id), "health record")


# ── Access requests ──────────────────────────────────────────────────

def request_record_access(engine, ctx: AccessContext, patient_id: str, reason: str,
                          record_id: Optional[str] = None) -> dict:
    """A healthcare worker asks a patient for access to one record (or all of them)."""
    ctx = require_context(ctx)
    if not (reason or "").strip():
        raise ValidationError("Please provide a reason for the request.")
    if ctx.role != Role.HEALTHCARE:
        raise AccessDeniedError("Only healthcare workers can request record access.")
    _require_patient(engine, patient_id)
    if record_id:
        record = fetch_one(
            engine,
            select(health_records).where(and_(
                health_records.c.id == record_id, health_records.c.patient_id == patient_id,
            )),
            "health record",
        )
        if record is None:
            raise ValidationError("The record does not belong to this patient.")
        if record["doctor_id"] == ctx.user_id:
            raise ValidationError("You already have access to your own record.")

    request_id = new_id()
    execute_write(engine, insert(access_requests).values(
        id=request_id,
        requester_id=ctx.user_id,
        patient_id=patient_id,
        record_id=record_id or None,
        status="pending",
        request_reason=reason.strip(),
    ), "creating access request")
    return fetch_one(engine, select(access_requests).where(access_requests.c.id == request_id), "access request")


def respond_to_access_request(engine, ctx: AccessContext, request_id: str, approve: bool,
                              response_reason: Optional[str] = None) -> dict:
    """pending -> approved | rejected, by the target patient or an admin."""
    ctx = require_context(ctx)
    policy = build_policy(ctx)
    if ctx.role == Role.HEALTHCARE:
        raise AccessDeniedError("Only the patient or an admin can respond to access requests.")

    row = fetch_one(
        engine,
        scope_access_requests(ctx).where(access_requests.c.id == request_id),
        "access request",
    )
    if row is None:
        raise NotFoundError("Access request not found.")
    if not policy.can_approve_any_request and row["patient_id"] != ctx.user_id:
        raise AccessDeniedError("You cannot respond to this request.")
    if row["status"] != "pending":
        raise InvalidTransitionError(f"Access request is already {row['status']}.")

    status = "approved" if approve else "rejected"
    changed = execute_write(
        engine,
        update(access_requests)
        .where(access_requests.c.id == request_id)
        .where(access_requests.c.status == "pending")
        .values(status=status, response_reason=response_reason, updated_at=datetime.utcnow()),
        "updating access request",
    )
    if not changed:
        raise InvalidTransitionError("Access request was already answered.")
    return fetch_one(engine, select(access_requests).where(access_requests.c.id == request_id), "access request")


# ── Messaging ────────────────────────────────────────────────────────

def create_conversation(engine, ctx: AccessContext, participant_id: str) -> str:
    """Return the id of the two-party conversation with *participant_id*, creating it if needed."""
    ctx = require_context(ctx)
    if not participant_id or participant_id == ctx.user_id:
        raise ValidationError("Please choose someone else to message.")
    if fetch_one(engine, select(users.c.id).where(users.c.id == participant_id), "user") is None:
        raise ValidationError("Unknown user.")

    mine = select(conversation_participants.c.conversation_id).where(
        conversation_participants.c.user_id == ctx.user_id
    )
    shared = fetch_one(
        engine,
        select(conversation_participants.c.conversation_id)
        .where(conversation_participants.c.user_id == participant_id)
        .where(conversation_participants.c.conversation_id.in_(mine)),
        "existing conversation",
    )
    if shared:
        return shared["conversation_id"]

    conversation_id = new_id()
    execute_write(engine, [
        insert(conversations).values(id=conversation_id),
        insert(conversation_participants).values([
            {"conversation_id": conversation_id, "user_id": ctx.user_id},
            {"conversation_id": conversation_id, "user_id": participant_id},
        ]),
    ], "creating conversation")
    return conversation_id


def send_message(engine, ctx: AccessContext, conversation_id: str, content: str) -> dict:
    ctx = require_context(ctx)
    if not (content or "").strip():
        raise ValidationError("Message cannot be empty.")
    require_participant(engine, ctx, conversation_id)

    message_id = new_id()
    execute_write(engine, insert(messages).values(
        id=message_id,
        conversation_id=conversation_id,
        sender_id=ctx.user_id,
        content=content.strip(),
        is_read=False,
    ), "sending message")
    return fetch_one(engine, select(messages).where(messages.c.id == message_id), "message")


# ── Community ────────────────────────────────────────────────────────

def _clean_tags(tags) -> List[str]:
    if isinstance(tags, str):
        tags = tags.split(",")
    seen = []
    for tag in tags or []:
        tag = str(tag).strip()
        if tag and tag not in seen:
            seen.append(tag)
    return seen


def create_post(engine, ctx: AccessContext, title: str, content: str, category: str, tags=None) -> dict:
    ctx = require_context(ctx)
    if not (title or "").strip() or not (content or "").strip():
        raise ValidationError("Title and content are required.")
    if category not in COMMUNITY_CATEGORIES:
        raise ValidationError(f"Unknown category '{category}'.")

    post_id = new_id()
    execute_write(engine, insert(community_posts).values(
        id=post_id,
        author_id=ctx.user_id,
        title=title.strip(),
        content=content.strip(),
        category=category,
        tags=_clean_tags(tags),
        upvotes=0,
        downvotes=0,
        status="active",
    ), "creating community post")
    return get_community_post(engine, post_id)


def add_comment(engine, ctx: AccessContext, post_id: str, content: str) -> dict:
    ctx = require_context(ctx)
    if not (content or "").strip():
        raise ValidationError("Comment cannot be empty.")
    get_community_post(engine, post_id)

    comment_id = new_id()
    execute_write(engine, insert(community_comments).values(
        id=comment_id,
        post_id=post_id,
        author_id=ctx.user_id,
        content=content.strip(),
        status="active",
    ), "adding comment")
    return fetch_one(engine, select(community_comments).where(community_comments.c.id == comment_id), "comment")


def vote_post(engine, ctx: AccessContext, post_id: str, direction: str) -> dict:
    ctx = require_context(ctx)
    if direction not in ("up", "down"):
        raise ValidationError("Vote must be 'up' or 'down'.")
    get_community_post(engine, post_id)

    column = community_posts.c.upvotes if direction == "up" else community_posts.c.downvotes
    execute_write(
        engine,
        update(community_posts).where(community_posts.c.id == post_id).values({column: column + 1}),
        "voting on post",
    )
    return get_community_post(engine, post_id)


def moderate_post(engine, ctx: AccessContext, post_id: str, status: str) -> dict:
    """Admins hide (``removed``) or restore (``active``) a post."""
    ctx = require_context(ctx)
    if ctx.role != Role.ADMIN:
        raise AccessDeniedError("Only admins can moderate posts.")
    if status not in ("active", "removed"):
        raise ValidationError("Status must be 'active' or 'removed'.")
    get_community_post(engine, post_id, include_removed=True)
    execute_write(
        engine,
        update(community_posts).where(community_posts.c.id == post_id).values(status=status),
        "moderating post",
    )
    return get_community_post(engine, post_id, include_removed=True)
