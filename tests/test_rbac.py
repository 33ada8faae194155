"""
Unit tests for RBAC – policies and role-scoped queries.
"""

import pytest

import careportal.rbac as rbac
from careportal.config import get_env
from careportal.database import fetch_all
from careportal.errors import NotAuthenticatedError, ValidationError
from careportal.models import AccessContext, Policy, Role
from careportal.rbac import (
    build_policy, can_read_record, require_context, resolve_appointment_status,
    scope_access_requests, scope_appointments, scope_health_records,
)
from careportal.workflows import request_record_access


def run(engine, stmt):
    return fetch_all(engine, stmt, "rows")


# ── Tests: get_env ───────────────────────────────────────────────────

def test_get_env_ok(monkeypatch):
    monkeypatch.setenv("X", "123")
    assert get_env("X") == "123"


def test_get_env_missing_exits(monkeypatch, capsys):
    monkeypatch.delenv("MISSING_ENV", raising=False)
    with pytest.raises(SystemExit) as e:
        get_env("MISSING_ENV")
    assert e.value.code == 1
    err = capsys.readouterr().err
    assert "ERROR: env var MISSING_ENV is not set" in err


# ── Tests: context / policy ──────────────────────────────────────────

def test_require_context_missing():
    with pytest.raises(NotAuthenticatedError):
        require_context(None)


def test_scope_without_context_builds_nothing():
    with pytest.raises(NotAuthenticatedError, match="Not authenticated"):
        scope_appointments(None)


def test_build_policy_patient():
    ctx = AccessContext("P1", "p1@example.com", "Pat", Role.PATIENT)
    policy = build_policy(ctx)
    assert policy.appointment_column == "patient_id"
    assert policy.access_request_column == "patient_id"
    assert policy.can_add_records_for_others is False


def test_build_policy_admin_ok():
    ctx = AccessContext("A1", "a@example.com", "Admin", Role.ADMIN)
    policy = build_policy(ctx)
    assert policy.role == Role.ADMIN
    assert policy.appointment_column is None
    assert policy.record_column is None
    assert policy.can_approve_any_request is True


def test_build_policy_unknown_role():
    ctx = AccessContext("X", "x@example.com", "X", "nurse")
    with pytest.raises(ValueError, match="Unknown role"):
        build_policy(ctx)


def test_role_parse_rejects_unknown():
    assert Role.parse(" Healthcare ") == Role.HEALTHCARE
    with pytest.raises(ValueError, match="Unsupported role"):
        Role.parse("pharmacy")


# ── Tests: appointments ──────────────────────────────────────────────

def test_patient_sees_only_own_appointments_ordered(engine, people, add_appointment):
    later = add_appointment("P1", "D1", date="2024-07-01", status="scheduled")
    earlier = add_appointment("P1", "D1", date="2024-05-01", status="cancelled")
    add_appointment("P2", "D1", date="2024-06-01", status="scheduled")

    rows = run(engine, scope_appointments(people["p1"]))

    assert [r["id"] for r in rows] == [earlier, later]
    assert all(r["patient_id"] == "P1" for r in rows)


def test_patient_cannot_widen_scope_with_target(engine, people, add_appointment):
    add_appointment("P2", "D1")
    rows = run(engine, scope_appointments(people["p1"], patient_id="P2"))
    assert rows == []


def test_healthcare_sees_own_doctor_rows(engine, people, add_appointment):
    add_appointment("P1", "D1")
    add_appointment("P2", "D1")
    add_appointment("P2", "D2")

    rows = run(engine, scope_appointments(people["d1"]))

    assert len(rows) == 2
    assert {r["doctor_id"] for r in rows} == {"D1"}


def test_healthcare_with_target_patient_scopes_by_patient(engine, people, add_appointment):
    add_appointment("P1", "D1")
    add_appointment("P2", "D1")
    add_appointment("P2", "D2")

    rows = run(engine, scope_appointments(people["d1"], patient_id="P2"))

    assert len(rows) == 2
    assert {r["patient_id"] for r in rows} == {"P2"}


def test_admin_unrestricted_with_status_filter(engine, people, add_appointment):
    add_appointment("P1", "D1", status="scheduled")
    add_appointment("P2", "D2", status="scheduled")
    add_appointment("P2", "D2", status="completed")

    assert len(run(engine, scope_appointments(people["admin"]))) == 3
    assert len(run(engine, scope_appointments(people["admin"], status="upcoming"))) == 2
    assert len(run(engine, scope_appointments(people["admin"], status="completed"))) == 1


def test_resolve_appointment_status_tabs_and_unknown():
    assert resolve_appointment_status("past") == "completed"
    assert resolve_appointment_status("cancelled") == "cancelled"
    assert resolve_appointment_status(None) is None
    with pytest.raises(ValidationError):
        resolve_appointment_status("rescheduled")


# ── Tests: health records / access requests ─────────────────────────

def test_patient_records_scoped_and_newest_first(engine, people, add_record):
    old = add_record("P1", "D1", date="2023-01-01")
    new = add_record("P1", "D1", date="2024-01-01")
    add_record("P2", "D1")

    rows = run(engine, scope_health_records(people["p1"]))

    assert [r["id"] for r in rows] == [new, old]


def test_healthcare_browses_all_records(engine, people, add_record):
    add_record("P1", "D1")
    add_record("P2", "D2")
    assert len(run(engine, scope_health_records(people["d1"]))) == 2
    assert len(run(engine, scope_health_records(people["d1"], patient_id="P2"))) == 1


def test_access_requests_scoping(engine, people, add_record):
    record = add_record("P1", "D2")
    request_record_access(engine, people["d1"], "P1", "Second opinion", record_id=record)
    request_record_access(engine, people["d2"], "P2", "Referral")

    assert len(run(engine, scope_access_requests(people["p1"]))) == 1
    assert len(run(engine, scope_access_requests(people["p2"]))) == 1
    assert len(run(engine, scope_access_requests(people["d1"]))) == 1
    assert len(run(engine, scope_access_requests(people["admin"]))) == 2
    assert len(run(engine, scope_access_requests(people["admin"], status="approved"))) == 0


# ── Tests: record read gate ──────────────────────────────────────────

def test_can_read_record_rules(people):
    record = {"id": "R1", "patient_id": "P1", "doctor_id": "D2"}

    assert can_read_record(people["p1"], record, []) is True
    assert can_read_record(people["p2"], record, []) is False
    assert can_read_record(people["admin"], record, []) is True
    assert can_read_record(people["d2"], record, []) is True
    assert can_read_record(people["d1"], record, []) is False
    assert can_read_record(people["d1"], record, [("P1", "R1")]) is True
    assert can_read_record(people["d1"], record, [("P1", None)]) is True
    assert can_read_record(people["d1"], record, [("P1", "R9")]) is False


def test_scope_builders_follow_policy_columns(engine, people, add_appointment, add_record, monkeypatch):
    add_appointment("P1", "D1")
    add_appointment("P2", "D1")
    add_record("P1", "D1")
    add_record("P2", "D2")

    # healthcare policy narrowed to the doctor's own records
    def doctor_scoped(ctx):
        return Policy(
            role=Role.HEALTHCARE, appointment_column="doctor_id", record_column="doctor_id",
            access_request_column="requester_id", can_add_records_for_others=False,
            can_approve_any_request=False, notes="",
        )

    monkeypatch.setattr(rbac, "build_policy", doctor_scoped)
    doctor = people["d1"]

    assert len(run(engine, scope_appointments(doctor))) == 2
    assert {r["patient_id"] for r in run(engine, scope_health_records(doctor))} == {"P1"}
    assert run(engine, scope_access_requests(doctor)) == []
