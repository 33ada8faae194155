"""
Integration tests for the REST API using the Flask test client.
"""

import pytest

from careportal.identity import RoleCache
from careportal.api.app import create_app


@pytest.fixture
def app(engine):
    app = create_app(engine=engine, role_cache=RoleCache())
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


def register(client, email, role="patient", name="Jane Doe", password="s3cret-pass"):
    resp = client.post("/api/auth/register", json={
        "email": email, "password": password, "name": name, "role": role,
    })
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()


def auth(token):
    return {"Authorization": f"Bearer {token}"}


# ── Tests: auth ──────────────────────────────────────────────────────

def test_index_and_health(client):
    assert client.get("/").get_json()["service"] == "CarePortal API"
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.get_json()["checks"] == {"database": True, "schema": True}


def test_register_login_logout(client):
    data = register(client, "jane@example.com")
    assert data["user"]["role"] == "patient"
    assert data["policy"]["label"] == "Patient"

    resp = client.post("/api/auth/login", json={"email": "jane@example.com", "password": "s3cret-pass"})
    assert resp.status_code == 200
    token = resp.get_json()["token"]

    assert client.get("/api/user/profile", headers=auth(token)).status_code == 200
    assert client.post("/api/auth/logout", headers=auth(token)).status_code == 200
    assert client.get("/api/user/profile", headers=auth(token)).status_code == 401


def test_register_unknown_role_creates_nothing(client):
    resp = client.post("/api/auth/register", json={
        "email": "x@example.com", "password": "s3cret-pass", "name": "X", "role": "pharmacist",
    })
    assert resp.status_code == 400
    assert resp.get_json()["success"] is False

    resp = client.post("/api/auth/login", json={"email": "x@example.com", "password": "s3cret-pass"})
    assert resp.status_code == 401


def test_missing_or_bad_token(client):
    assert client.get("/api/appointments").status_code == 401
    assert client.get("/api/appointments", headers=auth("garbage")).status_code == 401


def test_non_json_body_rejected(client):
    resp = client.post("/api/auth/login", data="email=jane")
    assert resp.status_code == 400


# ── Tests: appointments ──────────────────────────────────────────────

def test_book_and_list_appointments(client):
    doctor = register(client, "sarah@example.com", role="healthcare", name="Dr. Sarah Johnson")
    patient = register(client, "jane@example.com")
    token = patient["token"]

    resp = client.post("/api/appointments", headers=auth(token), json={
        "date": "2024-06-15", "type": "checkup", "department": "general",
        "doctor_id": doctor["user"]["id"], "time": "10am",
    })
    assert resp.status_code == 201
    appt = resp.get_json()["appointment"]
    assert appt["time"] == "10:00"

    listed = client.get("/api/appointments?filter=upcoming", headers=auth(token)).get_json()["appointments"]
    assert [a["id"] for a in listed] == [appt["id"]]
    assert listed[0]["doctor_name"] == "Dr. Sarah Johnson"

    seen_by_doctor = client.get("/api/appointments", headers=auth(doctor["token"])).get_json()["appointments"]
    assert len(seen_by_doctor) == 1


def test_booking_errors_map_to_status_codes(client):
    token = register(client, "jane@example.com")["token"]

    resp = client.post("/api/appointments", headers=auth(token), json={"time": "9am"})
    assert resp.status_code == 400
    assert "date" in resp.get_json()["error"]

    appt = client.post("/api/appointments", headers=auth(token),
                       json={"date": "2024-06-15", "time": "9am"}).get_json()["appointment"]
    assert client.post(f"/api/appointments/{appt['id']}/cancel", headers=auth(token)).status_code == 200
    resp = client.post(f"/api/appointments/{appt['id']}/cancel", headers=auth(token))
    assert resp.status_code == 409

    assert client.post("/api/appointments/nope/cancel", headers=auth(token)).status_code == 404


def test_panel_endpoint_refetches_after_mutation(client):
    token = register(client, "jane@example.com")["token"]

    first = client.get("/api/panels/appointments", headers=auth(token)).get_json()
    assert first["refetched"] is True
    assert first["items"] == []

    again = client.get("/api/panels/appointments", headers=auth(token)).get_json()
    assert again["refetched"] is False

    client.post("/api/appointments", headers=auth(token), json={"date": "2024-06-15", "time": "9am"})
    after = client.get("/api/panels/appointments?date=2024-06-15", headers=auth(token)).get_json()
    assert after["refetched"] is True
    assert len(after["tabs"]["upcoming"]) == 1
    assert len(after["day"]["appointments"]) == 1

    assert client.get("/api/panels/billing", headers=auth(token)).status_code == 404


# ── Tests: access requests ───────────────────────────────────────────

def test_access_request_flow(client):
    patient = register(client, "jane@example.com")
    doctor = register(client, "mike@example.com", role="healthcare", name="Dr. Michael Chen")
    other_doctor = register(client, "sarah@example.com", role="healthcare", name="Dr. Sarah Johnson")

    record = client.post("/api/health-records", headers=auth(other_doctor["token"]), json={
        "title": "MRI", "date": "2024-03-01", "record_type": "Radiology",
        "description": "Confidential", "patient_id": patient["user"]["id"],
    }).get_json()["record"]

    url = f"/api/health-records/{record['id']}"
    assert client.get(url, headers=auth(doctor["token"])).status_code == 403

    resp = client.post("/api/access-requests", headers=auth(doctor["token"]), json={
        "patient_id": patient["user"]["id"], "record_id": record["id"], "reason": "",
    })
    assert resp.status_code == 400

    req = client.post("/api/access-requests", headers=auth(doctor["token"]), json={
        "patient_id": patient["user"]["id"], "record_id": record["id"], "reason": "Second opinion",
    }).get_json()["access_request"]

    resp = client.post(f"/api/access-requests/{req['id']}/approve", headers=auth(doctor["token"]))
    assert resp.status_code == 403

    resp = client.post(f"/api/access-requests/{req['id']}/approve", headers=auth(patient["token"]),
                       json={"reason": "Fine"})
    assert resp.get_json()["access_request"]["status"] == "approved"

    shown = client.get(url, headers=auth(doctor["token"])).get_json()["record"]
    assert shown["description"] == "Confidential"

    resp = client.post(f"/api/access-requests/{req['id']}/reject", headers=auth(patient["token"]))
    assert resp.status_code == 409


# ── Tests: request shape ─────────────────────────────────────────────

def test_panel_ignores_undeclared_query_parameters(client):
    token = register(client, "jane@example.com")["token"]

    resp = client.get("/api/panels/community?self=x&category=Vaccines&tab=1", headers=auth(token))

    assert resp.status_code == 200
    assert resp.get_json()["items"] == []


@pytest.mark.parametrize("body", [["date", "2024-06-15"], "2024-06-15", 42])
def test_non_object_json_body_rejected(client, body):
    token = register(client, "jane@example.com")["token"]

    resp = client.post("/api/appointments", headers=auth(token), json=body)
    assert resp.status_code == 400
    assert "JSON object" in resp.get_json()["error"]

    resp = client.post("/api/access-requests/any/approve", headers=auth(token), json=body)
    assert resp.status_code == 400
