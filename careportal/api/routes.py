"""
Flask route handlers for the REST API.
"""

import os
import sys
import traceback
from datetime import datetime, timedelta

from flask import jsonify, request
from sqlalchemy import text as sa_text

from careportal.auth_provider import sign_in, sign_up, update_profile
from careportal.config import DEFAULT_ROLE, TOKEN_EXPIRY_HOURS
from careportal.database import missing_tables
from careportal.errors import BackendError, PortalError, ValidationError
from careportal.identity import on_auth_state_changed, register_identity
from careportal.models import BookingForm, RecordForm, Role
from careportal.panels import PANEL_DEPENDENCIES, PANEL_FILTERS, PANELS
from careportal.queries import (
    describe_scope, get_access_requests, get_appointments, get_community_posts, get_conversations,
    get_current_user, get_health_record, get_health_records, get_messages, get_post_comments, get_users,
)
from careportal.workflows import (
    add_comment, add_health_record, book_appointment, cancel_appointment, create_conversation,
    create_post, moderate_post, rebook_appointment, request_record_access, respond_to_access_request,
    send_message, update_health_record, vote_post,
)
from careportal.api.auth import SessionStore, generate_token, token_required


def _json_body(required: bool = True) -> dict:
    if not request.is_json:
        if required:
            raise ValidationError("Content-Type must be application/json")
        return {}
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _ctx():
    return request.session_data["ctx"]


def _user_payload(ctx):
    return {
        "id": ctx.user_id,
        "email": ctx.email,
        "display_name": ctx.display_name,
        "role": ctx.role.value,
        "role_label": ctx.role.label,
    }


def register_routes(app, engine, role_cache):
    """Register all API routes on the Flask *app*."""
    store: SessionStore = app.config["SESSION_STORE"]

    def _start_session(ctx):
        store.cleanup_expired()
        token = generate_token(ctx)
        store.open(token, ctx)
        return jsonify({
            "success": True,
            "token": token,
            "user": _user_payload(ctx),
            "policy": describe_scope(ctx),
            "expires_at": (datetime.utcnow() + timedelta(hours=TOKEN_EXPIRY_HOURS)).isoformat(),
        })

    # ── Health / info ────────────────────────────────────────────────

    @app.route("/", methods=["GET"])
    def index():
        return jsonify({
            "service": "CarePortal API",
            "version": "1.0.0",
            "status": "running",
            "endpoints": {
                "auth": "/api/auth/login",
                "appointments": "/api/appointments",
                "health_records": "/api/health-records",
                "access_requests": "/api/access-requests",
                "conversations": "/api/conversations",
                "community": "/api/community/posts",
                "panels": "/api/panels/<name>",
                "health": "/health",
            },
        })

    @app.route("/health", methods=["GET"])
    def health():
        checks = {"database": False, "schema": False}
        try:
            with engine.connect() as conn:
                conn.execute(sa_text("SELECT 1"))
            checks["database"] = True
            checks["schema"] = not missing_tables(engine)
        except Exception as e:
            print(f"[WARN] Health check failed: {e}", file=sys.stderr)

        all_healthy = all(checks.values())
        return jsonify({
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
            "active_sessions": len(store),
        }), 200 if all_healthy else 503

    # ── Auth ─────────────────────────────────────────────────────────

    @app.route("/api/auth/register", methods=["POST"])
    def register():
        data = _json_body()
        try:
            role = Role.parse(data.get("role") or DEFAULT_ROLE)
        except ValueError as e:
            raise ValidationError(str(e))
        identity = sign_up(engine, data.get("email", ""), data.get("password", ""), data.get("name", ""))
        ctx = register_identity(engine, role_cache, identity, role)
        return _start_session(ctx), 201

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        data = _json_body()
        identity = sign_in(engine, data.get("email", ""), data.get("password", ""))
        ctx = on_auth_state_changed(engine, role_cache, identity)
        return _start_session(ctx), 200

    @app.route("/api/auth/logout", methods=["POST"])
    @token_required
    def logout():
        store.close(request.token)
        return jsonify({"success": True, "message": "Logged out successfully"}), 200

    # ── Profile / directory ──────────────────────────────────────────

    @app.route("/api/user/profile", methods=["GET"])
    @token_required
    def get_profile():
        session_data = request.session_data
        ctx = _ctx()
        return jsonify({
            "success": True,
            "user": _user_payload(ctx),
            "record": get_current_user(engine, ctx),
            "policy": describe_scope(ctx),
            "session": {
                "created_at": session_data["created_at"].isoformat(),
                "last_activity": session_data["last_activity"].isoformat(),
            },
        }), 200

    @app.route("/api/user/profile", methods=["PATCH"])
    @token_required
    def patch_profile():
        data = _json_body()
        identity = update_profile(engine, _ctx().user_id, data.get("display_name", ""))
        ctx = on_auth_state_changed(engine, role_cache, identity)
        store.update_context(ctx.user_id, ctx)
        return jsonify({"success": True, "user": _user_payload(ctx)}), 200

    @app.route("/api/users", methods=["GET"])
    @token_required
    def list_users():
        return jsonify({"success": True, "users": get_users(engine, request.args.get("role"))}), 200

    # ── Appointments ─────────────────────────────────────────────────

    @app.route("/api/appointments", methods=["GET"])
    @token_required
    def list_appointments():
        rows = get_appointments(
            engine, _ctx(),
            status=request.args.get("status") or request.args.get("filter"),
            patient_id=request.args.get("patient_id"),
        )
        return jsonify({"success": True, "appointments": rows}), 200

    @app.route("/api/appointments", methods=["POST"])
    @token_required
    def create_appointment():
        form = BookingForm.from_dict(_json_body())
        form.appointment_id = None
        row = book_appointment(engine, _ctx(), form)
        store.invalidate_panels("appointments")
        return jsonify({"success": True, "appointment": row}), 201

    @app.route("/api/appointments/<appointment_id>", methods=["PUT"])
    @token_required
    def edit_appointment(appointment_id):
        form = BookingForm.from_dict(_json_body())
        form.appointment_id = appointment_id
        row = book_appointment(engine, _ctx(), form)
        store.invalidate_panels("appointments")
        return jsonify({"success": True, "appointment": row}), 200

    @app.route("/api/appointments/<appointment_id>/cancel", methods=["POST"])
    @token_required
    def cancel(appointment_id):
        row = cancel_appointment(engine, _ctx(), appointment_id)
        store.invalidate_panels("appointments")
        return jsonify({"success": True, "appointment": row}), 200

    @app.route("/api/appointments/<appointment_id>/rebook", methods=["POST"])
    @token_required
    def rebook(appointment_id):
        data = _json_body()
        row = rebook_appointment(engine, _ctx(), appointment_id, data.get("date"), data.get("time"))
        store.invalidate_panels("appointments")
        return jsonify({"success": True, "appointment": row}), 201

    # ── Health records ───────────────────────────────────────────────

    @app.route("/api/health-records", methods=["GET"])
    @token_required
    def list_records():
        rows = get_health_records(engine, _ctx(), patient_id=request.args.get("patient_id"))
        return jsonify({"success": True, "records": rows}), 200

    @app.route("/api/health-records", methods=["POST"])
    @token_required
    def create_record():
        row = add_health_record(engine, _ctx(), RecordForm.from_dict(_json_body()))
        store.invalidate_panels("health-records")
        return jsonify({"success": True, "record": row}), 201

    @app.route("/api/health-records/<record_id>", methods=["GET"])
    @token_required
    def show_record(record_id):
        return jsonify({"success": True, "record": get_health_record(engine, _ctx(), record_id)}), 200

    @app.route("/api/health-records/<record_id>", methods=["PATCH"])
    @token_required
    def edit_record(record_id):
        row = update_health_record(engine, _ctx(), record_id, _json_body())
        store.invalidate_panels("health-records")
        return jsonify({"success": True, "record": row}), 200

    # ── Access requests ──────────────────────────────────────────────

    @app.route("/api/access-requests", methods=["GET"])
    @token_required
    def list_access_requests():
        rows = get_access_requests(engine, _ctx(), status=request.args.get("status"))
        return jsonify({"success": True, "access_requests": rows}), 200

    @app.route("/api/access-requests", methods=["POST"])
    @token_required
    def create_access_request():
        data = _json_body()
        row = request_record_access(
            engine, _ctx(),
            patient_id=data.get("patient_id"),
            reason=data.get("reason") or data.get("request_reason") or "",
            record_id=data.get("record_id"),
        )
        store.invalidate_panels("health-records")
        return jsonify({"success": True, "access_request": row}), 201

    def _respond(request_id, approve):
        data = _json_body(required=False)
        row = respond_to_access_request(engine, _ctx(), request_id, approve, data.get("reason"))
        store.invalidate_panels("health-records")
        return jsonify({"success": True, "access_request": row}), 200

    @app.route("/api/access-requests/<request_id>/approve", methods=["POST"])
    @token_required
    def approve_access_request(request_id):
        return _respond(request_id, True)

    @app.route("/api/access-requests/<request_id>/reject", methods=["POST"])
    @token_required
    def reject_access_request(request_id):
        return _respond(request_id, False)

    # ── Messaging ────────────────────────────────────────────────────

    @app.route("/api/conversations", methods=["GET"])
    @token_required
    def list_conversations():
        return jsonify({"success": True, "conversations": get_conversations(engine, _ctx())}), 200

    @app.route("/api/conversations", methods=["POST"])
    @token_required
    def start_conversation():
        conversation_id = create_conversation(engine, _ctx(), _json_body().get("participant_id"))
        store.invalidate_panels("messaging")
        return jsonify({"success": True, "conversation_id": conversation_id}), 201

    @app.route("/api/conversations/<conversation_id>/messages", methods=["GET"])
    @token_required
    def list_messages(conversation_id):
        rows = get_messages(engine, _ctx(), conversation_id)
        store.invalidate_panels("messaging")
        return jsonify({"success": True, "messages": rows}), 200

    @app.route("/api/conversations/<conversation_id>/messages", methods=["POST"])
    @token_required
    def post_message(conversation_id):
        row = send_message(engine, _ctx(), conversation_id, _json_body().get("content", ""))
        store.invalidate_panels("messaging")
        return jsonify({"success": True, "message": row}), 201

    # ── Community ────────────────────────────────────────────────────

    @app.route("/api/community/posts", methods=["GET"])
    @token_required
    def list_posts():
        rows = get_community_posts(engine, request.args.get("category"))
        return jsonify({"success": True, "posts": rows}), 200

    @app.route("/api/community/posts", methods=["POST"])
    @token_required
    def new_post():
        data = _json_body()
        row = create_post(engine, _ctx(), data.get("title"), data.get("content"), data.get("category"),
                          data.get("tags"))
        store.invalidate_panels("community")
        return jsonify({"success": True, "post": row}), 201

    @app.route("/api/community/posts/<post_id>/comments", methods=["GET"])
    @token_required
    def list_comments(post_id):
        return jsonify({"success": True, "comments": get_post_comments(engine, post_id)}), 200

    @app.route("/api/community/posts/<post_id>/comments", methods=["POST"])
    @token_required
    def new_comment(post_id):
        row = add_comment(engine, _ctx(), post_id, _json_body().get("content", ""))
        store.invalidate_panels("community")
        return jsonify({"success": True, "comment": row}), 201

    @app.route("/api/community/posts/<post_id>/vote", methods=["POST"])
    @token_required
    def vote(post_id):
        row = vote_post(engine, _ctx(), post_id, _json_body().get("direction", ""))
        store.invalidate_panels("community")
        return jsonify({"success": True, "post": row}), 200

    @app.route("/api/community/posts/<post_id>/moderate", methods=["POST"])
    @token_required
    def moderate(post_id):
        row = moderate_post(engine, _ctx(), post_id, _json_body().get("status", ""))
        store.invalidate_panels("community")
        return jsonify({"success": True, "post": row}), 200

    # ── Panels ───────────────────────────────────────────────────────

    @app.route("/api/panels/<name>", methods=["GET"])
    @token_required
    def panel_view(name):
        if name not in PANELS:
            return jsonify({"error": f"Unknown panel '{name}'"}), 404

        panels = request.session_data["panels"]
        panel = panels.get(name)
        if panel is None or panel.ctx.role != _ctx().role:
            panel = panels[name] = PANELS[name](engine, _ctx())

        deps = {key: request.args.get(key) for key in PANEL_DEPENDENCIES[name]}
        fetched = panel.refresh(**deps)
        filters = {key: request.args[key] for key in PANEL_FILTERS[name] if key in request.args}
        view = panel.view(**filters)
        view["refetched"] = fetched
        return jsonify(view), 200

    @app.route("/api/sessions", methods=["GET"])
    def get_sessions_info():
        if os.getenv("FLASK_ENV") != "development":
            return jsonify({"error": "Not available in production"}), 403

        sessions_info = []
        for data in store.sessions.values():
            ctx = data["ctx"]
            sessions_info.append({
                "user_id": ctx.user_id,
                "display_name": ctx.display_name,
                "role": ctx.role.value,
                "created_at": data["created_at"].isoformat(),
                "last_activity": data["last_activity"].isoformat(),
            })
        return jsonify({
            "active_sessions": len(store),
            "sessions": sessions_info,
        }), 200

    # ── Error handlers ───────────────────────────────────────────────

    @app.errorhandler(PortalError)
    def portal_error(e):
        if isinstance(e, BackendError):
            print(f"[ERROR] {request.method} {request.path}: {e}", file=sys.stderr)
        return jsonify({"success": False, "error": e.message}), e.status_code

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Endpoint not found", "message": str(e)}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "Method not allowed", "message": str(e)}), 405

    @app.errorhandler(500)
    def internal_error(e):
        traceback.print_exc()
        return jsonify({"error": "Internal server error", "message": str(e)}), 500
