"""
Flask application factory and server entry-point.
"""

import os
import sys
import traceback

from flask import Flask
from flask_cors import CORS

from careportal.config import ROLE_CACHE_PATH, TOKEN_EXPIRY_HOURS
from careportal.database import create_schema, init_engine
from careportal.identity import RoleCache
from careportal.api.auth import SessionStore
from careportal.api.routes import register_routes


def create_app(engine=None, role_cache=None):
    """Build and return a fully configured Flask application.

    *engine* and *role_cache* default to the ones described by the
    environment (``DB_URI``, ``ROLE_CACHE_PATH``).
    """
    app = Flask(__name__)
    CORS(app)

    # ── Initialise shared resources ──────────────────────────────────
    try:
        if engine is None:
            print("[init] Initializing database connection...")
            engine = init_engine()

        print("[init] Ensuring schema...")
        create_schema(engine)

        if role_cache is None:
            role_cache = RoleCache(ROLE_CACHE_PATH)

        print("[init] ✓ API server ready")
    except Exception as e:
        print(f"[FATAL] Failed to initialize: {e}", file=sys.stderr)
        traceback.print_exc()
        sys.exit(1)

    app.config["SESSION_STORE"] = SessionStore()

    # ── Register routes ──────────────────────────────────────────────
    register_routes(app, engine, role_cache)

    return app


def main():
    """Run the development server."""
    print("=" * 60)
    print("CarePortal – REST API Server")
    print("=" * 60)

    app = create_app()

    host = os.getenv("API_HOST", "0.0.0.0")
    port = int(os.getenv("API_PORT", "8000"))
    debug = os.getenv("FLASK_ENV") == "development"

    print(f"\n[server] Starting Flask API on {host}:{port}")
    print(f"[server] Debug mode: {debug}")
    print(f"[server] CORS enabled: True")
    print(f"[server] Session expiry: {TOKEN_EXPIRY_HOURS} hours")
    print("\nAPI Endpoints:")
    print(f"  - POST http://{host}:{port}/api/auth/register")
    print(f"  - POST http://{host}:{port}/api/auth/login")
    print(f"  - GET  http://{host}:{port}/api/appointments")
    print(f"  - GET  http://{host}:{port}/api/health-records")
    print(f"  - GET  http://{host}:{port}/api/access-requests")
    print(f"  - GET  http://{host}:{port}/api/conversations")
    print(f"  - GET  http://{host}:{port}/api/community/posts")
    print(f"  - GET  http://{host}:{port}/api/panels/<name>")
    print(f"  - GET  http://{host}:{port}/health")
    print("\n" + "=" * 60)

    app.run(host=host, port=port, debug=debug, threaded=True)


if __name__ == "__main__":
    main()
