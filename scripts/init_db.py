#!/usr/bin/env python3
"""
Create the CarePortal tables and run the daily appointment housekeeping.

Usage:
    python scripts/init_db.py              # create missing tables
    python scripts/init_db.py --complete   # also mark past scheduled appointments completed
    python scripts/init_db.py --secret     # also print a JWT_SECRET_KEY line for .env
"""

import secrets
import sys

from careportal.database import create_schema, init_engine, missing_tables
from careportal.workflows import complete_due_appointments


if __name__ == "__main__":
    args = sys.argv[1:]

    print("=" * 60)
    print("CarePortal Database Setup")
    print("=" * 60)

    engine = init_engine()

    missing = missing_tables(engine)
    if missing:
        print(f"[init] Creating tables: {', '.join(missing)}")
        create_schema(engine)
    else:
        print("[init] All tables present.")

    if "--complete" in args:
        n = complete_due_appointments(engine)
        print(f"[init] Marked {n} past appointment(s) as completed.")

    if "--secret" in args:
        print(f"\nJWT_SECRET_KEY={secrets.token_hex(32)}")

    print("=" * 60)
