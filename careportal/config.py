"""
Centralised configuration constants, lookup tables and environment helpers.
"""

import os
import sys

from dotenv import load_dotenv

load_dotenv()

# ── Roles / statuses ─────────────────────────────────────────────────
DEFAULT_ROLE = "patient"

APPOINTMENT_STATUSES = ("scheduled", "completed", "cancelled")
ACCESS_REQUEST_STATUSES = ("pending", "approved", "rejected")

# Dashboard tab name -> stored appointment status
APPOINTMENT_TABS = {
    "upcoming": "scheduled",
    "past": "completed",
    "cancelled": "cancelled",
}

# ── Booking form lookup tables (UI value -> stored value) ────────────
APPOINTMENT_TYPES = {
    "checkup": "General Checkup",
    "followup": "Follow-up Visit",
    "specialist": "Specialist Consultation",
    "emergency": "Emergency",
}

DEPARTMENTS = {
    "general": "General Medicine",
    "cardiology": "Cardiology",
    "dermatology": "Dermatology",
    "neurology": "Neurology",
    "orthopedics": "Orthopedics",
    "pediatrics": "Pediatrics",
}

APPOINTMENT_TIMES = {
    "9am": "09:00",
    "10am": "10:00",
    "11am": "11:00",
    "1pm": "13:00",
    "2pm": "14:00",
    "3pm": "15:00",
    "4pm": "16:00",
}

# Doctor picker key -> display name of a healthcare user
DOCTOR_DIRECTORY = {
    "johnson": "Dr. Sarah Johnson",
    "chen": "Dr. Michael Chen",
    "rodriguez": "Dr. Emily Rodriguez",
    "wilson": "Dr. James Wilson",
}

# ── Community ────────────────────────────────────────────────────────
ALL_TOPICS = "All Topics"
COMMUNITY_CATEGORIES = (
    "Chronic Conditions",
    "Vaccines",
    "Mental Health",
    "Nutrition",
    "Exercise",
    "Medications",
    "Preventive Care",
)

# ── Local persistence ────────────────────────────────────────────────
# JSON file holding the per-identity role cache; unset keeps it in memory.
ROLE_CACHE_PATH = os.getenv("ROLE_CACHE_PATH")

# ── API server ───────────────────────────────────────────────────────
SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-key-change-in-production")
TOKEN_EXPIRY_HOURS = 24
MAX_RESULTS_RETURN = 1000
MIN_PASSWORD_LENGTH = 8


def get_env(name: str) -> str:
    """Return an environment variable or exit with an error message."""
    value = os.getenv(name)
    if not value:
        print(f"ERROR: env var {name} is not set", file=sys.stderr)
        sys.exit(1)
    return value
