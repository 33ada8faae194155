"""
Dashboard panels – per-domain view state held for a signed-in session.

A panel fetches its entity set once on mount and again only when one of its
dependencies changes (or after ``invalidate()``); every filtered subset is
derived locally from that full set. Failures become a Notice and leave the
last good items in place.
"""

import sys
import traceback
from typing import Any, Dict, List, Optional

import pandas as pd

from careportal.config import ALL_TOPICS, APPOINTMENT_TABS
from careportal.errors import BackendError, PortalError
from careportal.models import AccessContext, Notice, Role
from careportal.queries import (
    get_access_requests, get_appointments, get_community_posts, get_conversations,
    get_health_records,
)


def _contains(value: Any, needle: str) -> bool:
    return needle in str(value or "").lower()


class Panel:
    """Base class: dependency tracking, loading flag and error-to-notice handling."""

    name = "panel"
    failure_title = "Something went wrong"

    def __init__(self, engine, ctx: AccessContext):
        self.engine = engine
        self.ctx = ctx
        self.items: List[dict] = []
        self.loading = False
        self.notice: Optional[Notice] = None
        self.fetch_count = 0
        self._deps = None
        self._stale = True

    def fetch(self, **deps) -> List[dict]:
        raise NotImplementedError

    def invalidate(self) -> None:
        self._stale = True

    def refresh(self, **deps) -> bool:
        """Re-fetch when mounting or when *deps* differ from the last load. Returns True if fetched."""
        key = (self.ctx.role, tuple(sorted(deps.items())))
        if not self._stale and key == self._deps:
            return False

        self.loading = True
        self.notice = None
        try:
            self.items = self.fetch(**deps)
            self.fetch_count += 1
            self._deps = key
            self._stale = False
        except PortalError as e:
            print(f"[ERROR] {self.name} panel: {e}", file=sys.stderr)
            description = str(e)
            if isinstance(e, BackendError):
                description = "There was a problem loading your data. Please try again."
            self.notice = Notice(self.failure_title, description, "destructive")
        except Exception as e:
            print(f"[ERROR] {self.name} panel: {e}", file=sys.stderr)
            traceback.print_exc()
            self.notice = Notice(self.failure_title, "There was a problem loading your data. Please try again.",
                                 "destructive")
        finally:
            self.loading = False
        return True

    def view(self) -> Dict[str, Any]:
        return {
            "panel": self.name,
            "role": self.ctx.role.value,
            "loading": self.loading,
            "notice": self.notice.to_dict() if self.notice else None,
            "items": self.items,
        }


# ── Appointments ─────────────────────────────────────────────────────

class AppointmentPanel(Panel):
    name = "appointments"
    failure_title = "Could not load appointments"

    def fetch(self, patient_id=None, date=None):
        # full set; the selected date only narrows the day view
        return get_appointments(self.engine, self.ctx, patient_id=patient_id)

    def tab(self, tab: str) -> List[dict]:
        status = APPOINTMENT_TABS[tab]
        return [a for a in self.items if a["status"] == status]

    def tabs(self) -> Dict[str, List[dict]]:
        return {tab: self.tab(tab) for tab in APPOINTMENT_TABS}

    def for_date(self, day: Optional[str]) -> List[dict]:
        if not day:
            return []
        return sorted((a for a in self.items if a["date"] == day), key=lambda a: a["time"] or "")

    def group_by(self, field: str) -> Dict[str, List[dict]]:
        groups: Dict[str, List[dict]] = {}
        for a in self.items:
            groups.setdefault(a.get(field) or "Unassigned", []).append(a)
        return groups

    def overview(self) -> Dict[str, Any]:
        """Counts per status and per department for the admin overview tab."""
        if not self.items:
            return {"total": 0, "by_status": {}, "by_department": {}}
        df = pd.DataFrame(self.items)
        df["department"] = df["department"].replace("", "Unassigned").fillna("Unassigned")
        by_department = (
            df.groupby(["department", "status"]).size().unstack(fill_value=0)
        )
        return {
            "total": int(len(df)),
            "by_status": {k: int(v) for k, v in df["status"].value_counts().items()},
            "by_department": {
                dept: {status: int(n) for status, n in row.items()}
                for dept, row in by_department.iterrows()
            },
        }

    def view(self, date=None):
        out = super().view()
        out["tabs"] = self.tabs()
        out["day"] = {"date": date, "appointments": self.for_date(date)}
        if self.ctx.role == Role.ADMIN:
            out["overview"] = self.overview()
            out["by_department"] = self.group_by("department")
            out["by_doctor"] = self.group_by("doctor_name")
            out["by_patient"] = self.group_by("patient_name")
        return out


# ── Health records ───────────────────────────────────────────────────

class HealthRecordPanel(Panel):
    name = "health-records"
    failure_title = "Could not load health records"

    def __init__(self, engine, ctx):
        super().__init__(engine, ctx)
        self.requests: List[dict] = []

    def fetch(self, patient_id=None):
        records = get_health_records(self.engine, self.ctx, patient_id=patient_id)
        self.requests = get_access_requests(self.engine, self.ctx)
        return records

    def search(self, text: Optional[str]) -> List[dict]:
        needle = (text or "").strip().lower()
        if not needle:
            return list(self.items)
        return [
            r for r in self.items
            if any(_contains(r.get(f), needle) for f in ("title", "record_type", "hospital", "doctor_name",
                                                          "description"))
        ]

    def requests_with_status(self, status: str) -> List[dict]:
        return [r for r in self.requests if r["status"] == status]

    def view(self, search=None):
        out = super().view()
        out["items"] = self.search(search)
        out["access_requests"] = self.requests
        out["pending_requests"] = self.requests_with_status("pending")
        return out


# ── Messaging ────────────────────────────────────────────────────────

class MessagingPanel(Panel):
    name = "messaging"
    failure_title = "Could not load conversations"

    def fetch(self):
        return get_conversations(self.engine, self.ctx)

    def search(self, text: Optional[str]) -> List[dict]:
        needle = (text or "").strip().lower()
        if not needle:
            return list(self.items)
        return [c for c in self.items if _contains(c.get("participant_name"), needle)]

    def view(self, search=None):
        out = super().view()
        out["items"] = self.search(search)
        out["unread_total"] = sum(c.get("unread_count", 0) for c in self.items)
        return out


# ── Community ────────────────────────────────────────────────────────

class CommunityPanel(Panel):
    name = "community"
    failure_title = "Could not load posts"

    def fetch(self):
        return get_community_posts(self.engine)

    def filter(self, category: Optional[str] = None, text: Optional[str] = None) -> List[dict]:
        posts = self.items
        if category and category != ALL_TOPICS:
            posts = [p for p in posts if p["category"] == category]
        needle = (text or "").strip().lower()
        if needle:
            posts = [
                p for p in posts
                if _contains(p["title"], needle) or _contains(p["content"], needle)
                or any(_contains(t, needle) for t in p.get("tags") or [])
            ]
        return posts

    def view(self, category=None, search=None):
        out = super().view()
        out["items"] = self.filter(category, search)
        return out


PANELS = {
    AppointmentPanel.name: AppointmentPanel,
    HealthRecordPanel.name: HealthRecordPanel,
    MessagingPanel.name: MessagingPanel,
    CommunityPanel.name: CommunityPanel,
}

# Query parameters each panel refetches on; the rest only re-derive views.
PANEL_DEPENDENCIES = {
    "appointments": ("patient_id", "date"),
    "health-records": ("patient_id",),
    "messaging": (),
    "community": (),
}

# Query parameters passed to each panel's view.
PANEL_FILTERS = {
    "appointments": ("date",),
    "health-records": ("search",),
    "messaging": ("search",),
    "community": ("category", "search"),
}
