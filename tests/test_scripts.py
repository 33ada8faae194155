"""
Tests for the maintenance scripts.
"""

import runpy
import sys
from pathlib import Path

INIT_DB = Path(__file__).resolve().parent.parent / "scripts" / "init_db.py"


def run_init_db(monkeypatch, tmp_path, *args):
    monkeypatch.setenv("DB_URI", f"sqlite:///{tmp_path / 'portal.db'}")
    monkeypatch.setattr(sys, "argv", ["init_db.py", *args])
    runpy.run_path(str(INIT_DB), run_name="__main__")


# ── Tests: init_db ───────────────────────────────────────────────────

def test_init_db_creates_tables_then_reports_present(monkeypatch, tmp_path, capsys):
    run_init_db(monkeypatch, tmp_path)
    assert "[init] Creating tables:" in capsys.readouterr().out

    run_init_db(monkeypatch, tmp_path)
    out = capsys.readouterr().out
    assert "[init] All tables present." in out
    assert "JWT_SECRET_KEY" not in out


def test_init_db_secret_flag_prints_key(monkeypatch, tmp_path, capsys):
    run_init_db(monkeypatch, tmp_path, "--secret", "--complete")
    out = capsys.readouterr().out

    key_lines = [line for line in out.splitlines() if line.startswith("JWT_SECRET_KEY=")]
    assert len(key_lines) == 1
    assert len(key_lines[0].split("=", 1)[1]) == 64
    assert "Marked 0 past appointment(s)" in out
