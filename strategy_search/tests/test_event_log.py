from __future__ import annotations

from shared.db import connect, init_schema
from shared.logger import log_event


def test_log_event_echoes_and_persists(monkeypatch, tmp_path, capsys) -> None:
    db_path = tmp_path / "events.sqlite3"
    monkeypatch.setenv("STRATSEARCH_DB_PATH", str(db_path))
    init_schema(db_path)

    log_event("error", "search", "theory failed", persist=True)
    log_event("loud", "search", "unknown level", persist=False)

    out = capsys.readouterr().out.splitlines()
    assert out[0].endswith("ERROR [search] theory failed")
    assert out[1].endswith("INFO [search] unknown level")

    db = connect(db_path)
    try:
        rows = db.execute("SELECT level, message FROM event_log").fetchall()
    finally:
        db.close()
    assert [(r["level"], r["message"]) for r in rows] == [("ERROR", "[search] theory failed")]


def test_persistence_follows_environment(monkeypatch, tmp_path) -> None:
    db_path = tmp_path / "events.sqlite3"
    monkeypatch.setenv("STRATSEARCH_DB_PATH", str(db_path))
    monkeypatch.setenv("STRATSEARCH_EVENT_LOG", "1")
    init_schema(db_path)

    log_event("INFO", "optimizer", "done", echo=False)

    db = connect(db_path)
    try:
        count = db.execute("SELECT COUNT(*) FROM event_log").fetchone()[0]
    finally:
        db.close()
    assert count == 1
