"""Structured event logger -- echoes to console and optionally writes to the event_log table."""

import os
import sys
from datetime import datetime, timezone
from typing import Optional

from shared.db import connect

LEVELS = ("DEBUG", "INFO", "WARN", "ERROR", "CRITICAL")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _persist_enabled() -> bool:
    return os.getenv("STRATSEARCH_EVENT_LOG", "0").strip().lower() in ("1", "true", "yes", "y", "on")


def log_event(
    level: str,
    source: str,
    message: str,
    *,
    echo: bool = True,
    persist: Optional[bool] = None,
) -> None:
    """
    Log a structured event.

    Args:
        level:   DEBUG, INFO, WARN, ERROR, CRITICAL
        source:  Component name (e.g. "backtester", "optimizer", "search")
        message: Human-readable message
        echo:    Also print to stdout (default True)
        persist: Write to the event_log table; defaults to STRATSEARCH_EVENT_LOG
    """
    lvl = level.upper()
    if lvl not in LEVELS:
        lvl = "INFO"
    ts = _utc_now_iso()
    full_msg = f"[{source}] {message}"

    if persist is None:
        persist = _persist_enabled()

    if persist:
        try:
            conn = connect()
            conn.execute(
                "INSERT INTO event_log (ts_utc, level, message) VALUES (?, ?, ?)",
                (ts, lvl, full_msg),
            )
            conn.commit()
            conn.close()
        except Exception as e:
            print(f"[logger] DB write failed: {e}", file=sys.stderr)

    if echo:
        print(f"[{ts}] {lvl} {full_msg}")
