"""Audit log for the moderator.

Every ruleset change, generation retry and failed rule check is appended to
a plain-text log so a session can be reconstructed after the fact.
"""

import os
from datetime import datetime, timezone
from pathlib import Path

LOG_FILE = Path(os.environ.get(
    "CHAMELEON_LOG",
    Path.home() / ".chameleon" / "logs" / "moderator-audit.log",
))


def log_event(status: str, detail: str) -> None:
    """Append to audit log."""
    try:
        LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
        with open(LOG_FILE, "a") as f:
            ts = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
            f.write(f"[{ts}] {status}: {detail}\n")
    except OSError:
        pass


def read_events(limit: int = 50) -> list[str]:
    """Return the last `limit` log lines (oldest first)."""
    if not LOG_FILE.exists():
        return []
    try:
        lines = LOG_FILE.read_text().splitlines()
    except OSError:
        return []
    return lines[-limit:]
