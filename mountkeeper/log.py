"""Sandbox lifecycle audit logging.

Appends structured JSON entries to ~/.mountkeeper/logs.jsonl.
Each entry records one lifecycle event (launch, reuse, terminate, crash, build)
with a timestamp, the server's trace ID, and event-specific fields such as the
sandboxfs PID and mount path.
"""

import json
from datetime import datetime

from mountkeeper.config import HOME_DIR

LOGS_FILE = HOME_DIR / "logs.jsonl"


def write_log(entry, trace_id=None):
    """Append a lifecycle log entry."""
    LOGS_FILE.parent.mkdir(parents=True, exist_ok=True)
    entry = {k: (str(v) if hasattr(v, "__fspath__") else v) for k, v in entry.items()}
    entry["timestamp"] = datetime.now().isoformat()
    if trace_id:
        entry["trace_id"] = trace_id
    with open(LOGS_FILE, "a") as f:
        f.write(json.dumps(entry) + "\n")


def read_logs(limit=None):
    """Return logged entries oldest-first, skipping lines that are not valid JSON."""
    if not LOGS_FILE.exists():
        return []
    entries = []
    for line in LOGS_FILE.read_text().splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            entries.append(json.loads(line))
        except json.JSONDecodeError:
            continue
    if limit:
        entries = entries[-limit:]
    return entries
