# importer/log/live_log.py
# In-memory ring of the most recent sync log lines, polled by the UI.
from typing import List, Dict, Any
import time
import threading

MAX_LIVE_ENTRIES = 100

live_log: List[Dict[str, Any]] = []
lock = threading.Lock()


def add_live_entry(level: str, message: str, context: Dict[str, Any] | None = None):
    entry = {
        "level": level,
        "message": message,
        "timestamp": time.strftime("%Y-%m-%d %H:%M:%S"),
        "context": dict(context or {}),
    }
    with lock:
        live_log.append(entry)
        if len(live_log) > MAX_LIVE_ENTRIES:
            del live_log[: len(live_log) - MAX_LIVE_ENTRIES]


def get_live_log(since: int = 0) -> List[Dict[str, Any]]:
    with lock:
        return list(live_log[since:])


def clear_live_log():
    with lock:
        live_log.clear()
