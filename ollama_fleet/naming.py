"""Instance names, activity timestamps and model-name checks.

Timestamps are ISO-8601 UTC strings with millisecond precision and a ``Z``
suffix (``2024-05-01T12:00:00.123Z``), the format the watchdog on the
instance hands to ``date -d``.
"""
from __future__ import annotations

import re
import threading
import time
from datetime import datetime, timezone
from typing import Optional

INSTANCE_NAME_PREFIX = "ollama-vm-"
INSTANCE_NAME_RE = re.compile(r"^ollama-vm-\d+$")

# Ollama model refs: "llama2", "llama3.1:8b-instruct", "library/mistral:latest"
MODEL_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_./:-]*$")

_name_lock = threading.Lock()
_last_millis = 0


def generate_instance_name(now_ms: Optional[int] = None) -> str:
    """Return ``ollama-vm-<epoch millis>``, unique within this process."""
    global _last_millis
    millis = int(time.time() * 1000) if now_ms is None else int(now_ms)
    with _name_lock:
        if millis <= _last_millis:
            millis = _last_millis + 1
        _last_millis = millis
    return f"{INSTANCE_NAME_PREFIX}{millis}"


def format_timestamp(when: datetime) -> str:
    when = when.astimezone(timezone.utc)
    return when.strftime("%Y-%m-%dT%H:%M:%S.") + f"{when.microsecond // 1000:03d}Z"


def utc_now_iso() -> str:
    return format_timestamp(datetime.now(timezone.utc))


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an activity timestamp; ``None`` when absent or unparseable."""
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_valid_model_name(name: str) -> bool:
    return bool(name) and len(name) <= 200 and bool(MODEL_NAME_RE.match(name))
