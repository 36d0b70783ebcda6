import hashlib
import json
import re
import time
import uuid
from typing import Any, Optional


USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9\s\-_]+$")
HEX_COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")
MAX_USERNAME_LENGTH = 50

CURSOR_PALETTE = [
    "#3B82F6", "#EF4444", "#10B981", "#F59E0B", "#8B5CF6",
    "#EC4899", "#14B8A6", "#F97316", "#6366F1", "#84CC16",
]


def generate_id(prefix: Optional[str] = None) -> str:
    """Generate a unique ID"""
    value = uuid.uuid4().hex
    return f"{prefix}_{value}" if prefix else value


def now_ms() -> int:
    """Get current wall-clock time in milliseconds"""
    return int(time.time() * 1000)


def monotonic_ms() -> float:
    """Monotonic milliseconds, for throttles and timeouts"""
    return time.monotonic() * 1000


def payload_size(value: Any) -> int:
    """Size in bytes of a payload as it travels on the wire"""
    if value is None:
        return 0
    if isinstance(value, str):
        return len(value.encode("utf-8"))
    return len(json.dumps(value, separators=(",", ":"), ensure_ascii=False).encode("utf-8"))


def validate_username(username: str) -> bool:
    """Validate display name: letters, numbers, spaces, hyphens and underscores"""
    if not username or len(username) > MAX_USERNAME_LENGTH:
        return False
    return bool(USERNAME_PATTERN.match(username))


def pick_color(preferences: Optional[dict], user_id: str) -> str:
    """Cursor color from user preferences, else a stable palette pick"""
    appearance = (preferences or {}).get("appearance") or {}
    color = appearance.get("cursorColor") if isinstance(appearance, dict) else None
    if isinstance(color, str) and HEX_COLOR_PATTERN.match(color):
        return color
    digest = hashlib.sha1(user_id.encode("utf-8")).digest()
    return CURSOR_PALETTE[digest[0] % len(CURSOR_PALETTE)]


def merge_preferences(current: Optional[dict], update: Optional[dict]) -> dict:
    """Shallow-merge nested preference groups"""
    merged = dict(current or {})
    for key, value in (update or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged
