"""Helpers for service names, traffic and expiry display."""
import math
import re
import secrets
import string
from datetime import datetime, timezone

from vpnshop.core.errors import InvalidServiceName

SERVICE_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]{3,24}$")
SERVICE_NAME_MAX_LEN = 24
BYTES_PER_GB = 1024 ** 3


def as_utc(dt: datetime | None) -> datetime | None:
    """Naive datetimes (SQLite) are stored as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def gb_to_bytes(gb: int | float) -> int:
    return int(gb * BYTES_PER_GB)


def bytes_to_gb(value: int | None) -> float:
    if not value:
        return 0.0
    return round(value / BYTES_PER_GB, 2)


def days_left(expire_at: datetime | None, now: datetime | None = None) -> int:
    """Whole days until expiry, rounded up; 0 when expired."""
    if expire_at is None:
        return 0
    now = now or datetime.now(timezone.utc)
    seconds = (as_utc(expire_at) - now).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / 86400)


def sanitize_service_name(raw: str) -> str:
    """Lowercase, whitespace to '-', drop everything outside [a-z0-9_-], cut to 24 chars."""
    value = (raw or "").strip().lower()
    value = re.sub(r"\s+", "-", value)
    value = re.sub(r"[^a-z0-9_-]", "", value)
    return value[:SERVICE_NAME_MAX_LEN]


def ensure_service_name(raw: str) -> str:
    name = (raw or "").strip()
    if not SERVICE_NAME_RE.match(name):
        raise InvalidServiceName()
    return name


def build_remote_username(telegram_id: str, service_name: str) -> str:
    """Panel username: tg_<telegram id>-<slug>-<4 random chars>."""
    slug = sanitize_service_name(service_name) or "svc"
    suffix = "".join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(4))
    return f"tg_{telegram_id}-{slug}-{suffix}"


def format_service_line(name: str, remaining_bytes: int, expire_at: datetime | None) -> str:
    return f"{name}: {bytes_to_gb(max(remaining_bytes, 0))} GB left, {days_left(expire_at)} days left"
