import hashlib
import uuid
from datetime import date, datetime, timezone
from typing import Union

UNASSIGNED = "unassigned"

DateLike = Union[date, datetime]


def normalize_identity(value: str) -> str:
    """Canonical form of a user identity (emails compare case-insensitively)."""
    return value.strip().lower()


def calendar_day(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def as_datetime(value: DateLike) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime(value.year, value.month, value.day)


def is_past(value: DateLike) -> bool:
    """True when ``value`` falls on a day before today."""
    return calendar_day(value) < date.today()


def now_utc() -> datetime:
    return datetime.now(tz=timezone.utc)


def new_request_id() -> str:
    return str(uuid.uuid4())


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()
