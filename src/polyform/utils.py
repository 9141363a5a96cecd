from __future__ import annotations

import secrets
import string
from datetime import date, datetime, time, timezone
from typing import Any

import orjson
import ulid

from polyform.config import FIELD_ID_PATTERN, MAX_ID_ATTEMPTS, SHARE_TOKEN_LENGTH
from polyform.errors import ConflictError

_TOKEN_ALPHABET = string.ascii_letters + string.digits


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_naive_utc(value: datetime) -> datetime:
    return ensure_aware(value).replace(tzinfo=None)


def to_iso(dt: datetime) -> str:
    return ensure_aware(dt).isoformat()


def parse_dt(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return ensure_aware(value)
    if isinstance(value, str):
        try:
            return ensure_aware(datetime.fromisoformat(value))
        except ValueError:
            return None
    return None


def parse_filter_bound(value: Any, end_of_day: bool = False) -> datetime | None:
    """日付のみの指定は一日の開始/終了として扱う。"""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return ensure_aware(value)
    if isinstance(value, date):
        return datetime.combine(value, time.max if end_of_day else time.min, tzinfo=timezone.utc)
    text = str(value).strip()
    if len(text) == 10:
        try:
            day = date.fromisoformat(text)
        except ValueError:
            return None
        return datetime.combine(day, time.max if end_of_day else time.min, tzinfo=timezone.utc)
    return parse_dt(text)


def dumps_json(value: Any) -> str:
    return orjson.dumps(value).decode("utf-8")


def loads_json(value: str | bytes | None) -> Any:
    if not value:
        return None
    return orjson.loads(value)


def new_ulid() -> str:
    value = ulid.new()
    return getattr(value, "str", str(value))


def random_token(length: int = SHARE_TOKEN_LENGTH) -> str:
    return "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(length))


def generate_field_id(existing: set[str]) -> str:
    for _ in range(MAX_ID_ATTEMPTS):
        candidate = f"f_{secrets.token_hex(6)}"
        if candidate not in existing and FIELD_ID_PATTERN.match(candidate):
            return candidate
    raise ConflictError("could not generate a unique field id")
