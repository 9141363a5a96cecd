from __future__ import annotations

import mimetypes
from pathlib import PurePath
from typing import Any

MB = 1024 * 1024

DEFAULT_MAX_SIZE_MB = {
    "file": 5.0,
    "photo": 5.0,
    "signature": 2.0,
}

EXTENSION_MIME_TYPES = {
    "pdf": "application/pdf",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "txt": "text/plain",
    "csv": "text/csv",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
}

IMAGE_EXTENSIONS = ["jpg", "jpeg", "png", "gif", "webp"]
IMAGE_MIME_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"}
DEFAULT_FILE_EXTENSIONS = ["pdf", "doc", "docx", "txt", "jpg", "jpeg", "png", "gif"]
BLOCKED_EXTENSIONS = {"php", "exe", "bat", "cmd", "sh", "com", "scr", "vbs", "js"}
GENERIC_MIME_TYPES = {"", "application/octet-stream"}


def file_extension(filename: str | None) -> str:
    return PurePath(filename or "").suffix.lstrip(".").lower()


def normalize_extension(value: Any) -> str:
    return str(value or "").strip().lstrip(".").lower()


def parse_allowed_extensions(raw: Any) -> tuple[list[str], list[str]]:
    if raw in (None, ""):
        return [], []
    if isinstance(raw, str):
        items = raw.split(",")
    elif isinstance(raw, (list, tuple)):
        items = list(raw)
    else:
        return [], [str(raw)]
    allowed: list[str] = []
    invalid: list[str] = []
    for item in items:
        ext = normalize_extension(item)
        if not ext:
            continue
        if not ext.isalnum() or ext in BLOCKED_EXTENSIONS:
            invalid.append(str(item))
            continue
        if ext not in allowed:
            allowed.append(ext)
    return allowed, invalid


def allowed_extensions_for(field: dict[str, Any]) -> list[str]:
    field_type = field.get("type")
    if field_type in {"photo", "signature"}:
        return list(IMAGE_EXTENSIONS)
    configured, _ = parse_allowed_extensions(field.get("allowed_extensions"))
    return configured or list(DEFAULT_FILE_EXTENSIONS)


def allowed_mime_types(extensions: list[str]) -> set[str]:
    mime_types = {EXTENSION_MIME_TYPES[ext] for ext in extensions if ext in EXTENSION_MIME_TYPES}
    if "image/jpeg" in mime_types:
        mime_types.add("image/jpg")
    return mime_types


def max_size_bytes(field: dict[str, Any]) -> int:
    raw = field.get("max_size_mb")
    try:
        size_mb = float(raw) if raw not in (None, "") else DEFAULT_MAX_SIZE_MB.get(field.get("type", ""), 5.0)
    except (TypeError, ValueError):
        size_mb = DEFAULT_MAX_SIZE_MB.get(field.get("type", ""), 5.0)
    return int(size_mb * MB)


def guess_content_type(filename: str | None, content_type: str | None = None) -> str:
    if content_type:
        return content_type.split(";", 1)[0].strip().lower()
    guessed, _ = mimetypes.guess_type(filename or "")
    return guessed or "application/octet-stream"


def file_accept_for_field(field: dict[str, Any]) -> str:
    return ",".join(f".{ext}" for ext in allowed_extensions_for(field))
