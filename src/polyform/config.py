from __future__ import annotations

import logging
import os
import re
from pathlib import Path

FIELD_TYPES = {
    "text",
    "email",
    "number",
    "aadhar",
    "select",
    "radio",
    "checkbox",
    "file",
    "photo",
    "signature",
}
OPTION_TYPES = {"select", "radio", "checkbox"}
FIELD_TYPE_ALIASES = {"aadhar-id": "aadhar", "aadhaar": "aadhar"}

SUBMISSION_STATUSES = ("pending", "processed", "archived")

SHARE_TOKEN_LENGTH = 12
SHARE_TOKEN_PATTERN = re.compile(r"^[a-zA-Z0-9]{12}$")
FIELD_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$")
MAX_ID_ATTEMPTS = 10
DEFAULT_PREUPLOAD_TTL_SECONDS = 3600

DEFAULT_SETTINGS = {
    "submit_button_text": "Submit",
    "success_message": "Thank you for your submission!",
    "allow_multiple_submissions": False,
}

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    try:
        return int(value)
    except ValueError:
        return default


class Settings:
    def __init__(self) -> None:
        self.storage_backend = os.getenv("STORAGE_BACKEND", "sqlite").lower()
        self.data_dir = Path(os.getenv("DATA_DIR", "./data"))
        self.sqlite_path = Path(os.getenv("SQLITE_PATH", str(self.data_dir / "app.db")))
        self.json_path = Path(os.getenv("JSON_PATH", str(self.data_dir / "jsonstore.json")))
        self.upload_dir = Path(os.getenv("UPLOAD_DIR", str(self.data_dir / "uploads")))
        self.export_dir = Path(os.getenv("EXPORT_DIR", str(self.data_dir / "exports")))
        max_bytes = os.getenv("UPLOAD_MAX_BYTES")
        self.upload_max_bytes = int(max_bytes) if max_bytes else None
        self.auth_mode = os.getenv("AUTH_MODE", "none").lower()
        self.admin_token = os.getenv("ADMIN_TOKEN", "")
        self.secret_key = os.getenv("SECRET_KEY", "change-me")
        self.base_url = os.getenv("BASE_URL", "http://localhost:8000").rstrip("/")
        self.export_ttl_hours = _int_env("EXPORT_TTL_HOURS", 24)
        self.preupload_ttl_seconds = _int_env("PREUPLOAD_TTL_SECONDS", DEFAULT_PREUPLOAD_TTL_SECONDS)
        self.sweep_interval_seconds = _int_env("SWEEP_INTERVAL_SECONDS", 0)
        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        self.host = os.getenv("HOST", "0.0.0.0")
        self.port = _int_env("PORT", 8000)


def ensure_dirs(settings: Settings) -> None:
    settings.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    settings.json_path.parent.mkdir(parents=True, exist_ok=True)
    settings.upload_dir.mkdir(parents=True, exist_ok=True)
    settings.export_dir.mkdir(parents=True, exist_ok=True)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
