"""Shared fixtures for polyform tests.

Backend-dependent fixtures are parametrized so every test that touches
storage runs against both the SQLite and the JSON (TinyDB) backend.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Iterator

import pytest
from fastapi.testclient import TestClient

from polyform.app import create_app
from polyform.config import Settings
from polyform.files import FileStore
from polyform.forms import create_form, replace_config
from polyform.protocols import Storage
from polyform.storage import init_storage

SECRET = "test-secret"
BASE_URL = "http://forms.test"


# ---------------------------------------------------------------------------
# Settings / storage
# ---------------------------------------------------------------------------


@pytest.fixture(params=["sqlite", "json"])
def backend(request: pytest.FixtureRequest) -> str:
    return request.param


@pytest.fixture
def settings(tmp_path, monkeypatch: pytest.MonkeyPatch, backend: str) -> Settings:
    monkeypatch.setenv("STORAGE_BACKEND", backend)
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("SQLITE_PATH", raising=False)
    monkeypatch.delenv("JSON_PATH", raising=False)
    monkeypatch.delenv("UPLOAD_DIR", raising=False)
    monkeypatch.delenv("EXPORT_DIR", raising=False)
    monkeypatch.delenv("UPLOAD_MAX_BYTES", raising=False)
    monkeypatch.setenv("AUTH_MODE", "none")
    monkeypatch.setenv("SECRET_KEY", SECRET)
    monkeypatch.setenv("BASE_URL", BASE_URL)
    monkeypatch.setenv("SWEEP_INTERVAL_SECONDS", "0")
    return Settings()


@pytest.fixture
def storage(settings: Settings) -> Iterator[Storage]:
    store = init_storage(settings)
    yield store
    store.dispose()


@pytest.fixture
def file_store(settings: Settings) -> FileStore:
    return FileStore(settings.upload_dir)


@pytest.fixture
def export_store(settings: Settings) -> FileStore:
    return FileStore(settings.export_dir)


@pytest.fixture
def client(settings: Settings) -> Iterator[TestClient]:
    with TestClient(create_app(settings)) as test_client:
        yield test_client


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def at(day: int, hour: int = 12, minute: int = 0, second: int = 0) -> datetime:
    """Fixed timestamps in January 2024 (UTC)."""
    return datetime(2024, 1, day, hour, minute, second, tzinfo=timezone.utc)


@pytest.fixture
def make_form(storage: Storage) -> Callable[..., dict[str, Any]]:
    def _make(
        fields: list[dict[str, Any]] | None = None,
        title: str = "Survey",
        settings: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        form = create_form(storage, title, "test form")
        config: dict[str, Any] = {"fields": fields or []}
        if settings is not None:
            config["settings"] = settings
        return replace_config(storage, form["id"], config)

    return _make


TEXT_FIELD = {"id": "f1", "label": "Name", "type": "text", "required": True}
EMAIL_FIELD = {"id": "f2", "label": "Email", "name": "email", "type": "email"}
CHOICE_FIELD = {
    "id": "f3",
    "label": "Colors",
    "type": "checkbox",
    "options": ["A", "B", "C"],
}
FILE_FIELD = {
    "id": "f4",
    "label": "Resume",
    "name": "resume",
    "type": "file",
    "allowed_extensions": "pdf,txt",
}
PHOTO_FIELD = {"id": "f5", "label": "Photo", "type": "photo"}
