from __future__ import annotations

from polyform.config import Settings, ensure_dirs
from polyform.protocols import Storage
from polyform.repo_json import JSONStorage
from polyform.repo_sqlite import SQLiteStorage


def init_storage(settings: Settings) -> Storage:
    ensure_dirs(settings)
    if settings.storage_backend == "json":
        return JSONStorage(settings.json_path)
    return SQLiteStorage(settings.sqlite_path)
