from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from filelock import FileLock
from tinydb import Query, TinyDB

from polyform.errors import ConflictError
from polyform.utils import dumps_json, parse_dt, to_iso

_DATETIME_KEYS = {
    "created_at",
    "updated_at",
    "submitted_at",
    "expires_at",
    "last_download_at",
}


def _to_record(item: dict[str, Any]) -> dict[str, Any]:
    record: dict[str, Any] = {}
    for key, value in item.items():
        if key in _DATETIME_KEYS:
            record[key] = to_iso(value) if isinstance(value, datetime) else value
        else:
            record[key] = value
    return record


def _from_record(record: dict[str, Any], defaults: dict[str, Any]) -> dict[str, Any]:
    item = {**defaults, **dict(record)}
    for key in _DATETIME_KEYS & item.keys():
        item[key] = parse_dt(item[key])
    return item


def _submission_matches(record: dict[str, Any], filters: dict[str, Any]) -> bool:
    search = filters.get("search")
    if search and search.lower() not in dumps_json(record.get("data", {})).lower():
        return False
    submitted_at = parse_dt(record.get("submitted_at"))
    after = filters.get("submitted_after")
    before = filters.get("submitted_before")
    if after is not None and (submitted_at is None or submitted_at < after):
        return False
    if before is not None and (submitted_at is None or submitted_at > before):
        return False
    return True


class JSONRepoBase:
    table_name = ""

    def __init__(self, path: Path, lock: FileLock) -> None:
        self._path = path
        self._lock = lock

    @contextmanager
    def _db(self) -> Iterator[TinyDB]:
        with self._lock:
            db = TinyDB(self._path)
            try:
                yield db
            finally:
                db.close()

    def _remove(self, key: str, value: str) -> bool:
        with self._db() as db:
            removed = db.table(self.table_name).remove(Query()[key] == value)
        return bool(removed)


FORM_DEFAULTS: dict[str, Any] = {
    "description": "",
    "config": {"fields": [], "settings": {}},
    "is_active": True,
}


class JSONFormRepo(JSONRepoBase):
    table_name = "forms"

    def list_forms(self) -> list[dict[str, Any]]:
        with self._db() as db:
            items = db.table(self.table_name).all()
        forms = [_from_record(item, FORM_DEFAULTS) for item in items]
        return sorted(forms, key=lambda x: (x["created_at"], x["id"]), reverse=True)

    def get_form(self, form_id: str) -> dict[str, Any] | None:
        with self._db() as db:
            item = db.table(self.table_name).get(Query().id == form_id)
        return _from_record(item, FORM_DEFAULTS) if item else None

    def get_form_by_share_token(self, share_token: str) -> dict[str, Any] | None:
        with self._db() as db:
            item = db.table(self.table_name).get(Query().share_token == share_token)
        return _from_record(item, FORM_DEFAULTS) if item else None

    def share_token_exists(self, share_token: str) -> bool:
        with self._db() as db:
            return db.table(self.table_name).contains(Query().share_token == share_token)

    def create_form(self, form: dict[str, Any]) -> None:
        record = _to_record(form)
        with self._db() as db:
            table = db.table(self.table_name)
            if table.contains((Query().id == form["id"]) | (Query().share_token == form["share_token"])):
                raise ConflictError(f"form id or share token already exists: {form['id']}")
            table.insert(record)

    def update_form(self, form_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        with self._db() as db:
            table = db.table(self.table_name)
            item = table.get(Query().id == form_id)
            if not item:
                raise KeyError(form_id)
            item = dict(item)
            item.update(_to_record(updates))
            table.update(item, Query().id == form_id)
        return _from_record(item, FORM_DEFAULTS)

    def delete_form(self, form_id: str) -> bool:
        return self._remove("id", form_id)


SUBMISSION_DEFAULTS: dict[str, Any] = {
    "data": {},
    "status": "pending",
    "ip_address": None,
    "user_agent": None,
    "updated_at": None,
}


class JSONSubmissionRepo(JSONRepoBase):
    table_name = "submissions"

    def create_submission(self, submission: dict[str, Any]) -> None:
        record = _to_record(submission)
        with self._db() as db:
            db.table(self.table_name).insert(record)

    def get_submission(self, submission_id: str) -> dict[str, Any] | None:
        with self._db() as db:
            item = db.table(self.table_name).get(Query().id == submission_id)
        return _from_record(item, SUBMISSION_DEFAULTS) if item else None

    def _search(self, form_id: str) -> list[dict[str, Any]]:
        with self._db() as db:
            return db.table(self.table_name).search(Query().form_id == form_id)

    def query_submissions(
        self,
        form_id: str,
        filters: dict[str, Any],
        offset: int = 0,
        limit: int | None = None,
    ) -> tuple[list[dict[str, Any]], int]:
        matched = [
            _from_record(item, SUBMISSION_DEFAULTS)
            for item in self._search(form_id)
            if _submission_matches(item, filters)
        ]
        matched.sort(key=lambda x: (x["submitted_at"], x["id"]), reverse=True)
        end = None if limit is None else offset + limit
        return matched[offset:end], len(matched)

    def list_submission_ids(self, form_id: str) -> list[str]:
        items = [_from_record(item, SUBMISSION_DEFAULTS) for item in self._search(form_id)]
        items.sort(key=lambda x: (x["submitted_at"], x["id"]), reverse=True)
        return [item["id"] for item in items]

    def count_submissions(self, form_ids: list[str] | None = None) -> dict[str, int]:
        with self._db() as db:
            items = db.table(self.table_name).all()
        counts: dict[str, int] = {}
        for item in items:
            form_id = item.get("form_id")
            if form_ids is not None and form_id not in form_ids:
                continue
            counts[form_id] = counts.get(form_id, 0) + 1
        return counts

    def update_submission(self, submission_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        with self._db() as db:
            table = db.table(self.table_name)
            item = table.get(Query().id == submission_id)
            if not item:
                raise KeyError(submission_id)
            item = dict(item)
            item.update(_to_record(updates))
            table.update(item, Query().id == submission_id)
        return _from_record(item, SUBMISSION_DEFAULTS)

    def delete_submission(self, submission_id: str) -> bool:
        return self._remove("id", submission_id)


FILE_DEFAULTS: dict[str, Any] = {
    "field_ref": "",
    "original_name": "",
    "stored_name": "",
    "stored_path": "",
    "content_type": "",
    "size": 0,
    "content_hash": "",
}


def _file_sort_key(item: dict[str, Any]) -> tuple[Any, ...]:
    return (item["field_ref"], item["created_at"], item["id"])


class JSONFileRepo(JSONRepoBase):
    table_name = "files"

    def create_file(self, file_meta: dict[str, Any]) -> None:
        record = _to_record(file_meta)
        with self._db() as db:
            db.table(self.table_name).insert(record)

    def get_file(self, file_id: str) -> dict[str, Any] | None:
        with self._db() as db:
            item = db.table(self.table_name).get(Query().id == file_id)
        return _from_record(item, FILE_DEFAULTS) if item else None

    def list_files(self, submission_id: str) -> list[dict[str, Any]]:
        with self._db() as db:
            items = db.table(self.table_name).search(Query().submission_id == submission_id)
        return sorted((_from_record(item, FILE_DEFAULTS) for item in items), key=_file_sort_key)

    def list_files_for_submissions(
        self, submission_ids: list[str]
    ) -> dict[str, list[dict[str, Any]]]:
        result: dict[str, list[dict[str, Any]]] = {sid: [] for sid in submission_ids}
        if not submission_ids:
            return result
        wanted = set(submission_ids)
        with self._db() as db:
            items = db.table(self.table_name).search(Query().submission_id.one_of(list(wanted)))
        for item in sorted((_from_record(item, FILE_DEFAULTS) for item in items), key=_file_sort_key):
            result.setdefault(item["submission_id"], []).append(item)
        return result

    def delete_file(self, file_id: str) -> bool:
        return self._remove("id", file_id)


UPLOAD_DEFAULTS: dict[str, Any] = {
    "field_ref": "",
    "original_name": "",
    "stored_path": "",
    "content_type": "",
    "size": 0,
    "content_hash": "",
}


class JSONUploadRepo(JSONRepoBase):
    table_name = "pending_uploads"

    def create_upload(self, upload: dict[str, Any]) -> None:
        record = _to_record(upload)
        with self._db() as db:
            db.table(self.table_name).insert(record)

    def get_upload(self, token: str) -> dict[str, Any] | None:
        with self._db() as db:
            item = db.table(self.table_name).get(Query().token == token)
        return _from_record(item, UPLOAD_DEFAULTS) if item else None

    def delete_upload(self, token: str) -> bool:
        return self._remove("token", token)

    def list_uploads(
        self, created_before: datetime | None = None, form_id: str | None = None
    ) -> list[dict[str, Any]]:
        with self._db() as db:
            items = db.table(self.table_name).all()
        uploads = [_from_record(item, UPLOAD_DEFAULTS) for item in items]
        if created_before is not None:
            uploads = [item for item in uploads if item["created_at"] < created_before]
        if form_id is not None:
            uploads = [item for item in uploads if item["form_id"] == form_id]
        return sorted(uploads, key=lambda x: x["created_at"])


EXPORT_DEFAULTS: dict[str, Any] = {
    "record_count": 0,
    "last_download_at": None,
    "download_count": 0,
}


class JSONExportRepo(JSONRepoBase):
    table_name = "exports"

    def create_export(self, export: dict[str, Any]) -> None:
        record = _to_record(export)
        with self._db() as db:
            db.table(self.table_name).insert(record)

    def get_export(self, export_id: str) -> dict[str, Any] | None:
        with self._db() as db:
            item = db.table(self.table_name).get(Query().id == export_id)
        return _from_record(item, EXPORT_DEFAULTS) if item else None

    def increment_download(self, export_id: str, at: datetime) -> dict[str, Any]:
        with self._db() as db:
            table = db.table(self.table_name)
            item = table.get(Query().id == export_id)
            if not item:
                raise KeyError(export_id)
            item = dict(item)
            item["download_count"] = int(item.get("download_count") or 0) + 1
            item["last_download_at"] = to_iso(at)
            table.update(item, Query().id == export_id)
        return _from_record(item, EXPORT_DEFAULTS)

    def delete_export(self, export_id: str) -> bool:
        return self._remove("id", export_id)

    def _all(self) -> list[dict[str, Any]]:
        with self._db() as db:
            items = db.table(self.table_name).all()
        return [_from_record(item, EXPORT_DEFAULTS) for item in items]

    def list_exports(self, form_id: str | None = None) -> list[dict[str, Any]]:
        exports = self._all()
        if form_id is not None:
            exports = [item for item in exports if item["form_id"] == form_id]
        return sorted(exports, key=lambda x: (x["created_at"], x["id"]), reverse=True)

    def list_expired(self, now: datetime) -> list[dict[str, Any]]:
        expired = [item for item in self._all() if item["expires_at"] <= now]
        return sorted(expired, key=lambda x: x["expires_at"])


class JSONStorage:
    def __init__(self, path: Path) -> None:
        self._lock = FileLock(f"{path}.lock")
        self.forms = JSONFormRepo(path, self._lock)
        self.submissions = JSONSubmissionRepo(path, self._lock)
        self.files = JSONFileRepo(path, self._lock)
        self.uploads = JSONUploadRepo(path, self._lock)
        self.exports = JSONExportRepo(path, self._lock)

    def dispose(self) -> None:
        return None
