from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from polyform.config import MAX_ID_ATTEMPTS, SHARE_TOKEN_PATTERN
from polyform.errors import ConflictError, NotFoundError, SchemaError, StorageError
from polyform.exports import delete_export_artifact
from polyform.files import FileStore
from polyform.protocols import Storage
from polyform.schema import default_config, form_fields, normalize_config, normalize_field
from polyform.uploads import discard_upload
from polyform.utils import new_ulid, now_utc, random_token

logger = logging.getLogger(__name__)


def is_valid_share_token(value: str) -> bool:
    return bool(SHARE_TOKEN_PATTERN.match(value or ""))


def generate_share_token(storage: Storage, attempts: int = MAX_ID_ATTEMPTS) -> str:
    # 単一管理者前提の check-then-act。複数書き込みでは create_form 側の一意制約で再試行する。
    for _ in range(attempts):
        candidate = random_token()
        if not storage.forms.share_token_exists(candidate):
            return candidate
    raise ConflictError(f"no unique share token after {attempts} attempts")


def _clean_title(title: Any) -> str:
    text = str(title or "").strip()
    if not text:
        raise SchemaError(["title is required"])
    return text


def create_form(
    storage: Storage,
    title: str,
    description: str = "",
    now: datetime | None = None,
) -> dict[str, Any]:
    clean_title = _clean_title(title)
    created_at = now or now_utc()
    form_id = new_ulid()
    last_error: ConflictError | None = None
    for attempt in range(1, MAX_ID_ATTEMPTS + 1):
        try:
            share_token = generate_share_token(storage)
            storage.forms.create_form(
                {
                    "id": form_id,
                    "share_token": share_token,
                    "title": clean_title,
                    "description": str(description or "").strip(),
                    "config": default_config(),
                    "is_active": True,
                    "created_at": created_at,
                    "updated_at": created_at,
                }
            )
        except ConflictError as exc:
            logger.warning("Share token collision creating form %s (attempt %d)", form_id, attempt)
            last_error = exc
            continue
        logger.info("Created form %s", form_id)
        return get_form(storage, form_id)
    raise StorageError("could not create form") from last_error


def get_form(storage: Storage, form_id: str) -> dict[str, Any]:
    form = storage.forms.get_form(form_id)
    if not form:
        raise NotFoundError("form", form_id)
    return form


def get_form_by_share_token(
    storage: Storage, share_token: str, active_only: bool = True
) -> dict[str, Any]:
    if not is_valid_share_token(share_token):
        raise NotFoundError("form", share_token)
    form = storage.forms.get_form_by_share_token(share_token)
    if not form or (active_only and not form.get("is_active")):
        raise NotFoundError("form", share_token)
    return form


def list_forms(storage: Storage) -> list[dict[str, Any]]:
    forms = storage.forms.list_forms()
    counts = storage.submissions.count_submissions([form["id"] for form in forms])
    return [{**form, "submission_count": counts.get(form["id"], 0)} for form in forms]


def _update(storage: Storage, form_id: str, updates: dict[str, Any]) -> dict[str, Any]:
    try:
        return storage.forms.update_form(form_id, {**updates, "updated_at": now_utc()})
    except KeyError:
        raise NotFoundError("form", form_id) from None


def replace_config(storage: Storage, form_id: str, config: Any) -> dict[str, Any]:
    get_form(storage, form_id)
    normalized = normalize_config(config)
    return _update(storage, form_id, {"config": normalized})


def update_basic_info(
    storage: Storage, form_id: str, title: str, description: str = ""
) -> dict[str, Any]:
    return _update(
        storage,
        form_id,
        {"title": _clean_title(title), "description": str(description or "").strip()},
    )


def set_active(storage: Storage, form_id: str, active: bool) -> dict[str, Any]:
    return _update(storage, form_id, {"is_active": bool(active)})


def add_field(storage: Storage, form_id: str, field_config: dict[str, Any]) -> dict[str, Any]:
    form = get_form(storage, form_id)
    fields = form_fields(form)
    raw = {key: value for key, value in dict(field_config).items() if key != "id"}
    errors: list[str] = []
    field = normalize_field(
        raw,
        f"field {len(fields) + 1}",
        {str(item.get("id")) for item in fields},
        errors,
    )
    if errors:
        raise SchemaError(errors)
    config = {**form["config"], "fields": [*fields, field]}
    replace_config(storage, form_id, config)
    return field


def update_field(
    storage: Storage, form_id: str, field_id: str, changes: dict[str, Any]
) -> dict[str, Any]:
    form = get_form(storage, form_id)
    fields = form_fields(form)
    for index, field in enumerate(fields):
        if field.get("id") == field_id:
            fields[index] = {**field, **dict(changes), "id": field_id}
            break
    else:
        raise NotFoundError("field", field_id)
    updated = replace_config(storage, form_id, {**form["config"], "fields": fields})
    return next(item for item in form_fields(updated) if item["id"] == field_id)


def remove_field(storage: Storage, form_id: str, field_id: str) -> None:
    form = get_form(storage, form_id)
    fields = form_fields(form)
    remaining = [field for field in fields if field.get("id") != field_id]
    if len(remaining) == len(fields):
        raise NotFoundError("field", field_id)
    replace_config(storage, form_id, {**form["config"], "fields": remaining})


def delete_form(
    storage: Storage,
    file_store: FileStore,
    export_store: FileStore,
    form_id: str,
) -> dict[str, Any]:
    """Delete a form and everything hanging off it, children first.

    The form row itself is only removed when every child was removed, so a
    partially failed delete can simply be retried.
    """
    from polyform.submissions import delete_submission

    get_form(storage, form_id)
    summary: dict[str, Any] = {
        "form_deleted": False,
        "submissions": {"success": 0, "failed": 0},
        "exports": {"success": 0, "failed": 0},
        "uploads": {"success": 0, "failed": 0},
    }

    for submission_id in storage.submissions.list_submission_ids(form_id):
        try:
            delete_submission(storage, file_store, submission_id)
            summary["submissions"]["success"] += 1
        except (NotFoundError, StorageError):
            logger.exception("Failed to delete submission %s of form %s", submission_id, form_id)
            summary["submissions"]["failed"] += 1

    for export in storage.exports.list_exports(form_id):
        try:
            delete_export_artifact(storage, export_store, export)
            summary["exports"]["success"] += 1
        except StorageError:
            logger.exception("Failed to delete export %s of form %s", export["id"], form_id)
            summary["exports"]["failed"] += 1

    for upload in storage.uploads.list_uploads(form_id=form_id):
        try:
            discard_upload(storage, file_store, upload)
            summary["uploads"]["success"] += 1
        except StorageError:
            logger.exception("Failed to delete pending upload of form %s", form_id)
            summary["uploads"]["failed"] += 1

    failed = sum(summary[key]["failed"] for key in ("submissions", "exports", "uploads"))
    if failed:
        logger.warning("Form %s kept: %d dependent items could not be deleted", form_id, failed)
        return summary
    summary["form_deleted"] = storage.forms.delete_form(form_id)
    logger.info("Deleted form %s", form_id)
    return summary


def form_stats(storage: Storage, form_id: str, now: datetime | None = None) -> dict[str, Any]:
    from polyform.submissions import submission_stats

    form = get_form(storage, form_id)
    return {
        "form_id": form["id"],
        "title": form["title"],
        "is_active": form["is_active"],
        "field_count": len(form_fields(form)),
        **submission_stats(storage, form_id, now),
    }
