from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Any

from polyform.config import DEFAULT_PREUPLOAD_TTL_SECONDS, SUBMISSION_STATUSES
from polyform.errors import FieldError, FieldValidationError, NotFoundError, StorageError
from polyform.field_types import (
    field_label,
    format_aadhar,
    is_empty,
    is_file_like,
    normalize_type_tag,
    validate_submission,
)
from polyform.files import FileStore, content_hash, file_download_url
from polyform.forms import get_form
from polyform.protocols import Storage
from polyform.resolver import canonicalize_values, field_matches_ref, find_field, lookup_value, resolve
from polyform.schema import form_fields
from polyform.uploads import claim_upload, get_pending, upload_value
from polyform.utils import new_ulid, now_utc, parse_filter_bound

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20


def normalize_filters(filters: dict[str, Any] | None) -> dict[str, Any]:
    """検索語と日付範囲を正規化する。日付のみの指定はその日の開始/終了として扱う。"""
    filters = filters or {}
    search = str(filters.get("search") or "").strip()
    after = filters.get("submitted_after", filters.get("date_from"))
    before = filters.get("submitted_before", filters.get("date_to"))
    normalized: dict[str, Any] = {}
    if search:
        normalized["search"] = search
    start = parse_filter_bound(after)
    end = parse_filter_bound(before, end_of_day=True)
    if start is not None:
        normalized["submitted_after"] = start
    if end is not None:
        normalized["submitted_before"] = end
    return normalized


def format_value(field: dict[str, Any], value: Any) -> str:
    if is_empty(value):
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(str(item) for item in value if not is_empty(item))
    if isinstance(value, dict):
        return str(value.get("original_name") or value.get("filename") or "")
    if normalize_type_tag(field.get("type")) == "aadhar":
        return format_aadhar(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def files_for_field(field: dict[str, Any], files: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [item for item in files if field_matches_ref(field, item.get("field_ref"))]


def _with_url(file_meta: dict[str, Any], base_url: str | None, secret: str | None) -> dict[str, Any]:
    if base_url is None or secret is None:
        return dict(file_meta)
    return {**file_meta, "download_url": file_download_url(base_url, file_meta["id"], secret)}


def insert_submission(
    storage: Storage,
    file_store: FileStore,
    form: dict[str, Any],
    values: dict[str, Any],
    uploads: dict[str, dict[str, Any]] | None = None,
    pending_tokens: dict[str, str] | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    max_upload_bytes: int | None = None,
    preupload_ttl_seconds: int = DEFAULT_PREUPLOAD_TTL_SECONDS,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Validate, persist a submission and attach its files.

    ``values`` may be keyed by field id, name or label. ``uploads`` maps a field
    reference to ``{"filename", "content", "content_type"}``; ``pending_tokens``
    maps a field reference to a token returned by ``stage_upload``. A direct
    upload wins over a pending one for the same field. Pending uploads older
    than ``preupload_ttl_seconds`` count as expired even before the sweep.
    """
    created_at = now or now_utc()
    fields = form_fields(form)
    canonical = canonicalize_values(fields, values)
    errors: list[FieldError] = []

    direct: dict[str, dict[str, Any]] = {}
    for ref, item in (uploads or {}).items():
        field = find_field(fields, ref)
        if field is None or not is_file_like(field) or not item or not item.get("filename"):
            continue
        direct[resolve(field)] = item

    pending: dict[str, dict[str, Any]] = {}
    for ref, token in (pending_tokens or {}).items():
        field = find_field(fields, ref)
        if field is None or not is_file_like(field) or not token or resolve(field) in direct:
            continue
        try:
            pending[resolve(field)] = get_pending(
                storage, form, field, token, preupload_ttl_seconds, created_at
            )
        except NotFoundError:
            errors.append(FieldError(resolve(field), "Uploaded file has expired. Please upload again."))

    upload_values: dict[str, Any] = {}
    for field_id, item in direct.items():
        content = item.get("content") or b""
        if max_upload_bytes is not None and len(content) > max_upload_bytes:
            errors.append(
                FieldError(field_id, f"File size exceeds the maximum allowed size of {max_upload_bytes} bytes.")
            )
            continue
        upload_values[field_id] = upload_value(item["filename"], len(content), item.get("content_type"))
    for field_id, upload in pending.items():
        upload_values[field_id] = upload_value(upload["original_name"], upload["size"], upload["content_type"])

    normalized, field_errors = validate_submission(fields, canonical, upload_values)
    failed_ids = {error.field_id for error in errors}
    errors.extend(error for error in field_errors if error.field_id not in failed_ids)
    if errors:
        raise FieldValidationError(errors)

    data: dict[str, Any] = {}
    for field in fields:
        field_id = resolve(field)
        if field_id not in normalized:
            continue
        value = normalized[field_id]
        data[field_id] = value["filename"] if is_file_like(field) else value

    submission = {
        "id": new_ulid(),
        "form_id": form["id"],
        "data": data,
        "submitted_at": created_at,
        "ip_address": ip_address,
        "user_agent": user_agent,
        "status": "pending",
        "updated_at": created_at,
    }
    written_paths: list[str] = []
    written_files: list[str] = []
    try:
        storage.submissions.create_submission(submission)
        for field in fields:
            field_id = resolve(field)
            if field_id in direct:
                item = direct[field_id]
                content = item.get("content") or b""
                stored_path = file_store.store(content, item["filename"], str(form["id"]))
                written_paths.append(stored_path)
                file_meta = {
                    "id": new_ulid(),
                    "submission_id": submission["id"],
                    "form_id": form["id"],
                    "field_ref": field_id,
                    "original_name": item["filename"],
                    "stored_name": stored_path.rsplit("/", 1)[-1],
                    "stored_path": stored_path,
                    "size": len(content),
                    "content_type": upload_values[field_id]["content_type"],
                    "content_hash": content_hash(content),
                    "created_at": created_at,
                }
                storage.files.create_file(file_meta)
                written_files.append(file_meta["id"])
            elif field_id in pending:
                file_meta = claim_upload(
                    storage, file_store, pending[field_id], submission["id"], field, created_at
                )
                written_paths.append(file_meta["stored_path"])
                written_files.append(file_meta["id"])
    except Exception as exc:
        logger.exception("Failed to store submission for form %s; rolling back", form["id"])
        _compensate(storage, file_store, submission["id"], written_files, written_paths)
        raise StorageError("could not store submission") from exc

    logger.info("Stored submission %s for form %s", submission["id"], form["id"])
    return submission


def _compensate(
    storage: Storage,
    file_store: FileStore,
    submission_id: str,
    file_ids: list[str],
    paths: list[str],
) -> None:
    for file_id in file_ids:
        try:
            storage.files.delete_file(file_id)
        except Exception:
            logger.exception("Rollback: failed to delete file row %s", file_id)
    for path in paths:
        try:
            file_store.delete(path)
        except StorageError:
            logger.exception("Rollback: failed to delete stored file %s", path)
    try:
        storage.submissions.delete_submission(submission_id)
    except Exception:
        logger.exception("Rollback: failed to delete submission %s", submission_id)


def display_values(
    fields: list[dict[str, Any]],
    data: dict[str, Any],
    files: list[dict[str, Any]],
) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for field in fields:
        value = lookup_value(data, field)
        attached = files_for_field(field, files) if is_file_like(field) else []
        if attached:
            display = ", ".join(item["original_name"] for item in attached)
        else:
            display = format_value(field, value)
        rows.append(
            {
                "field_id": resolve(field),
                "label": field_label(field),
                "type": field.get("type"),
                "value": value,
                "display_value": display,
                "files": attached,
            }
        )
    return rows


def get_submission(
    storage: Storage,
    submission_id: str,
    base_url: str | None = None,
    secret: str | None = None,
) -> dict[str, Any]:
    submission = storage.submissions.get_submission(submission_id)
    if not submission:
        raise NotFoundError("submission", submission_id)
    form = storage.forms.get_form(submission["form_id"])
    files = [_with_url(item, base_url, secret) for item in storage.files.list_files(submission_id)]
    fields = form_fields(form) if form else []
    return {
        **submission,
        "form_title": form["title"] if form else None,
        "form_config": form["config"] if form else None,
        "files": files,
        "display": display_values(fields, submission["data"], files),
    }


def list_submissions(
    storage: Storage,
    form_id: str,
    filters: dict[str, Any] | None = None,
    page: int = 1,
    page_size: int | None = DEFAULT_PAGE_SIZE,
) -> dict[str, Any]:
    get_form(storage, form_id)
    page = max(1, int(page or 1))
    if page_size is None:
        rows, total = storage.submissions.query_submissions(form_id, normalize_filters(filters))
        return {"submissions": rows, "total": total, "page": 1, "page_size": None, "total_pages": 1}
    page_size = max(1, int(page_size))
    rows, total = storage.submissions.query_submissions(
        form_id, normalize_filters(filters), offset=(page - 1) * page_size, limit=page_size
    )
    return {
        "submissions": rows,
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": max(1, math.ceil(total / page_size)),
    }


def list_all_submissions(
    storage: Storage, form_id: str, filters: dict[str, Any] | None = None
) -> list[dict[str, Any]]:
    get_form(storage, form_id)
    rows, _ = storage.submissions.query_submissions(form_id, normalize_filters(filters))
    return rows


def get_submission_files(
    storage: Storage,
    submission_id: str,
    base_url: str | None = None,
    secret: str | None = None,
) -> list[dict[str, Any]]:
    if not storage.submissions.get_submission(submission_id):
        raise NotFoundError("submission", submission_id)
    return [_with_url(item, base_url, secret) for item in storage.files.list_files(submission_id)]


def delete_submission(storage: Storage, file_store: FileStore, submission_id: str) -> dict[str, Any]:
    """添付ファイル（実体→行）を先に削除してから送信データを削除する。"""
    try:
        submission = storage.submissions.get_submission(submission_id)
        if not submission:
            raise NotFoundError("submission", submission_id)
        files = storage.files.list_files(submission_id)
        for file_meta in files:
            file_store.delete(file_meta["stored_path"])
            storage.files.delete_file(file_meta["id"])
        storage.submissions.delete_submission(submission_id)
    except (NotFoundError, StorageError):
        raise
    except Exception as exc:
        logger.exception("Failed to delete submission %s", submission_id)
        raise StorageError("could not delete submission") from exc
    logger.info("Deleted submission %s (%d files)", submission_id, len(files))
    return {"submission_id": submission_id, "files_deleted": len(files)}


def bulk_delete(storage: Storage, file_store: FileStore, submission_ids: list[str]) -> dict[str, Any]:
    result: dict[str, Any] = {"success": 0, "failed": 0, "errors": []}
    for submission_id in dict.fromkeys(submission_ids):
        try:
            delete_submission(storage, file_store, submission_id)
        except (NotFoundError, StorageError) as exc:
            logger.warning("Bulk delete failed for submission %s: %s", submission_id, exc)
            result["failed"] += 1
            result["errors"].append({"id": submission_id, "error": str(exc)})
            continue
        result["success"] += 1
    return result


def set_status(storage: Storage, submission_id: str, status: str) -> dict[str, Any]:
    if status not in SUBMISSION_STATUSES:
        raise FieldValidationError(
            [FieldError("status", f"Status must be one of: {', '.join(SUBMISSION_STATUSES)}")]
        )
    try:
        return storage.submissions.update_submission(
            submission_id, {"status": status, "updated_at": now_utc()}
        )
    except KeyError:
        raise NotFoundError("submission", submission_id) from None


def submission_stats(storage: Storage, form_id: str, now: datetime | None = None) -> dict[str, Any]:
    get_form(storage, form_id)
    current = now or now_utc()
    rows, total = storage.submissions.query_submissions(form_id, {})
    times = [row["submitted_at"] for row in rows if row.get("submitted_at")]
    start_of_day = current.replace(hour=0, minute=0, second=0, microsecond=0)
    by_status = {status: 0 for status in SUBMISSION_STATUSES}
    for row in rows:
        status = row.get("status") or "pending"
        by_status[status] = by_status.get(status, 0) + 1
    return {
        "total_submissions": total,
        "today_submissions": sum(1 for ts in times if ts >= start_of_day),
        "week_submissions": sum(1 for ts in times if ts >= current - timedelta(days=7)),
        "month_submissions": sum(1 for ts in times if ts >= current - timedelta(days=30)),
        "first_submission": min(times) if times else None,
        "last_submission": max(times) if times else None,
        "by_status": by_status,
    }
