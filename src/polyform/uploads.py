from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import Any

from polyform.config import DEFAULT_PREUPLOAD_TTL_SECONDS
from polyform.errors import FieldError, FieldValidationError, NotFoundError, StorageError
from polyform.field_types import is_file_like, validate_upload
from polyform.files import FileStore, content_hash
from polyform.file_formats import MB, guess_content_type
from polyform.protocols import Storage
from polyform.resolver import field_matches_ref, find_field
from polyform.schema import form_fields
from polyform.utils import new_ulid, now_utc

logger = logging.getLogger(__name__)

TEMP_SUBDIR = "tmp"


def _check_global_limit(field_id: str, size: int, max_bytes: int | None) -> None:
    if max_bytes is not None and size > max_bytes:
        limit = max_bytes / MB
        raise FieldValidationError(
            [FieldError(field_id, f"File size exceeds the maximum allowed size of {limit:g}MB.")]
        )


def upload_value(filename: str, size: int, content_type: str | None) -> dict[str, Any]:
    """Shape validated by the file-like field validators."""
    return {
        "filename": filename,
        "size": size,
        "content_type": guess_content_type(filename, content_type),
    }


def stage_upload(
    storage: Storage,
    file_store: FileStore,
    form: dict[str, Any],
    field_ref: str,
    filename: str,
    content: bytes,
    content_type: str | None = None,
    max_bytes: int | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """送信前に一時アップロードを保存し、送信時に参照するトークンを返す。"""
    field = find_field(form_fields(form), field_ref)
    if field is None or not is_file_like(field):
        raise NotFoundError("file field", field_ref)
    field_id = str(field["id"])
    _check_global_limit(field_id, len(content), max_bytes)
    try:
        value = validate_upload({**field, "required": True}, upload_value(filename, len(content), content_type))
    except FieldError as error:
        raise FieldValidationError([error]) from None

    stored_path = file_store.store(content, filename, TEMP_SUBDIR)
    upload = {
        "token": secrets.token_urlsafe(24),
        "form_id": form["id"],
        "field_ref": field_id,
        "original_name": filename,
        "stored_path": stored_path,
        "size": len(content),
        "content_type": value["content_type"],
        "content_hash": content_hash(content),
        "created_at": now or now_utc(),
    }
    try:
        storage.uploads.create_upload(upload)
    except Exception as exc:
        logger.exception("Failed to record pending upload for form %s", form["id"])
        file_store.delete(stored_path)
        raise StorageError("could not record upload") from exc
    logger.info("Staged upload for form %s field %s", form["id"], field_id)
    return upload


def get_pending(
    storage: Storage,
    form: dict[str, Any],
    field: dict[str, Any],
    token: str,
    ttl_seconds: int = DEFAULT_PREUPLOAD_TTL_SECONDS,
    now: datetime | None = None,
) -> dict[str, Any]:
    """期限切れの一時アップロードは掃除前でも見つからない扱いにする。"""
    upload = storage.uploads.get_upload(token) if token else None
    if not upload or upload["form_id"] != form["id"] or not field_matches_ref(field, upload["field_ref"]):
        raise NotFoundError("upload", token)
    cutoff = (now or now_utc()) - timedelta(seconds=ttl_seconds)
    if upload["created_at"] < cutoff:
        raise NotFoundError("upload", token)
    return upload


def discard_upload(storage: Storage, file_store: FileStore, upload: dict[str, Any]) -> None:
    file_store.delete(upload["stored_path"])
    try:
        storage.uploads.delete_upload(upload["token"])
    except Exception as exc:
        logger.exception("Failed to delete pending upload record %s", upload["token"])
        raise StorageError("could not delete pending upload") from exc


def claim_upload(
    storage: Storage,
    file_store: FileStore,
    upload: dict[str, Any],
    submission_id: str,
    field: dict[str, Any],
    now: datetime | None = None,
) -> dict[str, Any]:
    """一時アップロードを本保存に移し、FileAttachment として記録する。"""
    stored_path = file_store.move(upload["stored_path"], upload["form_id"])
    file_meta = {
        "id": new_ulid(),
        "submission_id": submission_id,
        "form_id": upload["form_id"],
        "field_ref": str(field["id"]),
        "original_name": upload["original_name"],
        "stored_name": stored_path.rsplit("/", 1)[-1],
        "stored_path": stored_path,
        "size": upload["size"],
        "content_type": upload["content_type"],
        "content_hash": upload["content_hash"],
        "created_at": now or now_utc(),
    }
    try:
        storage.files.create_file(file_meta)
    except Exception as exc:
        logger.exception("Failed to record claimed upload for submission %s", submission_id)
        file_store.delete(stored_path)
        raise StorageError("could not record file") from exc
    storage.uploads.delete_upload(upload["token"])
    return file_meta


def sweep_stale_uploads(
    storage: Storage,
    file_store: FileStore,
    ttl_seconds: int,
    now: datetime | None = None,
) -> int:
    """Remove pending uploads older than the TTL plus orphaned temp files."""
    current = now or now_utc()
    cutoff = current - timedelta(seconds=ttl_seconds)
    removed = 0
    for upload in storage.uploads.list_uploads(created_before=cutoff):
        try:
            discard_upload(storage, file_store, upload)
        except StorageError:
            logger.exception("Keeping pending upload %s for the next sweep", upload["token"])
            continue
        removed += 1

    referenced = {upload["stored_path"] for upload in storage.uploads.list_uploads()}
    cutoff_ts = cutoff.timestamp()
    for path, mtime in list(file_store.iter_files(TEMP_SUBDIR)):
        if path in referenced or mtime >= cutoff_ts:
            continue
        try:
            if file_store.delete(path):
                removed += 1
        except StorageError:
            logger.exception("Failed to remove orphaned upload %s", path)
    if removed:
        logger.info("Swept %d stale uploads", removed)
    return removed
