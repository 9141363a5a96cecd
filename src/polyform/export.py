from __future__ import annotations

import csv
import logging
import re
import secrets
from datetime import datetime, timedelta
from typing import Any, Callable

from polyform.errors import StorageError
from polyform.field_types import field_label, is_file_like
from polyform.files import FileStore, file_download_url
from polyform.forms import get_form
from polyform.protocols import Storage
from polyform.resolver import lookup_value
from polyform.schema import form_fields
from polyform.submissions import files_for_field, format_value, list_all_submissions
from polyform.utils import ensure_aware, new_ulid, now_utc

logger = logging.getLogger(__name__)

FIXED_HEADERS = ["Submission ID", "Submitted At", "IP Address"]
DOWNLOAD_SUFFIX = " - Download URL"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
_UNSAFE_TITLE = re.compile(r"[^a-zA-Z0-9_-]")


def export_filename(title: str, at: datetime) -> str:
    sanitized = _UNSAFE_TITLE.sub("_", title or "") or "form"
    stamp = ensure_aware(at).strftime("%Y-%m-%d_%H-%M-%S")
    return f"submissions_{sanitized}_{stamp}_{secrets.token_hex(3)}.csv"


def build_headers(fields: list[dict[str, Any]]) -> list[str]:
    headers = list(FIXED_HEADERS)
    headers.extend(field_label(field) for field in fields)
    headers.extend(field_label(field) + DOWNLOAD_SUFFIX for field in fields if is_file_like(field))
    return headers


def _cell(submission_id: str, column: str, compute: Callable[[], str]) -> str:
    """1セルの失敗で全体を止めない。空セルに落としてログに残す。"""
    try:
        return compute()
    except Exception:
        logger.warning(
            "Export cell degraded to empty (submission %s, column %s)",
            submission_id,
            column,
            exc_info=True,
        )
        return ""


def build_row(
    submission: dict[str, Any],
    fields: list[dict[str, Any]],
    files: list[dict[str, Any]],
    base_url: str,
    secret: str,
) -> list[str]:
    submission_id = str(submission.get("id") or "")
    data = submission.get("data") or {}

    def field_cell(field: dict[str, Any]) -> str:
        if is_file_like(field):
            attached = files_for_field(field, files)
            if attached:
                return str(attached[0]["original_name"])
        return format_value(field, lookup_value(data, field))

    def download_cell(field: dict[str, Any]) -> str:
        attached = files_for_field(field, files)
        return file_download_url(base_url, attached[0]["id"], secret) if attached else ""

    submitted_at = submission.get("submitted_at")
    row = [
        submission_id,
        _cell(
            submission_id,
            "Submitted At",
            lambda: ensure_aware(submitted_at).strftime(TIMESTAMP_FORMAT) if submitted_at else "",
        ),
        str(submission.get("ip_address") or ""),
    ]
    for field in fields:
        row.append(_cell(submission_id, field_label(field), lambda field=field: field_cell(field)))
    for field in fields:
        if is_file_like(field):
            row.append(
                _cell(
                    submission_id,
                    field_label(field) + DOWNLOAD_SUFFIX,
                    lambda field=field: download_cell(field),
                )
            )
    return row


def build_export(
    storage: Storage,
    export_store: FileStore,
    form_id: str,
    filters: dict[str, Any] | None = None,
    *,
    base_url: str,
    secret: str,
    ttl_hours: int = 24,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Write the filtered submissions of a form to CSV and record the export job."""
    form = get_form(storage, form_id)
    fields = form_fields(form)
    submissions = list_all_submissions(storage, form_id, filters)
    files_by_submission = storage.files.list_files_for_submissions([item["id"] for item in submissions])

    created_at = now or now_utc()
    filename = export_filename(form["title"], created_at)
    try:
        with export_store.atomic_writer(filename, mode="w", newline="", encoding="utf-8") as handle:
            writer = csv.writer(handle)
            writer.writerow(build_headers(fields))
            for submission in submissions:
                files = files_by_submission.get(submission["id"], [])
                writer.writerow(build_row(submission, fields, files, base_url, secret))
    except OSError as exc:
        logger.exception("Failed to write export for form %s", form_id)
        raise StorageError("could not write export file") from exc

    export = {
        "id": new_ulid(),
        "form_id": form_id,
        "filename": filename,
        "stored_path": filename,
        "record_count": len(submissions),
        "created_at": created_at,
        "expires_at": created_at + timedelta(hours=ttl_hours),
        "last_download_at": None,
        "download_count": 0,
    }
    try:
        storage.exports.create_export(export)
    except Exception as exc:
        logger.exception("Failed to record export for form %s; removing %s", form_id, filename)
        export_store.delete(filename)
        raise StorageError("could not record export") from exc
    logger.info("Exported %d submissions of form %s to %s", len(submissions), form_id, filename)
    return export
