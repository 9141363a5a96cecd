"""Tests for building CSV exports."""

from __future__ import annotations

import csv
import io
from datetime import timedelta

import pytest
from conftest import BASE_URL, CHOICE_FIELD, EMAIL_FIELD, FILE_FIELD, SECRET, TEXT_FIELD, at

from polyform import export as export_module
from polyform.errors import NotFoundError, StorageError
from polyform.export import build_export, build_headers, export_filename
from polyform.files import file_download_url
from polyform.submissions import get_submission_files, insert_submission


def _run(storage, export_store, form_id, filters=None, now=None):
    return build_export(
        storage, export_store, form_id, filters, base_url=BASE_URL, secret=SECRET, now=now
    )


def _read(export_store, job) -> tuple[bytes, list[list[str]]]:
    raw = export_store.read(job["stored_path"])
    return raw, list(csv.reader(io.StringIO(raw.decode("utf-8"), newline="")))


def test_single_text_field_scenario(storage, export_store, file_store, make_form):
    form = make_form([TEXT_FIELD])
    submission = insert_submission(
        storage, file_store, form, {"f1": "Alice"}, ip_address="192.0.2.7", now=at(5, 8, 30, 15)
    )

    job = _run(storage, export_store, form["id"])
    _, rows = _read(export_store, job)

    assert rows == [
        ["Submission ID", "Submitted At", "IP Address", "Name"],
        [submission["id"], "2024-01-05 08:30:15", "192.0.2.7", "Alice"],
    ]
    assert job["record_count"] == 1


def test_header_and_row_counts(storage, export_store, file_store, make_form):
    fields = [TEXT_FIELD, EMAIL_FIELD, CHOICE_FIELD, FILE_FIELD, {"id": "f5", "label": "Photo", "type": "photo"}]
    form = make_form(fields)
    for name in ["a", "b", "c"]:
        insert_submission(storage, file_store, form, {"f1": name})

    _, rows = _read(export_store, _run(storage, export_store, form["id"]))

    assert len(rows[0]) == 3 + len(fields) + 2
    assert rows[0][-2:] == ["Resume - Download URL", "Photo - Download URL"]
    assert len(rows) - 1 == 3


def test_checkbox_values_are_joined(storage, export_store, file_store, make_form):
    form = make_form([TEXT_FIELD, CHOICE_FIELD])
    insert_submission(storage, file_store, form, {"f1": "x", "f3": ["A", "B"]})
    _, rows = _read(export_store, _run(storage, export_store, form["id"]))
    assert rows[1][4] == "A, B"


def test_file_columns_use_name_and_signed_url(storage, export_store, file_store, make_form):
    form = make_form([TEXT_FIELD, FILE_FIELD])
    submission = insert_submission(
        storage,
        file_store,
        form,
        {"f1": "x"},
        uploads={"f4": {"filename": "cv.pdf", "content": b"%PDF", "content_type": "application/pdf"}},
    )
    file_id = get_submission_files(storage, submission["id"])[0]["id"]

    _, rows = _read(export_store, _run(storage, export_store, form["id"]))

    assert rows[1][4] == "cv.pdf"
    assert rows[1][5] == file_download_url(BASE_URL, file_id, SECRET)


def test_legacy_rows_are_resolved_by_name_and_label(storage, export_store, make_form):
    form = make_form([TEXT_FIELD, EMAIL_FIELD, FILE_FIELD])
    storage.submissions.create_submission(
        {"id": "old", "form_id": form["id"], "data": {"Name": "Zed", "email": "z@example.com"}, "submitted_at": at(1)}
    )
    storage.files.create_file(
        {
            "id": "file-old",
            "submission_id": "old",
            "form_id": form["id"],
            "field_ref": "resume",
            "original_name": "legacy.pdf",
            "stored_name": "legacy.pdf",
            "stored_path": "legacy.pdf",
            "size": 1,
            "content_type": "application/pdf",
            "content_hash": "",
            "created_at": at(1),
        }
    )

    _, rows = _read(export_store, _run(storage, export_store, form["id"]))

    assert rows[1][3:] == ["Zed", "z@example.com", "legacy.pdf", file_download_url(BASE_URL, "file-old", SECRET)]


def test_empty_set_writes_header_only(storage, export_store, make_form):
    form = make_form([TEXT_FIELD])
    job = _run(storage, export_store, form["id"])
    raw, rows = _read(export_store, job)
    assert rows == [["Submission ID", "Submitted At", "IP Address", "Name"]]
    assert raw.endswith(b"\r\n")
    assert job["record_count"] == 0


def test_filters_apply_to_export(storage, export_store, file_store, make_form):
    form = make_form([TEXT_FIELD])
    insert_submission(storage, file_store, form, {"f1": "Alice"}, now=at(1))
    insert_submission(storage, file_store, form, {"f1": "Bob"}, now=at(2))
    job = _run(storage, export_store, form["id"], {"search": "bob"})
    _, rows = _read(export_store, job)
    assert [row[3] for row in rows[1:]] == ["Bob"]


def test_failing_cell_degrades_to_empty(storage, export_store, file_store, make_form, monkeypatch):
    """One bad value empties its own cell; the rest of the export is unaffected."""
    form = make_form([TEXT_FIELD, EMAIL_FIELD])
    insert_submission(storage, file_store, form, {"f1": "fine", "f2": "a@example.com"}, now=at(1))
    insert_submission(storage, file_store, form, {"f1": "boom", "f2": "b@example.com"}, now=at(2))
    original = export_module.format_value

    def flaky(field, value):
        if value == "boom":
            raise ValueError("cannot render")
        return original(field, value)

    monkeypatch.setattr(export_module, "format_value", flaky)
    _, rows = _read(export_store, _run(storage, export_store, form["id"]))
    assert [row[3:] for row in rows[1:]] == [["", "b@example.com"], ["fine", "a@example.com"]]


def test_unrenderable_value_is_empty(storage, export_store, make_form):
    form = make_form([TEXT_FIELD])
    storage.submissions.create_submission(
        {"id": "weird", "form_id": form["id"], "data": {"f1": {"nested": ["odd"]}}, "submitted_at": at(2)}
    )
    _, rows = _read(export_store, _run(storage, export_store, form["id"]))
    assert rows[1][0] == "weird"
    assert rows[1][3] == ""


def test_quoting_is_rfc4180(storage, export_store, file_store, make_form):
    form = make_form([TEXT_FIELD])
    insert_submission(storage, file_store, form, {"f1": 'Say "hi", friend'})
    raw, rows = _read(export_store, _run(storage, export_store, form["id"]))
    assert b'"Say ""hi"", friend"' in raw
    assert rows[1][3] == 'Say "hi", friend'


def test_expiry_is_creation_plus_ttl(storage, export_store, make_form):
    form = make_form([TEXT_FIELD])
    job = _run(storage, export_store, form["id"], now=at(3))
    assert job["expires_at"] - job["created_at"] == timedelta(hours=24)
    assert storage.exports.get_export(job["id"])["download_count"] == 0


def test_missing_form_fails_before_io(storage, export_store):
    with pytest.raises(NotFoundError):
        _run(storage, export_store, "missing")
    assert list(export_store.iter_files()) == []


def test_recording_failure_removes_file(storage, export_store, make_form, monkeypatch):
    form = make_form([TEXT_FIELD])

    def fail(export):
        raise RuntimeError("disk full")

    monkeypatch.setattr(storage.exports, "create_export", fail)
    with pytest.raises(StorageError):
        _run(storage, export_store, form["id"])
    assert list(export_store.iter_files()) == []


def test_write_failure_records_no_job(storage, export_store, make_form, monkeypatch):
    form = make_form([TEXT_FIELD])

    def broken_headers(fields):
        raise OSError("no space left on device")

    monkeypatch.setattr(export_module, "build_headers", broken_headers)
    with pytest.raises(StorageError):
        _run(storage, export_store, form["id"])
    assert storage.exports.list_exports(form["id"]) == []
    assert list(export_store.iter_files()) == []


def test_filenames_are_sanitized_and_unique():
    first = export_filename("Customer Survey/2024!", at(1, 9, 5, 7))
    second = export_filename("Customer Survey/2024!", at(1, 9, 5, 7))
    assert first.startswith("submissions_Customer_Survey_2024__2024-01-01_09-05-07_")
    assert first.endswith(".csv")
    assert first != second


def test_build_headers_falls_back_to_name():
    headers = build_headers([{"id": "x", "name": "nick", "label": "", "type": "text"}])
    assert headers[-1] == "nick"
