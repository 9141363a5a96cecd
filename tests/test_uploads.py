"""Tests for pre-uploads: staging, claiming at submit time and the stale sweep."""

from __future__ import annotations

import os
from datetime import timedelta

import pytest
from conftest import FILE_FIELD, PHOTO_FIELD, TEXT_FIELD, at

from polyform.errors import FieldValidationError, NotFoundError
from polyform.submissions import get_submission_files, insert_submission, list_submissions
from polyform.uploads import TEMP_SUBDIR, stage_upload, sweep_stale_uploads


def test_stage_upload_records_pending(storage, file_store, make_form):
    form = make_form([TEXT_FIELD, FILE_FIELD])
    upload = stage_upload(storage, file_store, form, "resume", "notes.txt", b"notes", "text/plain")
    assert upload["field_ref"] == "f4"
    assert upload["stored_path"].startswith(f"{TEMP_SUBDIR}/")
    assert storage.uploads.get_upload(upload["token"])["size"] == 5
    assert file_store.read(upload["stored_path"]) == b"notes"


def test_stage_upload_validates_the_file(storage, file_store, make_form):
    form = make_form([PHOTO_FIELD])
    with pytest.raises(FieldValidationError):
        stage_upload(storage, file_store, form, "f5", "doc.pdf", b"%PDF", "application/pdf")
    assert list(file_store.iter_files()) == []


def test_stage_upload_respects_global_limit(storage, file_store, make_form):
    form = make_form([FILE_FIELD])
    with pytest.raises(FieldValidationError):
        stage_upload(storage, file_store, form, "f4", "a.txt", b"x" * 20, "text/plain", max_bytes=10)


def test_stage_upload_for_non_file_field(storage, file_store, make_form):
    form = make_form([TEXT_FIELD])
    with pytest.raises(NotFoundError):
        stage_upload(storage, file_store, form, "f1", "a.txt", b"x", "text/plain")


def test_submission_claims_pending_upload(storage, file_store, make_form):
    form = make_form([TEXT_FIELD, {**FILE_FIELD, "required": True}])
    upload = stage_upload(storage, file_store, form, "f4", "cv.pdf", b"%PDF", "application/pdf")

    submission = insert_submission(
        storage, file_store, form, {"f1": "Alice"}, pending_tokens={"f4": upload["token"]}
    )

    files = get_submission_files(storage, submission["id"])
    assert [item["original_name"] for item in files] == ["cv.pdf"]
    assert not files[0]["stored_path"].startswith(f"{TEMP_SUBDIR}/")
    assert file_store.read(files[0]["stored_path"]) == b"%PDF"
    assert storage.uploads.get_upload(upload["token"]) is None


def test_unknown_token_is_a_field_error(storage, file_store, make_form):
    form = make_form([TEXT_FIELD, FILE_FIELD])
    with pytest.raises(FieldValidationError) as info:
        insert_submission(storage, file_store, form, {"f1": "Alice"}, pending_tokens={"f4": "bogus"})
    assert info.value.to_list()[0]["field_id"] == "f4"


def test_token_from_another_form_is_rejected(storage, file_store, make_form):
    form = make_form([TEXT_FIELD, FILE_FIELD])
    other = make_form([FILE_FIELD], title="Other")
    upload = stage_upload(storage, file_store, other, "f4", "cv.pdf", b"%PDF", "application/pdf")
    with pytest.raises(FieldValidationError):
        insert_submission(storage, file_store, form, {"f1": "A"}, pending_tokens={"f4": upload["token"]})


def test_sweep_removes_only_stale_uploads(storage, file_store, make_form):
    form = make_form([FILE_FIELD])
    old = stage_upload(storage, file_store, form, "f4", "old.txt", b"old", "text/plain", now=at(1, hour=10))
    fresh = stage_upload(storage, file_store, form, "f4", "new.txt", b"new", "text/plain", now=at(1, hour=11, minute=30))

    removed = sweep_stale_uploads(storage, file_store, 3600, now=at(1, hour=12))

    assert removed == 1
    assert storage.uploads.get_upload(old["token"]) is None
    assert not file_store.exists(old["stored_path"])
    assert storage.uploads.get_upload(fresh["token"]) is not None
    assert file_store.exists(fresh["stored_path"])


def test_sweep_removes_orphaned_temp_files(storage, file_store, make_form):
    form = make_form([FILE_FIELD])
    now = at(1, hour=12)
    orphan = file_store.store(b"lost", "lost.txt", TEMP_SUBDIR)
    stale = (now - timedelta(hours=2)).timestamp()
    os.utime(file_store.resolve(orphan), (stale, stale))
    kept = stage_upload(storage, file_store, form, "f4", "keep.txt", b"keep", "text/plain", now=now)
    os.utime(file_store.resolve(kept["stored_path"]), (stale, stale))

    assert sweep_stale_uploads(storage, file_store, 3600, now=now) == 1
    assert not file_store.exists(orphan)
    assert file_store.exists(kept["stored_path"])


def test_expired_upload_cannot_be_claimed_before_sweep(storage, file_store, make_form):
    """An upload past the TTL is rejected at submit time even though it is still stored."""
    form = make_form([TEXT_FIELD, FILE_FIELD])
    upload = stage_upload(storage, file_store, form, "f4", "cv.pdf", b"%PDF", "application/pdf", now=at(1))

    with pytest.raises(FieldValidationError) as info:
        insert_submission(
            storage, file_store, form, {"f1": "Alice"}, pending_tokens={"f4": upload["token"]}, now=at(2)
        )

    assert info.value.to_list() == [
        {"field_id": "f4", "message": "Uploaded file has expired. Please upload again."}
    ]
    assert storage.uploads.get_upload(upload["token"]) is not None
    assert list_submissions(storage, form["id"])["total"] == 0


def test_upload_within_ttl_is_claimed(storage, file_store, make_form):
    form = make_form([TEXT_FIELD, FILE_FIELD])
    upload = stage_upload(storage, file_store, form, "f4", "cv.pdf", b"%PDF", "application/pdf", now=at(1))
    submission = insert_submission(
        storage,
        file_store,
        form,
        {"f1": "Alice"},
        pending_tokens={"f4": upload["token"]},
        preupload_ttl_seconds=3600,
        now=at(1, minute=59, second=59),
    )
    assert submission["data"]["f4"] == "cv.pdf"
