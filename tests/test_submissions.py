"""Tests for storing, listing and deleting submissions."""

from __future__ import annotations

import pytest
from conftest import BASE_URL, CHOICE_FIELD, EMAIL_FIELD, FILE_FIELD, SECRET, TEXT_FIELD, at

from polyform.errors import FieldValidationError, NotFoundError, StorageError
from polyform.submissions import (
    bulk_delete,
    delete_submission,
    get_submission,
    get_submission_files,
    insert_submission,
    list_all_submissions,
    list_submissions,
    normalize_filters,
    set_status,
    submission_stats,
)


def _pdf(name: str = "cv.pdf", body: bytes = b"%PDF-1.4") -> dict:
    return {"filename": name, "content": body, "content_type": "application/pdf"}


# ---------------------------------------------------------------------------
# Insert
# ---------------------------------------------------------------------------


def test_insert_canonicalizes_keys(storage, file_store, make_form):
    form = make_form([TEXT_FIELD, EMAIL_FIELD])
    submission = insert_submission(
        storage, file_store, form, {"Name": "Alice", "email": "ALICE@example.com"}, ip_address="10.0.0.1"
    )
    stored = storage.submissions.get_submission(submission["id"])
    assert stored["data"] == {"f1": "Alice", "f2": "alice@example.com"}
    assert stored["status"] == "pending"
    assert stored["ip_address"] == "10.0.0.1"


def test_insert_collects_all_errors(storage, file_store, make_form):
    form = make_form([TEXT_FIELD, EMAIL_FIELD])
    with pytest.raises(FieldValidationError) as info:
        insert_submission(storage, file_store, form, {"f2": "broken"})
    assert {error["field_id"] for error in info.value.to_list()} == {"f1", "f2"}
    assert list_submissions(storage, form["id"])["total"] == 0


def test_insert_with_file_records_attachment(storage, file_store, make_form):
    form = make_form([TEXT_FIELD, FILE_FIELD])
    submission = insert_submission(
        storage, file_store, form, {"f1": "Alice"}, uploads={"resume": _pdf(body=b"hello")}
    )
    files = get_submission_files(storage, submission["id"])
    assert len(files) == 1
    assert files[0]["field_ref"] == "f4"
    assert files[0]["original_name"] == "cv.pdf"
    assert files[0]["size"] == 5
    assert len(files[0]["content_hash"]) == 64
    assert file_store.read(files[0]["stored_path"]) == b"hello"
    assert storage.submissions.get_submission(submission["id"])["data"]["f4"] == "cv.pdf"


def test_upload_over_global_limit_is_rejected(storage, file_store, make_form):
    form = make_form([TEXT_FIELD, FILE_FIELD])
    with pytest.raises(FieldValidationError):
        insert_submission(
            storage, file_store, form, {"f1": "A"}, uploads={"f4": _pdf(body=b"x" * 50)}, max_upload_bytes=10
        )


def test_failed_attachment_rolls_back(storage, file_store, make_form, monkeypatch):
    """A storage failure after the row was written leaves no row and no bytes behind."""
    form = make_form([TEXT_FIELD, FILE_FIELD])

    def fail(file_meta):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(storage.files, "create_file", fail)
    with pytest.raises(StorageError):
        insert_submission(storage, file_store, form, {"f1": "Alice"}, uploads={"f4": _pdf()})
    assert list_submissions(storage, form["id"])["total"] == 0
    assert list(file_store.iter_files()) == []


# ---------------------------------------------------------------------------
# Read
# ---------------------------------------------------------------------------


def test_get_submission_joins_form_and_files(storage, file_store, make_form):
    form = make_form([TEXT_FIELD, CHOICE_FIELD, FILE_FIELD])
    submission = insert_submission(
        storage, file_store, form, {"f1": "Alice", "f3": ["A", "B"]}, uploads={"f4": _pdf()}
    )
    detail = get_submission(storage, submission["id"], base_url=BASE_URL, secret=SECRET)
    assert detail["form_title"] == form["title"]
    assert detail["files"][0]["download_url"].startswith(f"{BASE_URL}/files/")
    display = {row["field_id"]: row["display_value"] for row in detail["display"]}
    assert display == {"f1": "Alice", "f3": "A, B", "f4": "cv.pdf"}


def test_get_submission_reads_legacy_label_keys(storage, file_store, make_form):
    """Rows written before ids existed are still displayed through the fallback."""
    form = make_form([TEXT_FIELD, EMAIL_FIELD])
    storage.submissions.create_submission(
        {
            "id": "legacy-1",
            "form_id": form["id"],
            "data": {"Name": "Old Alice", "email": "old@example.com"},
            "submitted_at": at(3),
            "status": "pending",
        }
    )
    display = {row["field_id"]: row["display_value"] for row in get_submission(storage, "legacy-1")["display"]}
    assert display == {"f1": "Old Alice", "f2": "old@example.com"}


def test_get_missing_submission(storage):
    with pytest.raises(NotFoundError):
        get_submission(storage, "missing")


# ---------------------------------------------------------------------------
# Listing and filters
# ---------------------------------------------------------------------------


def _seed(storage, file_store, form):
    for day, name in [(1, "Alice"), (2, "Bob"), (3, "Carol"), (4, "alice cooper"), (5, "Dave")]:
        insert_submission(storage, file_store, form, {"f1": name}, now=at(day))


def test_list_orders_newest_first_and_paginates(storage, file_store, make_form):
    form = make_form([TEXT_FIELD])
    _seed(storage, file_store, form)
    page1 = list_submissions(storage, form["id"], page=1, page_size=2)
    page3 = list_submissions(storage, form["id"], page=3, page_size=2)
    assert [row["data"]["f1"] for row in page1["submissions"]] == ["Dave", "alice cooper"]
    assert [row["data"]["f1"] for row in page3["submissions"]] == ["Alice"]
    assert (page1["total"], page1["total_pages"]) == (5, 3)


def test_search_is_case_insensitive(storage, file_store, make_form):
    form = make_form([TEXT_FIELD])
    _seed(storage, file_store, form)
    result = list_submissions(storage, form["id"], {"search": "ALICE"})
    assert sorted(row["data"]["f1"] for row in result["submissions"]) == ["Alice", "alice cooper"]


@pytest.mark.parametrize("search", ["élodie", "ÉLODIE", "Élodie"])
def test_search_folds_non_ascii_case(storage, file_store, make_form, search):
    """Both backends fold non-ASCII letters the same way."""
    form = make_form([TEXT_FIELD])
    insert_submission(storage, file_store, form, {"f1": "Élodie"}, now=at(1))
    insert_submission(storage, file_store, form, {"f1": "Elodie"}, now=at(2))
    result = list_submissions(storage, form["id"], {"search": search})
    assert [row["data"]["f1"] for row in result["submissions"]] == ["Élodie"]
    assert len(list_all_submissions(storage, form["id"], {"search": search})) == 1


def test_date_only_bounds_cover_whole_days(storage, file_store, make_form):
    form = make_form([TEXT_FIELD])
    _seed(storage, file_store, form)
    result = list_submissions(storage, form["id"], {"date_from": "2024-01-02", "date_to": "2024-01-04"})
    assert [row["data"]["f1"] for row in result["submissions"]] == ["alice cooper", "Carol", "Bob"]


@pytest.mark.parametrize(
    "filters",
    [{}, {"search": "a"}, {"date_from": "2024-01-03"}, {"search": "o", "date_to": "2024-01-03"}],
)
def test_list_all_matches_unbounded_page(storage, file_store, make_form, filters):
    form = make_form([TEXT_FIELD])
    _seed(storage, file_store, form)
    unbounded = list_submissions(storage, form["id"], filters, page_size=None)
    everything = list_all_submissions(storage, form["id"], filters)
    assert len(everything) == unbounded["total"]
    assert [row["id"] for row in everything] == [row["id"] for row in unbounded["submissions"]]


def test_normalize_filters_ignores_blank_values():
    assert normalize_filters({"search": "  ", "date_from": "", "date_to": None}) == {}


def test_list_for_missing_form(storage):
    with pytest.raises(NotFoundError):
        list_submissions(storage, "missing")


# ---------------------------------------------------------------------------
# Delete / status / stats
# ---------------------------------------------------------------------------


def test_delete_removes_files_and_rows(storage, file_store, make_form):
    form = make_form(
        [TEXT_FIELD, FILE_FIELD, {"id": "f6", "label": "Cover letter", "type": "file"}]
    )
    submission = insert_submission(
        storage,
        file_store,
        form,
        {"f1": "Alice"},
        uploads={"f4": _pdf("a.pdf"), "f6": _pdf("b.pdf")},
    )
    files = get_submission_files(storage, submission["id"])
    assert len(files) == 2

    result = delete_submission(storage, file_store, submission["id"])

    assert result["files_deleted"] == 2
    for item in files:
        assert not file_store.exists(item["stored_path"])
        assert storage.files.get_file(item["id"]) is None
    assert storage.files.list_files(submission["id"]) == []
    with pytest.raises(NotFoundError):
        get_submission_files(storage, submission["id"])


def test_bulk_delete_continues_past_failures(storage, file_store, make_form):
    form = make_form([TEXT_FIELD])
    first = insert_submission(storage, file_store, form, {"f1": "a"})
    second = insert_submission(storage, file_store, form, {"f1": "b"})
    result = bulk_delete(storage, file_store, [first["id"], "missing", second["id"]])
    assert (result["success"], result["failed"]) == (2, 1)
    assert result["errors"][0]["id"] == "missing"


def test_bulk_delete_isolates_datastore_errors(storage, file_store, make_form, monkeypatch):
    """A raw repository failure on one submission does not abort the batch."""
    form = make_form([TEXT_FIELD, FILE_FIELD])
    ids = [
        insert_submission(storage, file_store, form, {"f1": name}, uploads={"f4": _pdf()})["id"]
        for name in ("a", "b", "c")
    ]
    stuck_file = get_submission_files(storage, ids[1])[0]["id"]
    original_delete = storage.files.delete_file

    def flaky(file_id):
        if file_id == stuck_file:
            raise RuntimeError("database is locked")
        return original_delete(file_id)

    monkeypatch.setattr(storage.files, "delete_file", flaky)
    result = bulk_delete(storage, file_store, ids)

    assert (result["success"], result["failed"]) == (2, 1)
    assert result["errors"] == [{"id": ids[1], "error": "could not delete submission"}]
    assert storage.submissions.get_submission(ids[0]) is None
    assert storage.submissions.get_submission(ids[2]) is None
    assert storage.submissions.get_submission(ids[1]) is not None


def test_delete_submission_wraps_datastore_errors(storage, file_store, make_form, monkeypatch):
    form = make_form([TEXT_FIELD])
    submission = insert_submission(storage, file_store, form, {"f1": "a"})

    def broken(submission_id):
        raise OSError("lock timeout")

    monkeypatch.setattr(storage.submissions, "delete_submission", broken)
    with pytest.raises(StorageError):
        delete_submission(storage, file_store, submission["id"])


def test_set_status(storage, file_store, make_form):
    form = make_form([TEXT_FIELD])
    submission = insert_submission(storage, file_store, form, {"f1": "a"})
    assert set_status(storage, submission["id"], "processed")["status"] == "processed"
    with pytest.raises(FieldValidationError):
        set_status(storage, submission["id"], "done")
    with pytest.raises(NotFoundError):
        set_status(storage, "missing", "archived")


def test_submission_stats_by_status(storage, file_store, make_form):
    form = make_form([TEXT_FIELD])
    first = insert_submission(storage, file_store, form, {"f1": "a"}, now=at(1))
    insert_submission(storage, file_store, form, {"f1": "b"}, now=at(2))
    set_status(storage, first["id"], "archived")
    stats = submission_stats(storage, form["id"], now=at(2, hour=20))
    assert stats["by_status"] == {"pending": 1, "processed": 0, "archived": 1}
    assert stats["today_submissions"] == 1
