from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol


class FormRepository(Protocol):
    def list_forms(self) -> list[dict[str, Any]]: ...

    def get_form(self, form_id: str) -> dict[str, Any] | None: ...

    def get_form_by_share_token(self, share_token: str) -> dict[str, Any] | None: ...

    def share_token_exists(self, share_token: str) -> bool: ...

    def create_form(self, form: dict[str, Any]) -> None: ...

    def update_form(self, form_id: str, updates: dict[str, Any]) -> dict[str, Any]: ...

    def delete_form(self, form_id: str) -> bool: ...


class SubmissionRepository(Protocol):
    def create_submission(self, submission: dict[str, Any]) -> None: ...

    def get_submission(self, submission_id: str) -> dict[str, Any] | None: ...

    def query_submissions(
        self,
        form_id: str,
        filters: dict[str, Any],
        offset: int = 0,
        limit: int | None = None,
    ) -> tuple[list[dict[str, Any]], int]: ...

    def list_submission_ids(self, form_id: str) -> list[str]: ...

    def count_submissions(self, form_ids: list[str] | None = None) -> dict[str, int]: ...

    def update_submission(self, submission_id: str, updates: dict[str, Any]) -> dict[str, Any]: ...

    def delete_submission(self, submission_id: str) -> bool: ...


class FileRepository(Protocol):
    def create_file(self, file_meta: dict[str, Any]) -> None: ...

    def get_file(self, file_id: str) -> dict[str, Any] | None: ...

    def list_files(self, submission_id: str) -> list[dict[str, Any]]: ...

    def list_files_for_submissions(
        self, submission_ids: list[str]
    ) -> dict[str, list[dict[str, Any]]]: ...

    def delete_file(self, file_id: str) -> bool: ...


class UploadRepository(Protocol):
    def create_upload(self, upload: dict[str, Any]) -> None: ...

    def get_upload(self, token: str) -> dict[str, Any] | None: ...

    def delete_upload(self, token: str) -> bool: ...

    def list_uploads(
        self, created_before: datetime | None = None, form_id: str | None = None
    ) -> list[dict[str, Any]]: ...


class ExportRepository(Protocol):
    def create_export(self, export: dict[str, Any]) -> None: ...

    def get_export(self, export_id: str) -> dict[str, Any] | None: ...

    def increment_download(self, export_id: str, at: datetime) -> dict[str, Any]: ...

    def delete_export(self, export_id: str) -> bool: ...

    def list_exports(self, form_id: str | None = None) -> list[dict[str, Any]]: ...

    def list_expired(self, now: datetime) -> list[dict[str, Any]]: ...


class Storage(Protocol):
    forms: FormRepository
    submissions: SubmissionRepository
    files: FileRepository
    uploads: UploadRepository
    exports: ExportRepository
