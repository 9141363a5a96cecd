from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, event, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from polyform.errors import ConflictError
from polyform.models import (
    Base,
    ExportModel,
    FileModel,
    FormModel,
    PendingUploadModel,
    SubmissionModel,
)
from polyform.utils import dumps_json, ensure_aware, loads_json, to_naive_utc


def _db_dt(value: datetime | None) -> datetime | None:
    return to_naive_utc(value) if value is not None else None


def _aware(value: datetime | None) -> datetime | None:
    return ensure_aware(value) if value is not None else None


def _fold(value: Any) -> Any:
    return value.lower() if isinstance(value, str) else value


def _register_functions(dbapi_connection: Any, connection_record: Any) -> None:
    # SQLite の lower() は ASCII のみ対象なので JSON バックエンドと同じ str.lower を使う
    dbapi_connection.create_function("py_lower", 1, _fold, deterministic=True)


class SQLiteFormRepo:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._Session = session_factory

    def list_forms(self) -> list[dict[str, Any]]:
        with self._Session() as session:
            rows = (
                session.query(FormModel)
                .order_by(FormModel.created_at.desc(), FormModel.id.desc())
                .all()
            )
            return [self._to_dict(row) for row in rows]

    def get_form(self, form_id: str) -> dict[str, Any] | None:
        with self._Session() as session:
            row = session.get(FormModel, form_id)
            return self._to_dict(row) if row else None

    def get_form_by_share_token(self, share_token: str) -> dict[str, Any] | None:
        with self._Session() as session:
            row = (
                session.query(FormModel)
                .filter(FormModel.share_token == share_token)
                .first()
            )
            return self._to_dict(row) if row else None

    def share_token_exists(self, share_token: str) -> bool:
        with self._Session() as session:
            return (
                session.query(FormModel.id)
                .filter(FormModel.share_token == share_token)
                .first()
                is not None
            )

    def create_form(self, form: dict[str, Any]) -> None:
        with self._Session() as session:
            row = FormModel(
                id=form["id"],
                share_token=form["share_token"],
                title=form["title"],
                description=form["description"],
                config=dumps_json(form["config"]),
                is_active=1 if form.get("is_active", True) else 0,
                created_at=_db_dt(form["created_at"]),
                updated_at=_db_dt(form["updated_at"]),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError(f"form id or share token already exists: {form['id']}") from exc

    def update_form(self, form_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        with self._Session() as session:
            row = session.get(FormModel, form_id)
            if not row:
                raise KeyError(form_id)
            for key, value in updates.items():
                if key == "config":
                    row.config = dumps_json(value)
                elif key == "is_active":
                    row.is_active = 1 if value else 0
                elif key in {"created_at", "updated_at"}:
                    setattr(row, key, _db_dt(value))
                else:
                    setattr(row, key, value)
            session.commit()
            session.refresh(row)
            return self._to_dict(row)

    def delete_form(self, form_id: str) -> bool:
        with self._Session() as session:
            row = session.get(FormModel, form_id)
            if not row:
                return False
            session.delete(row)
            session.commit()
            return True

    @staticmethod
    def _to_dict(row: FormModel) -> dict[str, Any]:
        return {
            "id": row.id,
            "share_token": row.share_token,
            "title": row.title or "",
            "description": row.description or "",
            "config": loads_json(row.config) or {"fields": [], "settings": {}},
            "is_active": bool(row.is_active),
            "created_at": _aware(row.created_at),
            "updated_at": _aware(row.updated_at),
        }


class SQLiteSubmissionRepo:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._Session = session_factory

    @staticmethod
    def _filtered(session: Session, form_id: str, filters: dict[str, Any]) -> Any:
        query = session.query(SubmissionModel).filter(SubmissionModel.form_id == form_id)
        search = filters.get("search")
        if search:
            query = query.filter(
                func.py_lower(SubmissionModel.data_json).contains(search.lower(), autoescape=True)
            )
        if filters.get("submitted_after") is not None:
            query = query.filter(SubmissionModel.submitted_at >= _db_dt(filters["submitted_after"]))
        if filters.get("submitted_before") is not None:
            query = query.filter(SubmissionModel.submitted_at <= _db_dt(filters["submitted_before"]))
        return query

    def create_submission(self, submission: dict[str, Any]) -> None:
        with self._Session() as session:
            row = SubmissionModel(
                id=submission["id"],
                form_id=submission["form_id"],
                data_json=dumps_json(submission["data"]),
                status=submission.get("status", "pending"),
                ip_address=submission.get("ip_address"),
                user_agent=submission.get("user_agent"),
                submitted_at=_db_dt(submission["submitted_at"]),
                updated_at=_db_dt(submission.get("updated_at")),
            )
            session.add(row)
            session.commit()

    def get_submission(self, submission_id: str) -> dict[str, Any] | None:
        with self._Session() as session:
            row = session.get(SubmissionModel, submission_id)
            return self._to_dict(row) if row else None

    def query_submissions(
        self,
        form_id: str,
        filters: dict[str, Any],
        offset: int = 0,
        limit: int | None = None,
    ) -> tuple[list[dict[str, Any]], int]:
        with self._Session() as session:
            query = self._filtered(session, form_id, filters)
            total = query.count()
            ordered = query.order_by(
                SubmissionModel.submitted_at.desc(), SubmissionModel.id.desc()
            )
            if offset:
                ordered = ordered.offset(offset)
            if limit is not None:
                ordered = ordered.limit(limit)
            return [self._to_dict(row) for row in ordered.all()], total

    def list_submission_ids(self, form_id: str) -> list[str]:
        with self._Session() as session:
            rows = (
                session.query(SubmissionModel.id)
                .filter(SubmissionModel.form_id == form_id)
                .order_by(SubmissionModel.submitted_at.desc(), SubmissionModel.id.desc())
                .all()
            )
            return [row[0] for row in rows]

    def count_submissions(self, form_ids: list[str] | None = None) -> dict[str, int]:
        with self._Session() as session:
            query = session.query(SubmissionModel.form_id, func.count(SubmissionModel.id))
            if form_ids is not None:
                query = query.filter(SubmissionModel.form_id.in_(form_ids))
            return {form_id: count for form_id, count in query.group_by(SubmissionModel.form_id).all()}

    def update_submission(self, submission_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        with self._Session() as session:
            row = session.get(SubmissionModel, submission_id)
            if not row:
                raise KeyError(submission_id)
            for key, value in updates.items():
                if key == "data":
                    row.data_json = dumps_json(value)
                elif key in {"submitted_at", "updated_at"}:
                    setattr(row, key, _db_dt(value))
                else:
                    setattr(row, key, value)
            session.commit()
            session.refresh(row)
            return self._to_dict(row)

    def delete_submission(self, submission_id: str) -> bool:
        with self._Session() as session:
            row = session.get(SubmissionModel, submission_id)
            if not row:
                return False
            session.delete(row)
            session.commit()
            return True

    @staticmethod
    def _to_dict(row: SubmissionModel) -> dict[str, Any]:
        return {
            "id": row.id,
            "form_id": row.form_id,
            "data": loads_json(row.data_json) or {},
            "status": row.status or "pending",
            "ip_address": row.ip_address,
            "user_agent": row.user_agent,
            "submitted_at": _aware(row.submitted_at),
            "updated_at": _aware(row.updated_at),
        }


class SQLiteFileRepo:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._Session = session_factory

    def create_file(self, file_meta: dict[str, Any]) -> None:
        with self._Session() as session:
            row = FileModel(
                id=file_meta["id"],
                submission_id=file_meta["submission_id"],
                form_id=file_meta["form_id"],
                field_ref=file_meta["field_ref"],
                original_name=file_meta["original_name"],
                stored_name=file_meta["stored_name"],
                stored_path=file_meta["stored_path"],
                content_type=file_meta["content_type"],
                size=file_meta["size"],
                content_hash=file_meta["content_hash"],
                created_at=_db_dt(file_meta["created_at"]),
            )
            session.add(row)
            session.commit()

    def get_file(self, file_id: str) -> dict[str, Any] | None:
        with self._Session() as session:
            row = session.get(FileModel, file_id)
            return self._to_dict(row) if row else None

    def list_files(self, submission_id: str) -> list[dict[str, Any]]:
        with self._Session() as session:
            rows = (
                session.query(FileModel)
                .filter(FileModel.submission_id == submission_id)
                .order_by(FileModel.field_ref, FileModel.created_at, FileModel.id)
                .all()
            )
            return [self._to_dict(row) for row in rows]

    def list_files_for_submissions(
        self, submission_ids: list[str]
    ) -> dict[str, list[dict[str, Any]]]:
        result: dict[str, list[dict[str, Any]]] = {sid: [] for sid in submission_ids}
        if not submission_ids:
            return result
        with self._Session() as session:
            rows = (
                session.query(FileModel)
                .filter(FileModel.submission_id.in_(submission_ids))
                .order_by(FileModel.field_ref, FileModel.created_at, FileModel.id)
                .all()
            )
            for row in rows:
                result.setdefault(row.submission_id, []).append(self._to_dict(row))
        return result

    def delete_file(self, file_id: str) -> bool:
        with self._Session() as session:
            row = session.get(FileModel, file_id)
            if not row:
                return False
            session.delete(row)
            session.commit()
            return True

    @staticmethod
    def _to_dict(row: FileModel) -> dict[str, Any]:
        return {
            "id": row.id,
            "submission_id": row.submission_id,
            "form_id": row.form_id,
            "field_ref": row.field_ref or "",
            "original_name": row.original_name or "",
            "stored_name": row.stored_name or "",
            "stored_path": row.stored_path or "",
            "content_type": row.content_type or "",
            "size": row.size or 0,
            "content_hash": row.content_hash or "",
            "created_at": _aware(row.created_at),
        }


class SQLiteUploadRepo:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._Session = session_factory

    def create_upload(self, upload: dict[str, Any]) -> None:
        with self._Session() as session:
            row = PendingUploadModel(
                token=upload["token"],
                form_id=upload["form_id"],
                field_ref=upload["field_ref"],
                original_name=upload["original_name"],
                stored_path=upload["stored_path"],
                content_type=upload["content_type"],
                size=upload["size"],
                content_hash=upload["content_hash"],
                created_at=_db_dt(upload["created_at"]),
            )
            session.add(row)
            session.commit()

    def get_upload(self, token: str) -> dict[str, Any] | None:
        with self._Session() as session:
            row = session.get(PendingUploadModel, token)
            return self._to_dict(row) if row else None

    def delete_upload(self, token: str) -> bool:
        with self._Session() as session:
            row = session.get(PendingUploadModel, token)
            if not row:
                return False
            session.delete(row)
            session.commit()
            return True

    def list_uploads(
        self, created_before: datetime | None = None, form_id: str | None = None
    ) -> list[dict[str, Any]]:
        with self._Session() as session:
            query = session.query(PendingUploadModel)
            if created_before is not None:
                query = query.filter(PendingUploadModel.created_at < _db_dt(created_before))
            if form_id is not None:
                query = query.filter(PendingUploadModel.form_id == form_id)
            rows = query.order_by(PendingUploadModel.created_at).all()
            return [self._to_dict(row) for row in rows]

    @staticmethod
    def _to_dict(row: PendingUploadModel) -> dict[str, Any]:
        return {
            "token": row.token,
            "form_id": row.form_id,
            "field_ref": row.field_ref or "",
            "original_name": row.original_name or "",
            "stored_path": row.stored_path or "",
            "content_type": row.content_type or "",
            "size": row.size or 0,
            "content_hash": row.content_hash or "",
            "created_at": _aware(row.created_at),
        }


class SQLiteExportRepo:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._Session = session_factory

    def create_export(self, export: dict[str, Any]) -> None:
        with self._Session() as session:
            row = ExportModel(
                id=export["id"],
                form_id=export["form_id"],
                filename=export["filename"],
                stored_path=export["stored_path"],
                record_count=export.get("record_count", 0),
                created_at=_db_dt(export["created_at"]),
                expires_at=_db_dt(export["expires_at"]),
                last_download_at=_db_dt(export.get("last_download_at")),
                download_count=export.get("download_count", 0),
            )
            session.add(row)
            session.commit()

    def get_export(self, export_id: str) -> dict[str, Any] | None:
        with self._Session() as session:
            row = session.get(ExportModel, export_id)
            return self._to_dict(row) if row else None

    def increment_download(self, export_id: str, at: datetime) -> dict[str, Any]:
        with self._Session() as session:
            updated = (
                session.query(ExportModel)
                .filter(ExportModel.id == export_id)
                .update(
                    {
                        ExportModel.download_count: ExportModel.download_count + 1,
                        ExportModel.last_download_at: _db_dt(at),
                    },
                    synchronize_session=False,
                )
            )
            session.commit()
            if not updated:
                raise KeyError(export_id)
            row = session.get(ExportModel, export_id)
            if not row:
                raise KeyError(export_id)
            return self._to_dict(row)

    def delete_export(self, export_id: str) -> bool:
        with self._Session() as session:
            row = session.get(ExportModel, export_id)
            if not row:
                return False
            session.delete(row)
            session.commit()
            return True

    def list_exports(self, form_id: str | None = None) -> list[dict[str, Any]]:
        with self._Session() as session:
            query = session.query(ExportModel)
            if form_id is not None:
                query = query.filter(ExportModel.form_id == form_id)
            rows = query.order_by(ExportModel.created_at.desc(), ExportModel.id.desc()).all()
            return [self._to_dict(row) for row in rows]

    def list_expired(self, now: datetime) -> list[dict[str, Any]]:
        with self._Session() as session:
            rows = (
                session.query(ExportModel)
                .filter(ExportModel.expires_at <= _db_dt(now))
                .order_by(ExportModel.expires_at)
                .all()
            )
            return [self._to_dict(row) for row in rows]

    @staticmethod
    def _to_dict(row: ExportModel) -> dict[str, Any]:
        return {
            "id": row.id,
            "form_id": row.form_id,
            "filename": row.filename or "",
            "stored_path": row.stored_path or "",
            "record_count": row.record_count or 0,
            "created_at": _aware(row.created_at),
            "expires_at": _aware(row.expires_at),
            "last_download_at": _aware(row.last_download_at),
            "download_count": row.download_count or 0,
        }


class SQLiteStorage:
    def __init__(self, db_path: Path) -> None:
        self._engine = create_engine(
            f"sqlite:///{db_path}",
            future=True,
            connect_args={"check_same_thread": False},
        )
        event.listen(self._engine, "connect", _register_functions)
        self._Session = sessionmaker(self._engine, expire_on_commit=False)
        Base.metadata.create_all(self._engine)
        self.forms = SQLiteFormRepo(self._Session)
        self.submissions = SQLiteSubmissionRepo(self._Session)
        self.files = SQLiteFileRepo(self._Session)
        self.uploads = SQLiteUploadRepo(self._Session)
        self.exports = SQLiteExportRepo(self._Session)

    def dispose(self) -> None:
        self._engine.dispose()
