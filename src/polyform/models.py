from __future__ import annotations

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


class FormModel(Base):
    __tablename__ = "forms"

    id = Column(String, primary_key=True)
    share_token = Column(String(12), unique=True, index=True)
    title = Column(String)
    description = Column(Text)
    config = Column(Text)
    is_active = Column(Integer, default=1)
    created_at = Column(DateTime, index=True)
    updated_at = Column(DateTime)


class SubmissionModel(Base):
    __tablename__ = "submissions"

    id = Column(String, primary_key=True)
    form_id = Column(String, index=True)
    data_json = Column(Text)
    status = Column(String, default="pending")
    ip_address = Column(String, nullable=True)
    user_agent = Column(Text, nullable=True)
    submitted_at = Column(DateTime, index=True)
    updated_at = Column(DateTime, nullable=True)


class FileModel(Base):
    __tablename__ = "files"

    id = Column(String, primary_key=True)
    submission_id = Column(String, index=True)
    form_id = Column(String, index=True)
    field_ref = Column(String)
    original_name = Column(String)
    stored_name = Column(String)
    stored_path = Column(Text)
    content_type = Column(String)
    size = Column(Integer)
    content_hash = Column(String(64))
    created_at = Column(DateTime)


class PendingUploadModel(Base):
    __tablename__ = "pending_uploads"

    token = Column(String, primary_key=True)
    form_id = Column(String, index=True)
    field_ref = Column(String)
    original_name = Column(String)
    stored_path = Column(Text)
    content_type = Column(String)
    size = Column(Integer)
    content_hash = Column(String(64))
    created_at = Column(DateTime, index=True)


class ExportModel(Base):
    __tablename__ = "exports"

    id = Column(String, primary_key=True)
    form_id = Column(String, index=True)
    filename = Column(String)
    stored_path = Column(Text)
    record_count = Column(Integer, default=0)
    created_at = Column(DateTime)
    expires_at = Column(DateTime, index=True)
    last_download_at = Column(DateTime, nullable=True)
    download_count = Column(Integer, default=0)
