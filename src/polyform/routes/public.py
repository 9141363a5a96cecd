from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import FileResponse
from starlette.datastructures import FormData, UploadFile

from polyform.errors import FieldError, FieldValidationError, NotFoundError, SchemaError
from polyform.field_types import is_file_like
from polyform.files import verify_file_token
from polyform.forms import get_form_by_share_token
from polyform.responses import APIResponse, json_body
from polyform.resolver import find_field
from polyform.schema import form_fields, normalize_settings, public_config
from polyform.submissions import insert_submission
from polyform.uploads import stage_upload

router = APIRouter()

TEMP_SUFFIX = "_temp"


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",", 1)[0].strip() or None
    return request.client.host if request.client else None


def _pending_ref(fields: list[dict[str, Any]], name: str) -> str | None:
    """`<field>_temp` はファイル系フィールドの一時アップロードのトークン。"""
    if not name.endswith(TEMP_SUFFIX) or find_field(fields, name) is not None:
        return None
    field = find_field(fields, name[: -len(TEMP_SUFFIX)])
    return str(field["id"]) if field is not None and is_file_like(field) else None


async def collect_form_data(
    form_data: FormData,
    fields: list[dict[str, Any]],
) -> tuple[dict[str, Any], dict[str, dict[str, Any]], dict[str, str]]:
    """multipart を値・直接アップロード・一時アップロードのトークンに振り分ける。"""
    values: dict[str, Any] = {}
    uploads: dict[str, dict[str, Any]] = {}
    tokens: dict[str, str] = {}
    for key in dict.fromkeys(form_data.keys()):
        items = form_data.getlist(key)
        name = key[:-2] if key.endswith("[]") else key
        files = [item for item in items if isinstance(item, UploadFile)]
        if files:
            upload = next((item for item in files if item.filename), None)
            if upload is not None:
                uploads[name] = {
                    "filename": upload.filename,
                    "content": await upload.read(),
                    "content_type": upload.content_type,
                }
            continue
        texts = [str(item) for item in items]
        pending_ref = _pending_ref(fields, name)
        if pending_ref is not None:
            if texts and texts[0].strip():
                tokens[pending_ref] = texts[0].strip()
            continue
        values[name] = texts if key.endswith("[]") or len(texts) > 1 else texts[0]
    return values, uploads, tokens


@router.get("/healthz", tags=["system"])
async def healthz() -> APIResponse:
    return APIResponse({"status": "ok"})


@router.get("/api/public/forms/{share_token}", tags=["public"])
async def api_public_form(share_token: str, request: Request) -> APIResponse:
    form = get_form_by_share_token(request.app.state.storage, share_token)
    return APIResponse(public_config(form))


@router.post("/api/public/forms/{share_token}/submissions", tags=["public"])
async def api_public_submit(share_token: str, request: Request) -> APIResponse:
    state = request.app.state
    form = get_form_by_share_token(state.storage, share_token)
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        payload = await json_body(request)
        if "values" in payload:
            values = payload["values"] or {}
        else:
            values = {key: value for key, value in payload.items() if key != "uploads"}
        tokens = payload.get("uploads") or {}
        if not isinstance(values, dict) or not isinstance(tokens, dict):
            raise SchemaError(["values and uploads must be JSON objects"])
        uploads: dict[str, dict[str, Any]] = {}
    else:
        values, uploads, tokens = await collect_form_data(await request.form(), form_fields(form))
    submission = insert_submission(
        state.storage,
        state.file_store,
        form,
        values,
        uploads=uploads,
        pending_tokens=tokens,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
        max_upload_bytes=state.settings.upload_max_bytes,
        preupload_ttl_seconds=state.settings.preupload_ttl_seconds,
    )
    settings = normalize_settings(form["config"].get("settings"))
    return APIResponse(
        {
            "submission_id": submission["id"],
            "message": settings["success_message"],
        },
        status_code=201,
    )


@router.post("/api/public/forms/{share_token}/uploads", tags=["public"])
async def api_public_upload(share_token: str, request: Request) -> APIResponse:
    state = request.app.state
    form = get_form_by_share_token(state.storage, share_token)
    form_data = await request.form()
    field_ref = str(form_data.get("field_id") or "").strip()
    upload = form_data.get("file")
    if not field_ref:
        raise FieldValidationError([FieldError("field_id", "field_id is required.")])
    if not isinstance(upload, UploadFile) or not upload.filename:
        raise FieldValidationError([FieldError(field_ref, "No file uploaded.")])
    staged = stage_upload(
        state.storage,
        state.file_store,
        form,
        field_ref,
        upload.filename,
        await upload.read(),
        upload.content_type,
        max_bytes=state.settings.upload_max_bytes,
    )
    return APIResponse(
        {
            "token": staged["token"],
            "field_id": staged["field_ref"],
            "original_name": staged["original_name"],
            "size": staged["size"],
            "content_type": staged["content_type"],
        },
        status_code=201,
    )


@router.get("/files/{file_id}", tags=["public"])
async def download_file(file_id: str, request: Request) -> FileResponse:
    state = request.app.state
    token = request.query_params.get("token", "")
    if not verify_file_token(file_id, token, state.settings.secret_key):
        raise NotFoundError("file", file_id)
    file_meta = state.storage.files.get_file(file_id)
    if not file_meta or not state.file_store.exists(file_meta["stored_path"]):
        raise NotFoundError("file", file_id)
    path = state.file_store.resolve(file_meta["stored_path"])
    return FileResponse(
        path,
        filename=file_meta.get("original_name") or file_id,
        media_type=file_meta.get("content_type") or None,
    )
