from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from polyform.auth import admin_guard
from polyform.errors import FieldError, FieldValidationError, SchemaError
from polyform.responses import APIResponse, json_body, query_filters
from polyform.submissions import (
    DEFAULT_PAGE_SIZE,
    bulk_delete,
    delete_submission,
    get_submission,
    get_submission_files,
    list_submissions,
    set_status,
)

router = APIRouter(dependencies=[Depends(admin_guard)])


def _page_size(raw: str | None) -> int | None:
    """page_size=all（または 0）は全件取得。"""
    if raw is None or raw == "":
        return DEFAULT_PAGE_SIZE
    if raw.lower() == "all":
        return None
    try:
        value = int(raw)
    except ValueError:
        raise FieldValidationError([FieldError("page_size", "page_size must be an integer.")]) from None
    if value < 0:
        raise FieldValidationError([FieldError("page_size", "page_size must not be negative.")])
    return value or None


def _page(raw: str | None) -> int:
    try:
        return max(1, int(raw or 1))
    except ValueError:
        raise FieldValidationError([FieldError("page", "page must be an integer.")]) from None


@router.get("/api/forms/{form_id}/submissions", tags=["api/submissions"])
async def api_list_submissions(form_id: str, request: Request) -> APIResponse:
    params = request.query_params
    result = list_submissions(
        request.app.state.storage,
        form_id,
        query_filters(request),
        page=_page(params.get("page")),
        page_size=_page_size(params.get("page_size")),
    )
    return APIResponse(result)


@router.post("/api/submissions/bulk-delete", tags=["api/submissions"])
async def api_bulk_delete(request: Request) -> APIResponse:
    payload = await json_body(request)
    ids = payload.get("ids")
    if not isinstance(ids, list) or not all(isinstance(item, str) for item in ids):
        raise SchemaError(["ids must be a list of submission ids"])
    state = request.app.state
    return APIResponse(bulk_delete(state.storage, state.file_store, ids))


@router.get("/api/submissions/{submission_id}", tags=["api/submissions"])
async def api_get_submission(submission_id: str, request: Request) -> APIResponse:
    state = request.app.state
    submission = get_submission(
        state.storage,
        submission_id,
        base_url=state.settings.base_url,
        secret=state.settings.secret_key,
    )
    return APIResponse(submission)


@router.delete("/api/submissions/{submission_id}", tags=["api/submissions"])
async def api_delete_submission(submission_id: str, request: Request) -> APIResponse:
    state = request.app.state
    return APIResponse(delete_submission(state.storage, state.file_store, submission_id))


@router.get("/api/submissions/{submission_id}/files", tags=["api/submissions"])
async def api_submission_files(submission_id: str, request: Request) -> APIResponse:
    state = request.app.state
    files = get_submission_files(
        state.storage,
        submission_id,
        base_url=state.settings.base_url,
        secret=state.settings.secret_key,
    )
    return APIResponse(files)


@router.put("/api/submissions/{submission_id}/status", tags=["api/submissions"])
async def api_set_submission_status(submission_id: str, request: Request) -> APIResponse:
    payload = await json_body(request)
    status = str(payload.get("status") or "")
    return APIResponse(set_status(request.app.state.storage, submission_id, status))
