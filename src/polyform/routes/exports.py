from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import FileResponse
from starlette.concurrency import run_in_threadpool

from polyform.auth import admin_guard
from polyform.export import build_export
from polyform.exports import (
    export_stats,
    get_export,
    list_active,
    open_export,
    record_download,
    sweep_expired,
)
from polyform.forms import get_form
from polyform.responses import APIResponse, json_body
from polyform.uploads import sweep_stale_uploads

router = APIRouter(dependencies=[Depends(admin_guard)])


@router.post("/api/forms/{form_id}/exports", tags=["api/exports"])
async def api_build_export(form_id: str, request: Request) -> APIResponse:
    state = request.app.state
    filters = await json_body(request)
    # CSV 生成はブロッキング I/O なのでスレッドプールで実行する
    export = await run_in_threadpool(
        build_export,
        state.storage,
        state.export_store,
        form_id,
        filters,
        base_url=state.settings.base_url,
        secret=state.settings.secret_key,
        ttl_hours=state.settings.export_ttl_hours,
    )
    return APIResponse(export, status_code=201)


@router.get("/api/forms/{form_id}/exports", tags=["api/exports"])
async def api_list_exports(form_id: str, request: Request) -> APIResponse:
    storage = request.app.state.storage
    get_form(storage, form_id)
    return APIResponse(list_active(storage, form_id))


@router.get("/api/exports/stats", tags=["api/exports"])
async def api_export_stats(request: Request) -> APIResponse:
    form_id = request.query_params.get("form_id") or None
    return APIResponse(export_stats(request.app.state.storage, form_id))


@router.post("/api/exports/sweep", tags=["api/exports"])
async def api_sweep_exports(request: Request) -> APIResponse:
    state = request.app.state
    removed = await run_in_threadpool(sweep_expired, state.storage, state.export_store)
    return APIResponse({"removed": removed})


@router.post("/api/uploads/sweep", tags=["api/exports"])
async def api_sweep_uploads(request: Request) -> APIResponse:
    state = request.app.state
    removed = await run_in_threadpool(
        sweep_stale_uploads,
        state.storage,
        state.file_store,
        state.settings.preupload_ttl_seconds,
    )
    return APIResponse({"removed": removed})


@router.get("/api/exports/{export_id}", tags=["api/exports"])
async def api_get_export(export_id: str, request: Request) -> APIResponse:
    return APIResponse(get_export(request.app.state.storage, export_id))


@router.get("/api/exports/{export_id}/download", tags=["api/exports"])
async def api_download_export(export_id: str, request: Request) -> FileResponse:
    state = request.app.state
    export, path = open_export(state.storage, state.export_store, export_id)
    record_download(state.storage, export_id)
    return FileResponse(path, filename=export["filename"], media_type="text/csv")
