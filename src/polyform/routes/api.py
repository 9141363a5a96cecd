from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request

from polyform.auth import admin_guard
from polyform.errors import SchemaError
from polyform.forms import (
    add_field,
    create_form,
    delete_form,
    form_stats,
    get_form,
    list_forms,
    remove_field,
    replace_config,
    set_active,
    update_basic_info,
    update_field,
)
from polyform.responses import APIResponse, json_body
from polyform.schema import form_fields

router = APIRouter(dependencies=[Depends(admin_guard)])


@router.get("/api/forms", tags=["api/forms"])
async def api_list_forms(request: Request) -> APIResponse:
    storage = request.app.state.storage
    return APIResponse(list_forms(storage))


@router.post("/api/forms", tags=["api/forms"])
async def api_create_form(request: Request) -> APIResponse:
    storage = request.app.state.storage
    payload = await json_body(request)
    form = create_form(storage, payload.get("title", ""), payload.get("description", ""))
    if payload.get("config") is not None:
        form = replace_config(storage, form["id"], payload["config"])
    return APIResponse(form, status_code=201)


@router.get("/api/forms/{form_id}", tags=["api/forms"])
async def api_get_form(form_id: str, request: Request) -> APIResponse:
    return APIResponse(get_form(request.app.state.storage, form_id))


@router.put("/api/forms/{form_id}", tags=["api/forms"])
async def api_update_form(form_id: str, request: Request) -> APIResponse:
    storage = request.app.state.storage
    payload = await json_body(request)
    form = get_form(storage, form_id)
    updated = update_basic_info(
        storage,
        form_id,
        payload.get("title", form["title"]),
        payload.get("description", form["description"]),
    )
    return APIResponse(updated)


@router.delete("/api/forms/{form_id}", tags=["api/forms"])
async def api_delete_form(form_id: str, request: Request) -> APIResponse:
    state = request.app.state
    summary = delete_form(state.storage, state.file_store, state.export_store, form_id)
    return APIResponse(summary)


@router.put("/api/forms/{form_id}/config", tags=["api/forms"])
async def api_replace_config(form_id: str, request: Request) -> APIResponse:
    payload = await json_body(request)
    return APIResponse(replace_config(request.app.state.storage, form_id, payload))


@router.put("/api/forms/{form_id}/status", tags=["api/forms"])
async def api_set_status(form_id: str, request: Request) -> APIResponse:
    payload = await json_body(request)
    if not isinstance(payload.get("is_active"), bool):
        raise SchemaError(["is_active must be a boolean"])
    return APIResponse(set_active(request.app.state.storage, form_id, payload["is_active"]))


@router.get("/api/forms/{form_id}/fields", tags=["api/forms"])
async def api_list_fields(form_id: str, request: Request) -> APIResponse:
    return APIResponse(form_fields(get_form(request.app.state.storage, form_id)))


@router.post("/api/forms/{form_id}/fields", tags=["api/forms"])
async def api_add_field(form_id: str, request: Request) -> APIResponse:
    payload = await json_body(request)
    return APIResponse(add_field(request.app.state.storage, form_id, payload), status_code=201)


@router.put("/api/forms/{form_id}/fields/{field_id}", tags=["api/forms"])
async def api_update_field(form_id: str, field_id: str, request: Request) -> APIResponse:
    payload = await json_body(request)
    return APIResponse(update_field(request.app.state.storage, form_id, field_id, payload))


@router.delete("/api/forms/{form_id}/fields/{field_id}", tags=["api/forms"])
async def api_remove_field(form_id: str, field_id: str, request: Request) -> APIResponse:
    remove_field(request.app.state.storage, form_id, field_id)
    result: dict[str, Any] = {"deleted": field_id}
    return APIResponse(result)


@router.get("/api/forms/{form_id}/stats", tags=["api/forms"])
async def api_form_stats(form_id: str, request: Request) -> APIResponse:
    return APIResponse(form_stats(request.app.state.storage, form_id))
