from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from starlette.concurrency import run_in_threadpool

from polyform.auth import get_auth_provider
from polyform.config import Settings
from polyform.errors import (
    ConflictError,
    FieldValidationError,
    NotFoundError,
    SchemaError,
    StorageError,
)
from polyform.exports import sweep_expired
from polyform.files import FileStore
from polyform.responses import APIResponse
from polyform.routes.api import router as api_router
from polyform.routes.exports import router as exports_router
from polyform.routes.public import router as public_router
from polyform.routes.submissions import router as submissions_router
from polyform.storage import init_storage
from polyform.uploads import sweep_stale_uploads

logger = logging.getLogger(__name__)


def run_sweeps(app: FastAPI) -> dict[str, int]:
    state = app.state
    return {
        "exports": sweep_expired(state.storage, state.export_store),
        "uploads": sweep_stale_uploads(
            state.storage, state.file_store, state.settings.preupload_ttl_seconds
        ),
    }


async def _sweeper(app: FastAPI, interval: int) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_threadpool(run_sweeps, app)
        except StorageError:
            logger.exception("Background sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    interval = app.state.settings.sweep_interval_seconds
    task = asyncio.create_task(_sweeper(app, interval)) if interval > 0 else None
    if task is not None:
        logger.info("Background sweeper started (every %ds)", interval)
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        app.state.storage.dispose()


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(FieldValidationError)
    async def field_validation_handler(request: Request, exc: FieldValidationError) -> APIResponse:
        return APIResponse({"detail": "Validation failed", "errors": exc.to_list()}, status_code=422)

    @app.exception_handler(SchemaError)
    async def schema_error_handler(request: Request, exc: SchemaError) -> APIResponse:
        return APIResponse({"detail": "Invalid form definition", "errors": exc.messages}, status_code=422)

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> APIResponse:
        return APIResponse({"detail": f"{exc.kind} not found"}, status_code=404)

    @app.exception_handler(ConflictError)
    async def conflict_handler(request: Request, exc: ConflictError) -> APIResponse:
        logger.warning("Conflict on %s: %s", request.url.path, exc)
        return APIResponse({"detail": "Conflict"}, status_code=409)

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError) -> APIResponse:
        # 内部のパスや詳細は返さない
        logger.error("Storage failure on %s: %s", request.url.path, exc)
        return APIResponse({"detail": "Internal storage error"}, status_code=500)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings()
    storage = init_storage(settings)
    auth = get_auth_provider(settings)

    app = FastAPI(
        title="polyform",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "public", "description": "公開フォーム API"},
            {"name": "api/forms", "description": "REST API: フォーム"},
            {"name": "api/submissions", "description": "REST API: 送信"},
            {"name": "api/exports", "description": "REST API: CSV エクスポート"},
            {"name": "system", "description": "システム"},
        ],
    )

    app.state.storage = storage
    app.state.settings = settings
    app.state.auth_provider = auth
    app.state.file_store = FileStore(settings.upload_dir)
    app.state.export_store = FileStore(settings.export_dir)

    register_exception_handlers(app)

    app.include_router(public_router)
    app.include_router(api_router)
    app.include_router(submissions_router)
    app.include_router(exports_router)

    return app
