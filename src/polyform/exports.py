"""Export job lifecycle.

A job is created by the export pipeline, stays downloadable until
``expires_at`` and is then invisible to every read here even if the sweeper
has not removed it yet. Sweeping deletes the CSV first and the row second, so
a row never points at a file that was only half removed.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from polyform.errors import NotFoundError, StorageError
from polyform.files import FileStore
from polyform.protocols import Storage
from polyform.utils import now_utc

logger = logging.getLogger(__name__)


def is_active(export: dict[str, Any], now: datetime) -> bool:
    return export["expires_at"] > now


def get_export(storage: Storage, export_id: str, now: datetime | None = None) -> dict[str, Any]:
    export = storage.exports.get_export(export_id)
    if not export or not is_active(export, now or now_utc()):
        raise NotFoundError("export", export_id)
    return export


def record_download(storage: Storage, export_id: str, now: datetime | None = None) -> dict[str, Any]:
    current = now or now_utc()
    get_export(storage, export_id, current)
    try:
        return storage.exports.increment_download(export_id, current)
    except KeyError:
        raise NotFoundError("export", export_id) from None


def open_export(
    storage: Storage,
    export_store: FileStore,
    export_id: str,
    now: datetime | None = None,
) -> tuple[dict[str, Any], Path]:
    export = get_export(storage, export_id, now)
    if not export_store.exists(export["stored_path"]):
        logger.warning("Export %s has no file on disk", export_id)
        raise NotFoundError("export file", export_id)
    return export, export_store.resolve(export["stored_path"])


def delete_export_artifact(storage: Storage, export_store: FileStore, export: dict[str, Any]) -> None:
    export_store.delete(export["stored_path"])
    try:
        storage.exports.delete_export(export["id"])
    except Exception as exc:
        logger.exception("Failed to delete export record %s", export["id"])
        raise StorageError("could not delete export") from exc


def sweep_expired(storage: Storage, export_store: FileStore, now: datetime | None = None) -> int:
    current = now or now_utc()
    removed = 0
    for export in storage.exports.list_expired(current):
        try:
            delete_export_artifact(storage, export_store, export)
        except StorageError:
            logger.exception("Keeping export %s for the next sweep", export["id"])
            continue
        removed += 1
    if removed:
        logger.info("Swept %d expired exports", removed)
    return removed


def list_active(
    storage: Storage, form_id: str | None = None, now: datetime | None = None
) -> list[dict[str, Any]]:
    current = now or now_utc()
    return [item for item in storage.exports.list_exports(form_id) if is_active(item, current)]


def export_stats(
    storage: Storage, form_id: str | None = None, now: datetime | None = None
) -> dict[str, Any]:
    current = now or now_utc()
    exports = storage.exports.list_exports(form_id)
    return {
        "total_exports": len(exports),
        "active_exports": sum(1 for item in exports if is_active(item, current)),
        "downloaded_exports": sum(1 for item in exports if item["download_count"] > 0),
        "total_downloads": sum(int(item["download_count"] or 0) for item in exports),
        "last_export_created": max((item["created_at"] for item in exports), default=None),
    }
