from __future__ import annotations

import hashlib
import hmac
import logging
import os
import secrets
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Any, Iterator
from urllib.parse import quote

from polyform.errors import StorageError
from polyform.file_formats import file_extension

logger = logging.getLogger(__name__)


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def file_token(file_id: str, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), file_id.encode("utf-8"), hashlib.sha256)
    return digest.hexdigest()[:32]


def verify_file_token(file_id: str, token: str, secret: str) -> bool:
    return hmac.compare_digest(file_token(file_id, secret), str(token or ""))


def file_download_url(base_url: str, file_id: str, secret: str) -> str:
    return f"{base_url.rstrip('/')}/files/{quote(file_id)}?token={file_token(file_id, secret)}"


class FileStore:
    """Write-once byte storage rooted at one directory.

    Paths handed out are relative to the root and treated as opaque ids by
    callers; :meth:`resolve` refuses anything that escapes the root.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def ensure_dir(self, subdir: str = "") -> Path:
        target = self.root / subdir if subdir else self.root
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.exception("Failed to create directory under %s", self.root)
            raise StorageError("storage directory unavailable") from exc
        return target

    def resolve(self, path: str) -> Path:
        root = self.root.resolve()
        resolved = (root / path).resolve()
        if resolved != root and root not in resolved.parents:
            raise StorageError("invalid storage path")
        return resolved

    def relative(self, absolute: Path) -> str:
        return absolute.resolve().relative_to(self.root.resolve()).as_posix()

    @contextmanager
    def atomic_writer(
        self, filename: str, subdir: str = "", mode: str = "wb", **open_kwargs: Any
    ) -> Iterator[IO[Any]]:
        directory = self.ensure_dir(subdir)
        final = directory / filename
        partial = directory / f".{filename}.{secrets.token_hex(4)}.part"
        try:
            handle = open(partial, mode, **open_kwargs)
        except OSError as exc:
            logger.exception("Failed to open %s for writing", final)
            raise StorageError("could not open file for writing") from exc
        try:
            with handle:
                yield handle
            os.replace(partial, final)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise

    def store(self, data: bytes, suggested_name: str, subdir: str = "") -> str:
        extension = file_extension(suggested_name)
        filename = secrets.token_hex(16) + (f".{extension}" if extension else "")
        try:
            with self.atomic_writer(filename, subdir) as handle:
                handle.write(data)
        except OSError as exc:
            logger.exception("Failed to store %s", suggested_name)
            raise StorageError("could not store file") from exc
        return f"{subdir}/{filename}" if subdir else filename

    def read(self, path: str) -> bytes:
        try:
            return self.resolve(path).read_bytes()
        except OSError as exc:
            raise StorageError("could not read file") from exc

    def exists(self, path: str) -> bool:
        if not path:
            return False
        try:
            return self.resolve(path).is_file()
        except StorageError:
            return False

    def delete(self, path: str) -> bool:
        if not path:
            return False
        target = self.resolve(path)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.exception("Failed to delete %s", path)
            raise StorageError("could not delete file") from exc
        return True

    def move(self, path: str, subdir: str) -> str:
        source = self.resolve(path)
        directory = self.ensure_dir(subdir)
        destination = directory / source.name
        try:
            os.replace(source, destination)
        except OSError as exc:
            logger.exception("Failed to move %s", path)
            raise StorageError("could not move file") from exc
        return self.relative(destination)

    def iter_files(self, subdir: str = "") -> Iterator[tuple[str, float]]:
        base = self.root / subdir if subdir else self.root
        if not base.is_dir():
            return
        for entry in sorted(base.rglob("*")):
            if entry.is_file():
                yield self.relative(entry), entry.stat().st_mtime
