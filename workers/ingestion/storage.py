"""
Object storage for raw uploads.

``file_ref`` values are opaque keys relative to the bucket directory.
"""

import re
import uuid
import logging
from pathlib import Path

from workers.ingestion.errors import TransientIOError

logger = logging.getLogger(__name__)


class ObjectStorage:
    """Interface: durable storage for uploaded files."""

    def save(self, data: bytes, suggested_name: str) -> str:
        raise NotImplementedError

    def load(self, file_ref: str) -> bytes:
        raise NotImplementedError

    def delete(self, file_ref: str) -> None:
        raise NotImplementedError


class LocalObjectStorage(ObjectStorage):
    """Stores files under ``<base_path>/<bucket>/``."""

    def __init__(self, base_path: str, bucket: str):
        self.root = Path(base_path) / bucket

    def save(self, data: bytes, suggested_name: str) -> str:
        file_ref = f"{uuid.uuid4().hex}_{self._safe_name(suggested_name)}"
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            (self.root / file_ref).write_bytes(data)
        except OSError as e:
            raise TransientIOError(f"Failed to store upload {suggested_name}", cause=e) from e

        logger.debug(f"Stored {len(data)} bytes as {file_ref}")
        return file_ref

    def load(self, file_ref: str) -> bytes:
        path = self.root / Path(file_ref).name
        try:
            return path.read_bytes()
        except OSError as e:
            raise TransientIOError(f"Failed to read stored upload {file_ref}", cause=e) from e

    def delete(self, file_ref: str) -> None:
        path = self.root / Path(file_ref).name
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise TransientIOError(f"Failed to delete stored upload {file_ref}", cause=e) from e
        logger.debug(f"Deleted stored upload {file_ref}")

    @staticmethod
    def _safe_name(name: str) -> str:
        name = Path(name or "upload").name
        cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", name).strip("._")
        return cleaned[:100] or "upload"


def build_storage(settings) -> ObjectStorage:
    if settings.storage.type != "local":
        raise ValueError(f"Unsupported storage type: {settings.storage.type}")
    return LocalObjectStorage(settings.storage.base_path, settings.storage.bucket)
