"""Persisted progress documents.

Documents are pydantic models serialised as JSON and addressed by a short key
(``purge_progress``, ``last_scheduled_task``, ...). A missing document is not an
error: ``load`` hands back the model's zero value so callers can treat absence
as "nothing to resume". An unparseable document is surfaced as
``CheckpointCorruptError`` and never silently replaced.

Every read, write and delete goes through one process-wide lock so a save is
never observed half-written by a concurrent load.
"""

from __future__ import annotations

import os
import tempfile
import threading
from pathlib import Path
from typing import Optional, TypeVar

from pydantic import BaseModel, ValidationError

from janitor.core.logging import get_logger

logger = get_logger("janitor.checkpoint")

T = TypeVar("T", bound=BaseModel)

_store_lock = threading.Lock()


class CheckpointError(RuntimeError):
    pass


class CheckpointCorruptError(CheckpointError):
    pass


class DocumentStore:
    """Minimal key -> text document backend."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def put(self, key: str, text: str) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class JsonFileStore(DocumentStore):
    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def ensure_directory(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        if not key or "/" in key or "\\" in key or key.startswith("."):
            raise ValueError(f"Invalid document key: {key!r}")
        return self.directory / f"{key}.json"

    def get(self, key: str) -> Optional[str]:
        try:
            data = self.path_for(key).read_bytes()
        except FileNotFoundError:
            return None
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CheckpointCorruptError(f"document {key!r} is not valid UTF-8: {exc}") from exc

    def put(self, key: str, text: str) -> None:
        path = self.path_for(key)
        self.ensure_directory()
        fd, tmp_name = tempfile.mkstemp(prefix=f".{key}.", suffix=".tmp", dir=self.directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(text)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def delete(self, key: str) -> None:
        self.path_for(key).unlink(missing_ok=True)


class MemoryDocumentStore(DocumentStore):
    def __init__(self) -> None:
        self.documents: dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self.documents.get(key)

    def put(self, key: str, text: str) -> None:
        self.documents[key] = text

    def delete(self, key: str) -> None:
        self.documents.pop(key, None)


class CheckpointStore:
    def __init__(self, backend: DocumentStore) -> None:
        self.backend = backend

    def load(self, key: str, model: type[T]) -> tuple[T, bool]:
        with _store_lock:
            try:
                raw = self.backend.get(key)
            except OSError as exc:
                raise CheckpointError(f"could not read document {key!r}: {exc}") from exc
        if raw is None:
            return model(), False
        try:
            return model.model_validate_json(raw), True
        except ValidationError as exc:
            raise CheckpointCorruptError(f"json parse error on document {key!r}: {exc}") from exc

    def save(self, key: str, document: BaseModel) -> None:
        text = document.model_dump_json(indent=2)
        with _store_lock:
            try:
                self.backend.put(key, text)
            except OSError as exc:
                raise CheckpointError(f"could not write document {key!r}: {exc}") from exc
        logger.debug("checkpoint.saved", extra={"event": "checkpoint.saved", "key": key})

    def delete(self, key: str) -> None:
        with _store_lock:
            try:
                self.backend.delete(key)
            except OSError as exc:
                raise CheckpointError(f"could not delete document {key!r}: {exc}") from exc
        logger.info("checkpoint.deleted", extra={"event": "checkpoint.deleted", "key": key})

    def exists(self, key: str) -> bool:
        with _store_lock:
            try:
                return self.backend.get(key) is not None
            except OSError as exc:
                raise CheckpointError(f"could not read document {key!r}: {exc}") from exc
