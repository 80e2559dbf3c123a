"""Append-only, versioned model storage.

Layout::

    <models_dir>/<bot dir>/v00000001.json
    <models_dir>/<bot dir>/v00000002.json

Each version is written to a temp file in the same directory and renamed
into place with ``os.replace``, so a crash mid-write never leaves a partial
version visible to :meth:`ModelStore.load_latest`. Versions are never
rewritten or deleted here.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import tempfile
import threading
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Callable

import config
from kb.errors import NoModelAvailable, StorageError
from kb.models import StoredModel
from kb.retrieval import RetrievalModel

log = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"^v(\d{8})\.json$")
_UNSAFE_RE = re.compile(r"[^a-zA-Z0-9_-]")


def bot_dir_name(bot_id: str) -> str:
    slug = _UNSAFE_RE.sub("_", bot_id)
    if slug == bot_id and slug:
        return slug
    digest = hashlib.sha256(bot_id.encode("utf-8")).hexdigest()[:10]
    return f"{slug[:40]}-{digest}"


class ModelStore:

    def __init__(
        self,
        models_dir: str | Path | None = None,
        artifact_loader: Callable[[dict[str, Any]], Any] = RetrievalModel.from_dict,
    ):
        self.models_dir = Path(models_dir).expanduser() if models_dir is not None else config.MODELS_DIR
        self._artifact_loader = artifact_loader
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _bot_lock(self, bot_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(bot_id)
            if lock is None:
                lock = self._locks[bot_id] = threading.Lock()
            return lock

    def bot_dir(self, bot_id: str) -> Path:
        return self.models_dir / bot_dir_name(bot_id)

    def _versions(self, bot_id: str) -> list[int]:
        directory = self.bot_dir(bot_id)
        if not directory.exists():
            return []
        versions: list[int] = []
        for path in directory.iterdir():
            match = _VERSION_RE.match(path.name)
            if match:
                versions.append(int(match.group(1)))
        return sorted(versions)

    def _version_path(self, bot_id: str, version: int) -> Path:
        return self.bot_dir(bot_id) / f"v{version:08d}.json"

    def store_model(self, bot_id: str, artifact: Any, entry_count: int = 0) -> StoredModel:
        """Persist *artifact* as the bot's next version and return it.

        The version only becomes visible once the rename succeeded; on any
        failure the temp file is removed and StorageError is raised.
        """
        with self._bot_lock(bot_id):
            try:
                existing = self._versions(bot_id)
                version = (existing[-1] if existing else 0) + 1
                created_at = datetime.now(UTC)
                payload = {
                    "bot_id": bot_id,
                    "version": version,
                    "created_at": created_at.isoformat(),
                    "entry_count": int(entry_count),
                    "artifact": artifact.to_dict(),
                }
                self._write_json_atomic(self._version_path(bot_id, version), payload)
            except OSError as exc:
                log.error("Failed to store model for bot %s", bot_id, exc_info=True)
                raise StorageError(f"Could not store model: {exc}") from exc

        log.info("Stored model version %d for bot %s (%d entries)", version, bot_id, entry_count)
        return StoredModel(
            bot_id=bot_id,
            version=version,
            created_at=created_at,
            entry_count=int(entry_count),
            artifact=artifact,
        )

    def load_latest(self, bot_id: str) -> StoredModel:
        """Return the highest stored version; NoModelAvailable if the bot never trained."""
        try:
            versions = self._versions(bot_id)
        except OSError as exc:
            raise StorageError(f"Could not list models: {exc}") from exc
        if not versions:
            raise NoModelAvailable(f"No trained model for bot '{bot_id}'")
        return self.load_version(bot_id, versions[-1])

    def load_version(self, bot_id: str, version: int) -> StoredModel:
        path = self._version_path(bot_id, version)
        if not path.exists():
            raise NoModelAvailable(f"Model version {version} not found for bot '{bot_id}'")
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            artifact = self._artifact_loader(payload["artifact"])
            created_at = datetime.fromisoformat(payload["created_at"])
        except (OSError, ValueError, KeyError, TypeError) as exc:
            log.error("Failed to load model %s", path, exc_info=True)
            raise StorageError(f"Could not load model version {version}: {exc}") from exc
        return StoredModel(
            bot_id=bot_id,
            version=int(payload.get("version", version)),
            created_at=created_at,
            entry_count=int(payload.get("entry_count", 0) or 0),
            artifact=artifact,
        )

    def latest_version(self, bot_id: str) -> int | None:
        versions = self._versions(bot_id)
        return versions[-1] if versions else None

    def list_versions(self, bot_id: str) -> list[dict[str, Any]]:
        """Describe stored versions, newest first, without loading artifacts."""
        results: list[dict[str, Any]] = []
        for version in reversed(self._versions(bot_id)):
            path = self._version_path(bot_id, version)
            try:
                payload = json.loads(path.read_text(encoding="utf-8"))
                results.append({
                    "version": version,
                    "created_at": payload.get("created_at"),
                    "entry_count": int(payload.get("entry_count", 0) or 0),
                })
            except Exception:
                results.append({"version": version, "error": "parse_failed"})
        return results

    @staticmethod
    def _write_json_atomic(path: Path, payload: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".model_tmp_", suffix=".tmp")
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as fh:
                fh.write(json.dumps(payload, ensure_ascii=True) + "\n")
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, str(path))
        except Exception:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise
