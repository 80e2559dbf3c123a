"""Shared runtime state: service start time and per-bot training run history."""
from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
import tempfile
from typing import Any

import config

log = logging.getLogger(__name__)

_LOCK = threading.Lock()

# Service start time (set in lifespan).
_SERVICE_STARTED_AT: datetime | None = None

# Finished training jobs per bot (last N runs each).
_TRAINING_RUNS: dict[str, list[dict[str, Any]]] = {}
_MAX_TRAINING_RUNS = config.MAX_TRAINING_RUNS
_TRAINING_RUNS_LOADED = False
_TRAINING_RUNS_PATH: Path = config.RUNS_PATH


def _coerce_training_runs(payload: Any) -> dict[str, list[dict[str, Any]]]:
    raw = payload
    if isinstance(payload, dict) and isinstance(payload.get("bots"), dict):
        raw = payload.get("bots")
    if not isinstance(raw, dict):
        return {}
    results: dict[str, list[dict[str, Any]]] = {}
    for bot_id, runs in raw.items():
        if not isinstance(runs, list):
            continue
        cleaned = [dict(run) for run in runs if isinstance(run, dict)]
        results[str(bot_id)] = cleaned[-_MAX_TRAINING_RUNS:]
    return results


def _load_training_runs_locked() -> None:
    global _TRAINING_RUNS_LOADED, _TRAINING_RUNS
    if _TRAINING_RUNS_LOADED:
        return
    _TRAINING_RUNS_LOADED = True
    try:
        if not _TRAINING_RUNS_PATH.exists():
            return
        payload = json.loads(_TRAINING_RUNS_PATH.read_text(encoding="utf-8"))
        _TRAINING_RUNS = _coerce_training_runs(payload)
    except Exception:
        log.debug("Failed to load training runs", exc_info=True)


def _write_json_atomic(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as fh:
            fh.write(json.dumps(payload, indent=2, ensure_ascii=True) + "\n")
        os.replace(tmp_name, str(path))
    except Exception:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def set_service_started_at(dt: datetime) -> None:
    global _SERVICE_STARTED_AT
    _SERVICE_STARTED_AT = dt


def get_service_started_at() -> datetime | None:
    return _SERVICE_STARTED_AT


def record_training_run(bot_id: str, run: dict[str, Any]) -> None:
    """Append a finished training job snapshot to the bot's history and persist it."""
    with _LOCK:
        _load_training_runs_locked()
        runs = _TRAINING_RUNS.setdefault(bot_id, [])
        runs.append(dict(run))
        if len(runs) > _MAX_TRAINING_RUNS:
            del runs[: len(runs) - _MAX_TRAINING_RUNS]
        snapshot = {"bots": {k: list(v) for k, v in _TRAINING_RUNS.items()}}
    try:
        _write_json_atomic(_TRAINING_RUNS_PATH, snapshot)
    except Exception:
        log.debug("Failed to persist training runs", exc_info=True)


def get_training_runs(bot_id: str, limit: int = 20) -> list[dict[str, Any]]:
    """Return the bot's recorded training runs, newest first."""
    with _LOCK:
        _load_training_runs_locked()
        runs = list(_TRAINING_RUNS.get(bot_id, []))
    runs.reverse()
    return runs[: max(0, int(limit))]


def get_last_training_run(bot_id: str) -> dict[str, Any] | None:
    with _LOCK:
        _load_training_runs_locked()
        runs = _TRAINING_RUNS.get(bot_id) or []
        return dict(runs[-1]) if runs else None
