"""QnA KB HTTP service: app + lifespan only."""
from __future__ import annotations

import json
import logging
import os
import sys
import time
from contextlib import asynccontextmanager
from datetime import datetime, UTC
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
from api.deps import ErrorResponse, error_payload
from kb.errors import KnowledgeBaseError
from runtime_kb import get_kb_instance, require_kb_instance, set_kb_instance
from runtime_state import get_service_started_at, set_service_started_at

_EXTRA_FIELDS = ("bot_id", "job_id", "from", "to", "path", "method", "status", "duration_ms")


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
        }
        for field in _EXTRA_FIELDS:
            if field in record.__dict__:
                entry[field] = record.__dict__[field]
        if record.exc_info and record.exc_info[1] is not None:
            import traceback
            entry["traceback"] = "".join(traceback.format_exception(*record.exc_info))
        return json.dumps(entry, default=str)


_handler = logging.StreamHandler()
_handler.setFormatter(_JsonFormatter())
logging.root.addHandler(_handler)
logging.root.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))

log = logging.getLogger("qnakb")

SERVICE_VERSION = "1.0.0"

app = FastAPI(
    title="QnA KB",
    description="Per-bot question/answer knowledge base with versioned retrieval models",
    version=SERVICE_VERSION,
)


@app.middleware("http")
async def timing_middleware(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    response.headers["X-Process-Time-Ms"] = f"{duration_ms:.2f}"
    log.info("request", extra={
        "path": request.url.path,
        "method": request.method,
        "status": response.status_code,
        "duration_ms": round(duration_ms, 2),
    })
    return response


# ── PID file management ────────────────────────────────────────────────────────
# Training is single-node: two processes on one data dir would each believe
# they own every bot's job slot.
_PID_FILE = config.KB_DATA_DIR / "qnakb.pid"


def _check_pid_conflict() -> None:
    if not _PID_FILE.exists():
        return
    try:
        saved_pid = int(_PID_FILE.read_text().strip())
    except (ValueError, OSError):
        log.warning("PID file '%s' is corrupt, removing it", _PID_FILE)
        _PID_FILE.unlink(missing_ok=True)
        return
    try:
        os.kill(saved_pid, 0)
        pid_alive = True
    except (OSError, ProcessLookupError):
        pid_alive = False
    if pid_alive and saved_pid != os.getpid():
        log.critical(
            "Data dir conflict detected: QnA KB PID %d is already running. Exiting.",
            saved_pid,
        )
        sys.exit(1)
    log.warning("Stale PID file (pid=%d), removing and continuing", saved_pid)
    _PID_FILE.unlink(missing_ok=True)


def _write_pid_file() -> None:
    _PID_FILE.parent.mkdir(parents=True, exist_ok=True)
    _PID_FILE.write_text(str(os.getpid()))
    log.info("PID file written: %s (pid=%d)", _PID_FILE, os.getpid())


def _remove_pid_file() -> None:
    try:
        _PID_FILE.unlink(missing_ok=True)
        log.info("PID file removed: %s", _PID_FILE)
    except OSError as exc:
        log.warning("Failed to remove PID file %s: %s", _PID_FILE, exc)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    set_service_started_at(datetime.now(UTC))

    if not config.TEST_MODE:
        _check_pid_conflict()
        _write_pid_file()

    owns_kb = get_kb_instance() is None
    kb = require_kb_instance()
    if config.DISABLE_TRAINING:
        log.warning("Training is disabled on this node")
    log.info("QnA KB ready on %s:%s", config.HOST, config.PORT)

    try:
        yield
    finally:
        log.info("Shutting down QnA KB")
        await kb.shutdown()
        if owns_kb:
            set_kb_instance(None)
        if not config.TEST_MODE:
            _remove_pid_file()


app.router.lifespan_context = lifespan


@app.exception_handler(KnowledgeBaseError)
async def kb_exception_handler(request: Request, exc: KnowledgeBaseError):
    if exc.status_code >= 500:
        log.error("KB error on %s: %s", request.url.path, exc.message, exc_info=exc)
    return JSONResponse(status_code=exc.status_code, content=error_payload(exc))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(_request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=str(exc.detail),
            code=f"HTTP_{exc.status_code}",
            timestamp=datetime.now(UTC).isoformat(),
        ).model_dump(),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(_request: Request, exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        errors.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error="Invalid request",
            code="VALIDATION_ERROR",
            errors=errors,
            timestamp=datetime.now(UTC).isoformat(),
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def global_exception_handler(_request: Request, exc: Exception):
    log.error("Unhandled exception", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error="Internal server error",
            code="INTERNAL_ERROR",
            detail=str(exc) if config.TEST_MODE else None,
            timestamp=datetime.now(UTC).isoformat(),
        ).model_dump(),
    )


@app.get("/health")
async def health() -> dict[str, Any]:
    kb = get_kb_instance()
    started_at = get_service_started_at()
    bots = kb.tenants.bot_ids() if kb else []
    training = [b for b in bots if kb.tenants.get(b).current_job is not None] if kb else []
    return {
        "status": "healthy" if kb is not None else "starting",
        "version": SERVICE_VERSION,
        "port": config.PORT,
        "test_mode": config.TEST_MODE,
        "training_enabled": not (kb.jobs.training_disabled if kb else config.DISABLE_TRAINING),
        "started_at": started_at.isoformat() if started_at else None,
        "bots_loaded": len(bots),
        "bots_training": training,
    }


# ── Include route modules ──────────────────────────────────────────────────────
from api import entries as _entries_module
from api import training as _training_module
from api import predict as _predict_module

app.include_router(_entries_module.router)
app.include_router(_training_module.router)
app.include_router(_predict_module.router)


def run() -> None:
    import uvicorn
    uvicorn.run(app, host=config.HOST, port=config.PORT, log_level=config.LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
