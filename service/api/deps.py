"""Shared models, runtime guards and helpers for API route modules."""
from __future__ import annotations

from datetime import datetime, UTC
from typing import Annotated, Any

from fastapi import HTTPException, Path
from pydantic import BaseModel, Field

from kb.errors import KnowledgeBaseError
from kb.service import KnowledgeBase
from runtime_kb import get_kb_instance


BOT_ID_PATTERN = r"^[A-Za-z0-9_.-]{1,100}$"

BotId = Annotated[str, Path(pattern=BOT_ID_PATTERN, description="Bot (tenant) identifier")]

# ── Pydantic models ────────────────────────────────────────────────────────────

class ErrorResponse(BaseModel):
    error: str
    code: str
    detail: str | None = None
    errors: list[str] = Field(default_factory=list)
    timestamp: str


class EntriesResponse(BaseModel):
    entries: list[dict[str, Any]]
    count: int


class PredictRequest(BaseModel):
    q: str = Field(..., min_length=1)
    lang: str | None = None
    top_k: int | None = Field(default=None, ge=1, le=100)


# ── Runtime guards ─────────────────────────────────────────────────────────────

def require_kb() -> KnowledgeBase:
    kb = get_kb_instance()
    if kb is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return kb


# ── Utility helpers ────────────────────────────────────────────────────────────

def error_payload(exc: KnowledgeBaseError) -> dict[str, Any]:
    errors: list[str] = []
    if isinstance(exc.details, (list, tuple)):
        errors = [str(item) for item in exc.details]
    elif exc.details is not None:
        errors = [str(exc.details)]
    return ErrorResponse(
        error=exc.message,
        code=exc.code,
        errors=errors,
        timestamp=datetime.now(UTC).isoformat(),
    ).model_dump()


def now_iso() -> str:
    return datetime.now(UTC).isoformat()
