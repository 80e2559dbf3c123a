"""
Knowledge base data models.
Pydantic models for entries and predictions; stored models are frozen dataclasses.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError


def new_entry_id() -> str:
    return uuid.uuid4().hex


class Entry(BaseModel):
    """
    One question/answer item of a bot's knowledge base.
    A blank or missing id means "create"; a known id means "update in place".
    """
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    id: str = Field(default_factory=new_entry_id)
    type: str = ""
    source: str = ""
    question: str
    answer: str

    @field_validator("id", mode="before")
    @classmethod
    def _assign_missing_id(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return new_entry_id()
        return value

    @field_validator("type", "source", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("question", "answer")
    @classmethod
    def _require_text(cls, value: str) -> str:
        if not value:
            raise ValueError("must not be empty")
        return value


class EntryValidation(BaseModel):
    """Tagged validation result: ``entry`` is set iff ``ok``."""
    ok: bool
    entry: Optional[Entry] = None
    errors: List[str] = []


def validate_entry(payload: Any) -> EntryValidation:
    """Validate a loosely-typed entry payload without touching any store."""
    if isinstance(payload, Entry):
        return EntryValidation(ok=True, entry=payload)
    if not isinstance(payload, dict):
        return EntryValidation(ok=False, errors=["entry must be an object"])
    try:
        entry = Entry.model_validate(payload)
    except PydanticValidationError as exc:
        errors = []
        for err in exc.errors():
            field = ".".join(str(part) for part in err.get("loc", ())) or "entry"
            errors.append(f"{field}: {err.get('msg', 'invalid')}")
        return EntryValidation(ok=False, errors=errors)
    return EntryValidation(ok=True, entry=entry)


class Prediction(BaseModel):
    """One ranked answer candidate."""
    entry_id: str
    question: str
    content: str
    confidence: float = Field(ge=0.0, le=1.0)
    rank: int


@dataclass(frozen=True)
class StoredModel:
    """An immutable, versioned model artifact for one bot."""
    bot_id: str
    version: int
    created_at: datetime
    entry_count: int
    artifact: Any

    def describe(self) -> dict[str, Any]:
        return {
            "bot_id": self.bot_id,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "entry_count": self.entry_count,
        }
