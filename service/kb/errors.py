"""Error taxonomy for the knowledge base.

Every error carries a stable ``code`` and the HTTP ``status_code`` the route
layer answers with. Local operations (entry CRUD, prediction) raise these
synchronously; training failures never do, they end up on the job instead.
"""
from __future__ import annotations

from typing import Any


class KnowledgeBaseError(Exception):
    code = "KB_ERROR"
    status_code = 500

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(KnowledgeBaseError):
    """Malformed entry or query input, rejected before any mutation."""

    code = "VALIDATION_ERROR"
    status_code = 422


class NotFoundError(KnowledgeBaseError):
    code = "NOT_FOUND"
    status_code = 404


class AlreadyTrainingError(KnowledgeBaseError):
    code = "ALREADY_TRAINING"
    status_code = 409


class NotTrainingError(KnowledgeBaseError):
    code = "NOT_TRAINING"
    status_code = 409


class TrainingDisabledError(KnowledgeBaseError):
    code = "TRAINING_DISABLED"
    status_code = 403


class StorageError(KnowledgeBaseError):
    code = "STORAGE_ERROR"
    status_code = 500


class NoModelAvailable(KnowledgeBaseError):
    """The bot has never completed a training run."""

    code = "NO_MODEL_AVAILABLE"
    status_code = 404


__all__ = [
    "AlreadyTrainingError",
    "KnowledgeBaseError",
    "NoModelAvailable",
    "NotFoundError",
    "NotTrainingError",
    "StorageError",
    "TrainingDisabledError",
    "ValidationError",
]
