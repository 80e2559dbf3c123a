"""Per-bot runtime state: the training job slot and the active model pointer.

Both are only changed under the context's lock, one transition at a time,
so two concurrent callers can never both observe a free slot and claim it.
"""
from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Callable

from kb.models import StoredModel

if TYPE_CHECKING:
    from kb.training import TrainingJob


class TenantContext:

    def __init__(self, bot_id: str):
        self.bot_id = bot_id
        self._lock = threading.Lock()
        self._job: "TrainingJob | None" = None
        self._last_job: "TrainingJob | None" = None
        self._active_model: StoredModel | None = None

    # ── Job slot ──────────────────────────────────────────────────────────────

    def claim_job(self, job: "TrainingJob") -> bool:
        """Compare-and-set the slot from empty to *job*. Returns False if occupied."""
        with self._lock:
            if self._job is not None:
                return False
            self._job = job
            return True

    def release_job(self, job: "TrainingJob") -> bool:
        """Clear the slot if *job* still owns it and remember it as the last job."""
        with self._lock:
            if self._job is not job:
                return False
            self._job = None
            self._last_job = job
            return True

    @property
    def current_job(self) -> "TrainingJob | None":
        with self._lock:
            return self._job

    @property
    def last_job(self) -> "TrainingJob | None":
        with self._lock:
            return self._last_job

    # ── Active model pointer ─────────────────────────────────────────────────

    @property
    def active_model(self) -> StoredModel | None:
        with self._lock:
            return self._active_model

    def set_active_model(self, model: StoredModel) -> bool:
        """Swap the pointer to *model* unless a newer version is already active."""
        with self._lock:
            current = self._active_model
            if current is not None and current.version > model.version:
                return False
            self._active_model = model
            return True

    def ensure_active_model(self, loader: Callable[[str], StoredModel]) -> StoredModel:
        """Return the active model, loading the latest stored one if unset.

        The loader runs outside the lock; its result is only installed when no
        commit set a newer model meanwhile. Loader errors propagate.
        """
        current = self.active_model
        if current is not None:
            return current
        loaded = loader(self.bot_id)
        with self._lock:
            if self._active_model is None or self._active_model.version < loaded.version:
                self._active_model = loaded
            return self._active_model


class TenantRegistry:
    """Owns one TenantContext per bot id, created on first access."""

    def __init__(self) -> None:
        self._contexts: dict[str, TenantContext] = {}
        self._lock = threading.Lock()

    def get(self, bot_id: str) -> TenantContext:
        with self._lock:
            context = self._contexts.get(bot_id)
            if context is None:
                context = self._contexts[bot_id] = TenantContext(bot_id)
            return context

    def bot_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._contexts)

    def contexts(self) -> list[TenantContext]:
        with self._lock:
            return list(self._contexts.values())
