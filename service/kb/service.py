"""KnowledgeBase facade: the operations the HTTP layer calls, per bot."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from kb.entry_store import EntryStore
from kb.model_store import ModelStore
from kb.models import Entry
from kb.notifications import NotificationBus, log_notification
from kb.prediction import PredictionService
from kb.retrieval import RetrievalModel
from kb.tenants import TenantRegistry
from kb.training import JobHandle, TrainingJobManager
from runtime_state import get_last_training_run, get_training_runs

log = logging.getLogger(__name__)


class KnowledgeBase:

    def __init__(
        self,
        entry_store: EntryStore,
        model_store: ModelStore,
        *,
        notifications: NotificationBus | None = None,
        **job_options: Any,
    ):
        self.entries = entry_store
        self.models = model_store
        self.tenants = TenantRegistry()
        self.notifications = notifications or NotificationBus()
        self.jobs = TrainingJobManager(
            entry_store,
            model_store,
            self.tenants,
            notifications=self.notifications,
            **job_options,
        )
        self.predictions = PredictionService(model_store, self.tenants)

    @classmethod
    def from_config(
        cls,
        entries_db_path: str | Path | None = None,
        models_dir: str | Path | None = None,
        **job_options: Any,
    ) -> "KnowledgeBase":
        bus = NotificationBus()
        bus.subscribe(log_notification)
        return cls(
            EntryStore(entries_db_path),
            ModelStore(models_dir, artifact_loader=RetrievalModel.from_dict),
            notifications=bus,
            **job_options,
        )

    # ── Entries ──────────────────────────────────────────────────────────────

    def list_entries(self, bot_id: str) -> list[Entry]:
        return self.entries.fetch(bot_id)

    def get_entry(self, bot_id: str, entry_id: str) -> Entry:
        return self.entries.get(bot_id, entry_id)

    def upsert_entry(self, bot_id: str, payload: Any) -> str:
        return self.entries.upsert(bot_id, payload)

    def delete_entry(self, bot_id: str, entry_id: str) -> None:
        self.entries.delete(bot_id, entry_id)

    # ── Training ─────────────────────────────────────────────────────────────

    async def start_training(self, bot_id: str) -> JobHandle:
        return await self.jobs.start(bot_id)

    def cancel_training(self, bot_id: str) -> dict[str, Any]:
        return self.jobs.cancel(bot_id)

    def training_status(self, bot_id: str) -> dict[str, Any]:
        status = self.jobs.status(bot_id)
        if status["last_job"] is None:
            # After a restart only the persisted history knows the last run.
            status["last_job"] = get_last_training_run(bot_id)
        status["latest_stored_version"] = self.models.latest_version(bot_id)
        return status

    def training_runs(self, bot_id: str, limit: int = 20) -> list[dict[str, Any]]:
        return get_training_runs(bot_id, limit)

    def list_models(self, bot_id: str) -> list[dict[str, Any]]:
        return self.models.list_versions(bot_id)

    # ── Prediction ───────────────────────────────────────────────────────────

    def predict(self, bot_id: str, query: str, lang: str | None = None, top_k: int | None = None) -> dict[str, Any]:
        return self.predictions.predict(bot_id, query, lang, top_k)

    async def shutdown(self) -> None:
        await self.jobs.shutdown()
