"""Prediction path: rank a bot's entries against a query with its active model."""
from __future__ import annotations

import logging
from typing import Any

import config
from kb.errors import ValidationError
from kb.model_store import ModelStore
from kb.models import Prediction
from kb.tenants import TenantRegistry

log = logging.getLogger(__name__)


class PredictionService:
    """Reads the active model pointer only; never waits on a training job.

    When the pointer is unset (fresh process, or a crash between storing a
    model and swapping the pointer) the latest stored version is loaded once
    and installed. NoModelAvailable propagates when the bot never trained.
    """

    def __init__(self, model_store: ModelStore, tenants: TenantRegistry):
        self._model_store = model_store
        self._tenants = tenants

    def predict(
        self,
        bot_id: str,
        query: str,
        lang: str | None = None,
        top_k: int | None = None,
    ) -> dict[str, Any]:
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("Query must not be empty")
        lang = (lang or config.DEFAULT_LANG).strip().lower()

        stored = self._tenants.get(bot_id).ensure_active_model(self._model_store.load_latest)
        results: list[Prediction] = stored.artifact.predict(query, lang, top_k or config.PREDICT_TOP_K)
        log.debug("Predicted %d result(s) for bot %s with model v%d", len(results), bot_id, stored.version)
        return {
            "query": query,
            "lang": lang,
            "model_version": stored.version,
            "results": results,
        }
