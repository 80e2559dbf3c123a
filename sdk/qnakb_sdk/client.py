"""Thin Python SDK for the QnA KB HTTP API."""
from __future__ import annotations

from typing import Any
from urllib.parse import quote

import httpx


class KBAPIError(Exception):
    """Non-2xx answer from the service, carrying its error ``code``."""

    def __init__(self, status_code: int, code: str, message: str, errors: list[str] | None = None):
        super().__init__(f"{status_code} {code}: {message}")
        self.status_code = status_code
        self.code = code
        self.message = message
        self.errors = errors or []


class KBClient:
    def __init__(
        self,
        base_url: str = "http://localhost:7430",
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ):
        self._owns_client = client is None
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "KBClient":
        return self

    def __exit__(self, *_exc: Any) -> None:
        self.close()

    @staticmethod
    def _bot_path(bot_id: str, suffix: str) -> str:
        return f"/bots/{quote(bot_id, safe='')}/kb{suffix}"

    @staticmethod
    def _json(resp: httpx.Response) -> dict[str, Any]:
        if resp.is_success:
            return resp.json()
        try:
            body = resp.json()
        except ValueError:
            body = {}
        raise KBAPIError(
            resp.status_code,
            str(body.get("code") or f"HTTP_{resp.status_code}"),
            str(body.get("error") or resp.text),
            body.get("errors") or [],
        )

    def health(self) -> dict[str, Any]:
        return self._json(self._client.get("/health"))

    def list_entries(self, bot_id: str) -> list[dict[str, Any]]:
        return self._json(self._client.get(self._bot_path(bot_id, "/entries")))["entries"]

    def upsert_entry(
        self,
        bot_id: str,
        question: str,
        answer: str,
        *,
        entry_id: str | None = None,
        type: str = "",
        source: str = "",
    ) -> str:
        payload: dict[str, Any] = {"question": question, "answer": answer, "type": type, "source": source}
        if entry_id is not None:
            payload["id"] = entry_id
        return self._json(self._client.post(self._bot_path(bot_id, "/entries"), json=payload))["id"]

    def delete_entry(self, bot_id: str, entry_id: str) -> dict[str, Any]:
        path = self._bot_path(bot_id, f"/entries/{quote(entry_id, safe='')}")
        return self._json(self._client.delete(path))

    def train(self, bot_id: str) -> dict[str, Any]:
        return self._json(self._client.post(self._bot_path(bot_id, "/train")))

    def cancel_training(self, bot_id: str) -> dict[str, Any]:
        return self._json(self._client.post(self._bot_path(bot_id, "/train/cancel")))

    def training_status(self, bot_id: str) -> dict[str, Any]:
        return self._json(self._client.get(self._bot_path(bot_id, "/train/status")))

    def training_runs(self, bot_id: str, limit: int = 20) -> list[dict[str, Any]]:
        resp = self._client.get(self._bot_path(bot_id, "/train/runs"), params={"limit": limit})
        return self._json(resp)["runs"]

    def models(self, bot_id: str) -> list[dict[str, Any]]:
        return self._json(self._client.get(self._bot_path(bot_id, "/models")))["models"]

    def predict(self, bot_id: str, q: str, lang: str | None = None, top_k: int | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {"q": q}
        if lang is not None:
            payload["lang"] = lang
        if top_k is not None:
            payload["top_k"] = top_k
        return self._json(self._client.post(self._bot_path(bot_id, "/predict"), json=payload))
