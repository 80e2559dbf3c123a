"""Question-similarity retrieval model trained from a bot's entries.

Questions are embedded with a deterministic token-hash embedding (sha256
buckets, signed, L2-normalised) and queries are ranked by cosine similarity
against the trained float32 document matrix. No network or GPU is involved,
so training and prediction are reproducible for a given corpus.
"""
from __future__ import annotations

import hashlib
import logging
import re
import threading
import unicodedata
from typing import Any, Iterable

import numpy as np

import config
from kb.models import Entry, Prediction

log = logging.getLogger(__name__)

MODEL_FORMAT = "hash-cosine/2"

# Unicode word runs; applied after accent folding so any script tokenizes.
_TOKEN_RE = re.compile(r"\w+")

_STOP_WORDS: dict[str, frozenset[str]] = {
    "en": frozenset({"a", "an", "the", "is", "are", "do", "does", "of", "to", "in", "on", "for", "you", "i", "my", "your", "what", "how"}),
    "fr": frozenset({"le", "la", "les", "un", "une", "des", "de", "du", "est", "et", "a", "au", "aux", "je", "vous", "tu", "mon", "ma", "mes", "quel", "quelle", "comment"}),
}


def normalize_text(text: str, lang: str = "en") -> list[str]:
    """Lowercase, fold accents and drop the language's stop words."""
    folded = unicodedata.normalize("NFKD", text.lower())
    folded = "".join(ch for ch in folded if not unicodedata.combining(ch))
    tokens = _TOKEN_RE.findall(folded)
    stop = _STOP_WORDS.get(lang, frozenset())
    kept = [t for t in tokens if t not in stop]
    # A question made only of stop words still has to embed to something.
    return kept or tokens


def hash_embedding(tokens: Iterable[str], dim: int) -> np.ndarray:
    """Signed sha256-bucket embedding: eight buckets per token, L2-normalised."""
    vector = np.zeros(dim, dtype=np.float32)
    for token in tokens:
        digest = hashlib.sha256(token.encode("utf-8")).digest()
        buckets = np.frombuffer(digest, dtype="<u4") % dim
        signs = np.where(np.frombuffer(digest, dtype=np.uint8)[::4] % 2 == 0, 1.0, -1.0).astype(np.float32)
        np.add.at(vector, buckets, signs)
    norm = float(np.linalg.norm(vector))
    if norm == 0:
        return vector
    return vector / norm


class RetrievalModel:
    """Trainable ranking model over question/answer entries.

    ``train`` is CPU bound and meant to run in a worker thread; it checks the
    cancel event every ``checkpoint_every`` entries and returns False when
    cancellation was observed, in which case the model must be discarded.
    """

    def __init__(self, lang: str | None = None, dim: int | None = None, checkpoint_every: int | None = None):
        self.lang = (lang or config.DEFAULT_LANG).lower()
        self.dim = int(dim or config.EMBEDDING_DIM)
        self.checkpoint_every = max(1, int(checkpoint_every or config.TRAIN_CHECKPOINT_EVERY))
        self.documents: list[dict[str, Any]] = []
        self.matrix = np.zeros((0, self.dim), dtype=np.float32)
        self.trained = False

    def train(self, entries: list[Entry], cancel_event: threading.Event | None = None) -> bool:
        documents: list[dict[str, Any]] = []
        rows: list[np.ndarray] = []
        for index, entry in enumerate(entries):
            if cancel_event is not None and index % self.checkpoint_every == 0 and cancel_event.is_set():
                log.debug("Training observed cancellation after %d/%d entries", index, len(entries))
                return False
            tokens = normalize_text(entry.question, self.lang)
            documents.append({
                "entry_id": entry.id,
                "question": entry.question,
                "answer": entry.answer,
                "key": " ".join(tokens),
            })
            rows.append(hash_embedding(tokens, self.dim))
        if cancel_event is not None and cancel_event.is_set():
            return False
        self.documents = documents
        self.matrix = np.array(rows, dtype=np.float32).reshape(len(rows), self.dim)
        self.trained = True
        return True

    def predict(self, query: str, lang: str | None = None, top_k: int | None = None) -> list[Prediction]:
        if not self.trained:
            raise RuntimeError("model is not trained")
        top_k = max(1, int(top_k or config.PREDICT_TOP_K))
        tokens = normalize_text(query, (lang or self.lang).lower())
        query_key = " ".join(tokens)

        scores = np.clip(self.matrix @ hash_embedding(tokens, self.dim), 0.0, 1.0)
        if query_key:
            exact = [position for position, doc in enumerate(self.documents) if doc["key"] == query_key]
            scores[exact] = 1.0
        # Stable sort keeps insertion order among equal scores.
        order = np.argsort(-scores, kind="stable")[:top_k]

        return [
            Prediction(
                entry_id=self.documents[position]["entry_id"],
                question=self.documents[position]["question"],
                content=self.documents[position]["answer"],
                confidence=round(float(scores[position]), 6),
                rank=rank,
            )
            for rank, position in enumerate(order.tolist(), start=1)
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "format": MODEL_FORMAT,
            "lang": self.lang,
            "dim": self.dim,
            "documents": self.documents,
            "vectors": self.matrix.tolist(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "RetrievalModel":
        fmt = payload.get("format")
        if fmt != MODEL_FORMAT:
            raise ValueError(f"Unsupported model format: {fmt!r}")
        model = cls(lang=payload.get("lang"), dim=payload.get("dim"))
        model.documents = list(payload.get("documents") or [])
        model.matrix = np.asarray(payload.get("vectors") or [], dtype=np.float32).reshape(
            len(model.documents), model.dim
        )
        model.trained = True
        return model
