from __future__ import annotations

import os
import sys
import tempfile
import threading
import time
from pathlib import Path

import pytest

_SERVICE_ROOT = Path(__file__).resolve().parents[1]
if str(_SERVICE_ROOT) not in sys.path:
    sys.path.insert(0, str(_SERVICE_ROOT))

# Keep config's import-time directories out of the user's home.
os.environ.setdefault("KB_DATA_DIR", tempfile.mkdtemp(prefix="qnakb-tests-"))
os.environ.setdefault("KB_TEST_MODE", "1")

from kb.entry_store import EntryStore
from kb.model_store import ModelStore
from kb.notifications import NotificationBus
from kb.retrieval import RetrievalModel
from kb.service import KnowledgeBase


class GatedModel(RetrievalModel):
    """Retrieval model whose training blocks until ``gate`` is set or it is cancelled."""

    def __init__(self, gate: threading.Event, started: threading.Event, max_wait: float = 5.0):
        super().__init__(lang="en", dim=64, checkpoint_every=1)
        self.gate = gate
        self.started = started
        self.max_wait = max_wait

    def train(self, entries, cancel_event=None):
        self.started.set()
        deadline = time.monotonic() + self.max_wait
        while not self.gate.wait(0.01):
            if cancel_event is not None and cancel_event.is_set():
                return False
            if time.monotonic() > deadline:
                break
        return super().train(entries, cancel_event)


class ExplodingModel(RetrievalModel):
    def train(self, entries, cancel_event=None):
        raise RuntimeError("embedding backend exploded")


class ModelGate:
    """Factory handing out GatedModels that share one gate."""

    def __init__(self) -> None:
        self.gate = threading.Event()
        self.started = threading.Event()

    def __call__(self) -> GatedModel:
        return GatedModel(self.gate, self.started)

    def release(self) -> None:
        self.gate.set()


class RecordingBus(NotificationBus):
    def __init__(self) -> None:
        super().__init__()
        self.published: list[tuple[str, dict]] = []
        self.subscribe(lambda kind, details: self.published.append((kind, details)))


@pytest.fixture()
def entry_store(tmp_path: Path) -> EntryStore:
    return EntryStore(tmp_path / "entries.db")


@pytest.fixture()
def model_store(tmp_path: Path) -> ModelStore:
    return ModelStore(tmp_path / "models")


@pytest.fixture()
def runs() -> list[tuple[str, dict]]:
    return []


@pytest.fixture()
def bus() -> RecordingBus:
    return RecordingBus()


@pytest.fixture()
def model_gate():
    gate = ModelGate()
    yield gate
    # Never leave a worker thread blocked past the test.
    gate.release()


@pytest.fixture()
def exploding_factory():
    return lambda: ExplodingModel(lang="en", dim=32)


@pytest.fixture()
def make_kb(entry_store, model_store, runs, bus):
    """Build a KnowledgeBase over the tmp stores; job options override defaults."""
    def _make(**job_options) -> KnowledgeBase:
        job_options.setdefault("training_disabled", False)
        job_options.setdefault("max_training_seconds", 0)
        job_options.setdefault("run_recorder", lambda bot_id, run: runs.append((bot_id, run)))
        job_options.setdefault("model_factory", lambda: RetrievalModel(lang="en", dim=128))
        return KnowledgeBase(entry_store, model_store, notifications=bus, **job_options)
    return _make
