from __future__ import annotations

import importlib
import sys
import threading
import time
from pathlib import Path

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
SERVICE_DIR = REPO_ROOT / "service"
SDK_DIR = REPO_ROOT / "sdk"
for _path in (SERVICE_DIR, SDK_DIR):
    if str(_path) not in sys.path:
        sys.path.insert(0, str(_path))


class ModelSwitch:
    """Model factory for the service: plain models until ``hold()`` is called.

    While held, training blocks until ``release()`` or a cancel request.
    """

    def __init__(self) -> None:
        self.held = False
        self.gate = threading.Event()
        self.started = threading.Event()

    def hold(self) -> None:
        self.held = True
        self.gate.clear()
        self.started.clear()

    def release(self) -> None:
        self.gate.set()

    def __call__(self):
        from kb.retrieval import RetrievalModel

        switch = self

        class _HeldModel(RetrievalModel):
            def train(self, entries, cancel_event=None):
                switch.started.set()
                deadline = time.monotonic() + 5.0
                while not switch.gate.wait(0.01):
                    if cancel_event is not None and cancel_event.is_set():
                        return False
                    if time.monotonic() > deadline:
                        break
                return super().train(entries, cancel_event)

        model_cls = _HeldModel if self.held else RetrievalModel
        return model_cls(lang="en", dim=128)


def wait_until_idle(client, bot_id: str, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        status = client.get(f"/bots/{bot_id}/kb/train/status").json()
        if status["state"] == "idle" or time.monotonic() > deadline:
            return status
        time.sleep(0.02)


@pytest.fixture()
def wait_idle():
    return wait_until_idle


@pytest.fixture()
def model_switch():
    switch = ModelSwitch()
    yield switch
    switch.release()


@pytest.fixture()
def client(monkeypatch, tmp_path, model_switch):
    pytest.importorskip("fastapi")
    monkeypatch.setenv("KB_TEST_MODE", "1")
    monkeypatch.setenv("KB_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("KB_DISABLE_TRAINING", "0")
    monkeypatch.setenv("BP_NLU_DISABLE_TRAINING", "0")
    monkeypatch.setenv("KB_TRAINING_MAX_SECONDS", "0")
    import config
    importlib.reload(config)
    import main
    importlib.reload(main)

    import runtime_state
    monkeypatch.setattr(runtime_state, "_TRAINING_RUNS_PATH", tmp_path / "training_runs.json")
    monkeypatch.setattr(runtime_state, "_TRAINING_RUNS", {})
    monkeypatch.setattr(runtime_state, "_TRAINING_RUNS_LOADED", False)

    from kb.entry_store import EntryStore
    from kb.model_store import ModelStore
    from kb.service import KnowledgeBase
    from runtime_kb import set_kb_instance

    kb = KnowledgeBase(
        EntryStore(tmp_path / "entries.db"),
        ModelStore(tmp_path / "models"),
        model_factory=model_switch,
    )
    set_kb_instance(kb)

    from fastapi.testclient import TestClient

    try:
        with TestClient(main.app) as test_client:
            yield test_client
    finally:
        set_kb_instance(None)
