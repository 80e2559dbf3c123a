from __future__ import annotations

import json
import os

import pytest

from kb.errors import NoModelAvailable, StorageError
from kb.model_store import ModelStore, bot_dir_name
from kb.models import Entry
from kb.retrieval import MODEL_FORMAT, RetrievalModel


def _trained(*pairs: tuple[str, str]) -> RetrievalModel:
    model = RetrievalModel(lang="en", dim=64)
    entries = [Entry(id=f"e{i}", question=q, answer=a) for i, (q, a) in enumerate(pairs)]
    assert model.train(entries)
    return model


def test_load_latest_on_never_trained_bot_raises_no_model(model_store: ModelStore):
    with pytest.raises(NoModelAvailable):
        model_store.load_latest("fresh-bot")
    assert model_store.latest_version("fresh-bot") is None
    assert model_store.list_versions("fresh-bot") == []


def test_versions_are_monotonic_and_latest_wins(model_store: ModelStore):
    first = model_store.store_model("bot-a", _trained(("hours?", "9-5")), entry_count=1)
    second = model_store.store_model("bot-a", _trained(("hours?", "9-6")), entry_count=1)

    assert (first.version, second.version) == (1, 2)
    latest = model_store.load_latest("bot-a")
    assert latest.version == 2
    assert latest.version >= first.version
    assert latest.artifact.predict("hours?")[0].content == "9-6"

    listed = model_store.list_versions("bot-a")
    assert [row["version"] for row in listed] == [2, 1]
    assert listed[0]["entry_count"] == 1


def test_versions_are_per_bot(model_store: ModelStore):
    model_store.store_model("bot-a", _trained(("q", "a")))
    model_store.store_model("bot-a", _trained(("q", "a")))
    stored = model_store.store_model("bot-b", _trained(("q", "b")))
    assert stored.version == 1
    assert model_store.load_latest("bot-b").artifact.predict("q")[0].content == "b"


def test_partial_temp_files_are_never_visible(model_store: ModelStore):
    model_store.store_model("bot-a", _trained(("q", "a")))
    bot_dir = model_store.bot_dir("bot-a")
    # A crash mid-write leaves only a temp file behind.
    (bot_dir / ".model_tmp_crash.tmp").write_text('{"version": 2, "artif', encoding="utf-8")

    assert model_store.load_latest("bot-a").version == 1
    assert model_store.store_model("bot-a", _trained(("q", "a2"))).version == 2


def test_failed_write_leaves_previous_latest_intact(model_store: ModelStore, monkeypatch):
    model_store.store_model("bot-a", _trained(("q", "a")))

    def failing_replace(_src, _dst):
        raise OSError("disk full")

    monkeypatch.setattr("kb.model_store.os.replace", failing_replace)
    with pytest.raises(StorageError):
        model_store.store_model("bot-a", _trained(("q", "a2")))
    monkeypatch.undo()

    assert model_store.load_latest("bot-a").version == 1
    leftovers = [p.name for p in model_store.bot_dir("bot-a").iterdir() if p.suffix == ".tmp"]
    assert leftovers == []


def test_stored_payload_is_not_rewritten(model_store: ModelStore):
    stored = model_store.store_model("bot-a", _trained(("q", "a")), entry_count=1)
    path = model_store.bot_dir("bot-a") / "v00000001.json"
    before = path.read_bytes()
    model_store.store_model("bot-a", _trained(("q", "b")), entry_count=1)
    assert path.read_bytes() == before
    payload = json.loads(before)
    assert payload["version"] == stored.version
    assert payload["artifact"]["format"] == MODEL_FORMAT
    assert len(payload["artifact"]["vectors"]) == 1


def test_corrupt_latest_surfaces_storage_error(model_store: ModelStore):
    model_store.store_model("bot-a", _trained(("q", "a")))
    (model_store.bot_dir("bot-a") / "v00000002.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(StorageError):
        model_store.load_latest("bot-a")


def test_bot_dir_name_is_filesystem_safe():
    assert bot_dir_name("welcome-bot") == "welcome-bot"
    unsafe = bot_dir_name("../etc/passwd")
    assert "/" not in unsafe and not unsafe.startswith(".")
    assert bot_dir_name("a.b") != bot_dir_name("a_b")
    assert os.sep not in bot_dir_name("x/y")
