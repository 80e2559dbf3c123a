from __future__ import annotations

import sqlite3

import pytest

from kb.entry_store import EntryStore
from kb.errors import NotFoundError, StorageError, ValidationError
from kb.models import validate_entry


def test_fetch_empty_store_returns_empty_list(entry_store: EntryStore):
    assert entry_store.fetch("bot-a") == []
    assert entry_store.count("bot-a") == 0


def test_upsert_without_id_creates_fresh_ids(entry_store: EntryStore):
    first = entry_store.upsert("bot-a", {"question": "hours?", "answer": "9-5"})
    second = entry_store.upsert("bot-a", {"question": "address?", "answer": "1 Main St", "id": ""})

    assert first and second and first != second
    entries = entry_store.fetch("bot-a")
    assert [e.id for e in entries] == [first, second]
    assert entries[0].question == "hours?"
    assert entries[0].type == "" and entries[0].source == ""


def test_upsert_existing_id_updates_in_place(entry_store: EntryStore):
    first = entry_store.upsert("bot-a", {"question": "hours?", "answer": "9-5"})
    second = entry_store.upsert("bot-a", {"question": "phone?", "answer": "555-0100"})

    returned = entry_store.upsert("bot-a", {"id": first, "question": "opening hours?", "answer": "9-6", "type": "faq"})

    assert returned == first
    entries = entry_store.fetch("bot-a")
    assert len(entries) == 2
    # Updated entries keep their insertion position.
    assert [e.id for e in entries] == [first, second]
    assert entries[0].answer == "9-6"
    assert entries[0].type == "faq"


def test_upsert_with_unknown_id_creates_under_that_id(entry_store: EntryStore):
    entry_id = entry_store.upsert("bot-a", {"id": "custom-1", "question": "q", "answer": "a"})
    assert entry_id == "custom-1"
    assert entry_store.get("bot-a", "custom-1").answer == "a"


@pytest.mark.parametrize(
    "payload",
    [
        {"question": "", "answer": "x"},
        {"question": "   ", "answer": "x"},
        {"question": "q"},
        {"question": 42, "answer": "x"},
        ["not", "an", "object"],
    ],
)
def test_upsert_rejects_malformed_input_without_writing(entry_store: EntryStore, payload):
    with pytest.raises(ValidationError) as exc_info:
        entry_store.upsert("bot-a", payload)
    assert exc_info.value.details
    assert entry_store.count("bot-a") == 0


def test_validate_entry_is_a_tagged_result():
    ok = validate_entry({"question": " hours? ", "answer": "9-5", "unknown": 1})
    assert ok.ok and ok.entry is not None
    assert ok.entry.question == "hours?"
    assert ok.errors == []

    bad = validate_entry({"question": "hours?"})
    assert not bad.ok and bad.entry is None
    assert any(err.startswith("answer") for err in bad.errors)


def test_delete_unknown_and_repeated_delete_raise(entry_store: EntryStore):
    entry_id = entry_store.upsert("bot-a", {"question": "q", "answer": "a"})
    with pytest.raises(NotFoundError):
        entry_store.delete("bot-a", "missing")

    entry_store.delete("bot-a", entry_id)
    assert entry_store.fetch("bot-a") == []
    with pytest.raises(NotFoundError):
        entry_store.delete("bot-a", entry_id)


def test_bots_are_isolated(entry_store: EntryStore):
    entry_id = entry_store.upsert("bot-a", {"id": "shared", "question": "q", "answer": "a"})
    entry_store.upsert("bot-b", {"id": "shared", "question": "q2", "answer": "b"})

    assert entry_store.get("bot-a", entry_id).answer == "a"
    assert entry_store.get("bot-b", entry_id).answer == "b"
    entry_store.delete("bot-b", "shared")
    assert entry_store.count("bot-a") == 1
    with pytest.raises(NotFoundError):
        entry_store.get("bot-b", "shared")
    assert entry_store.bot_ids() == ["bot-a"]


def test_entries_survive_reopen(tmp_path):
    store = EntryStore(tmp_path / "entries.db")
    store.upsert("bot-a", {"question": "q", "answer": "a"})
    reopened = EntryStore(tmp_path / "entries.db")
    assert len(reopened.fetch("bot-a")) == 1


def test_sqlite_failures_surface_as_storage_error(entry_store: EntryStore, monkeypatch):
    def broken_connect(*_args, **_kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr("kb.entry_store.sqlite3.connect", broken_connect)
    with pytest.raises(StorageError):
        entry_store.fetch("bot-a")
    with pytest.raises(StorageError):
        entry_store.upsert("bot-a", {"question": "q", "answer": "a"})
