import json
from dataclasses import replace
from datetime import timedelta

import pytest

from memplayer.application.scheduler import Scheduler
from memplayer.domain.errors import LocalStateError
from memplayer.domain.models import CardKey, CardState, Rating, SyncState
from memplayer.infrastructure.local_store import FORMAT_VERSION, LocalStateStore


def test_missing_file_loads_empty(tmp_path):
    state = LocalStateStore(tmp_path / "state.json").load()
    assert state.cards == {}
    assert state.sync == {}
    assert state.logs == []


def test_round_trip(tmp_path, vault, now):
    key = CardKey("note-1", 1)
    vault.record_review(Scheduler().grade(vault.get_card(key), Rating.EASY, now))
    vault.mark_synced("note-1", vault.get_note("note-1").content_hash, now)
    cards, sync, logs = vault.snapshot()

    path = tmp_path / "nested" / "state.json"
    store = LocalStateStore(path)
    store.save(cards, sync, logs)
    loaded = store.load()

    assert set(loaded.cards) == {CardKey("note-1", i) for i in (1, 2, 3)}
    assert loaded.cards[key]["state"] == int(CardState.REVIEW)
    assert "answer_text" not in loaded.cards[key]
    assert loaded.sync["note-1"].pending is False
    assert loaded.sync["note-1"].last_sync_at == now
    assert loaded.logs == logs
    assert json.loads(path.read_text())["version"] == FORMAT_VERSION
    assert not path.with_suffix(".json.tmp").exists()


def test_unreadable_file_raises(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(LocalStateError):
        LocalStateStore(path).load()


def test_rows_without_identity_are_dropped(tmp_path, now):
    path = tmp_path / "state.json"
    path.write_text(
        json.dumps(
            {
                "version": 1,
                "cards": [
                    {"note_id": "n", "cloze_index": 1, "state": 0, "due": now.isoformat()},
                    {"cloze_index": 2},
                    {"note_id": "n", "cloze_index": "two"},
                ],
            }
        ),
        encoding="utf-8",
    )
    assert list(LocalStateStore(path).load().cards) == [CardKey("n", 1)]


def test_save_overwrites(tmp_path, vault, now):
    store = LocalStateStore(tmp_path / "state.json")
    cards, sync, logs = vault.snapshot()
    store.save(cards, sync, logs)
    store.save(
        [replace(cards[0], due=now + timedelta(days=1))],
        {"note-1": SyncState(content_hash="h", pending=True)},
        [],
    )
    loaded = store.load()
    assert list(loaded.cards) == [CardKey("note-1", 1)]
    assert loaded.sync["note-1"].content_hash == "h"


def test_tombstones_and_suspension_persist(tmp_path, vault, now):
    key = CardKey("note-1", 2)
    vault.suspend_card(key)
    vault.mark_synced("note-1", vault.get_note("note-1").content_hash, now)
    vault.remove_note("biology/cells.md")
    cards, sync, logs = vault.snapshot()

    store = LocalStateStore(tmp_path / "state.json")
    store.save(cards, sync, logs)
    loaded = store.load()

    assert loaded.sync["note-1"].deleted
    assert loaded.sync["note-1"].pending
    assert loaded.sync["note-1"].remote_deleted is False
    assert loaded.cards[key]["is_suspended"] is True
