from datetime import datetime, timezone

import pytest

from memplayer.application.vault_service import VaultService
from memplayer.infrastructure.adapters.memory_store import MemoryStore

NOTE_TEXT = """---
mp-id: note-1
title: Cell biology
tags: [bio, cells]
---
# Cell biology

## Organelles

The {{c1::mitochondria}} is the powerhouse of the cell.

The {{c2::ribosome::protein factory}} builds proteins.

## Membranes

Membranes are made of a {{c3::lipid bilayer}}; see also {{c1::mitochondria}}.
"""


@pytest.fixture
def now():
    return datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def note_text():
    return NOTE_TEXT


@pytest.fixture
def mock_vault(tmp_path):
    """Creates a temporary vault with one note in a sub folder."""
    d = tmp_path / "MyVault"
    (d / "biology").mkdir(parents=True)
    (d / "biology" / "cells.md").write_text(NOTE_TEXT, encoding="utf-8")
    return d


@pytest.fixture
def mock_home(tmp_path, monkeypatch):
    """Mocks Path.home() to point to a temp dir."""
    home = tmp_path / "home"
    home.mkdir()

    # Mocking HOME to a temp directory to isolate config/logs
    monkeypatch.setenv("HOME", str(home))
    return home


@pytest.fixture
def vault(now):
    service = VaultService()
    service.load_note("biology/cells.md", NOTE_TEXT, now)
    return service


@pytest.fixture
def store(now):
    return MemoryStore(clock=lambda: now)
