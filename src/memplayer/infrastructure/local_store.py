"""
Local state file: scheduling state, sync bookkeeping and review logs as JSON.

Card rows are kept as raw dicts on load so a corrupt row can be recovered
per card (treated as New) instead of failing the whole file.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from memplayer.domain.errors import LocalStateError
from memplayer.domain.models import Card, CardKey, ReviewLog, SyncState
from memplayer.domain.rows import ReviewLogRow, card_to_state_row, log_from_row, log_to_row

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


class SyncStateRow(BaseModel):
    content_hash: str = ""
    last_sync_at: datetime | None = None
    pending: bool = False
    synced_hash: str | None = None
    deleted: bool = False
    remote_deleted: bool = False


class StateFile(BaseModel):
    version: int = FORMAT_VERSION
    cards: list[dict[str, Any]] = Field(default_factory=list)
    sync: dict[str, SyncStateRow] = Field(default_factory=dict)
    logs: list[ReviewLogRow] = Field(default_factory=list)


@dataclass
class LocalState:
    cards: dict[CardKey, dict[str, Any]] = field(default_factory=dict)
    sync: dict[str, SyncState] = field(default_factory=dict)
    logs: list[ReviewLog] = field(default_factory=list)


class LocalStateStore:
    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> LocalState:
        if not self.path.exists():
            logger.debug(f"No state file at {self.path}, starting empty")
            return LocalState()

        try:
            data = StateFile.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            raise LocalStateError(f"Cannot read state file {self.path}: {e}") from e

        state = LocalState()
        for payload in data.cards:
            note_id, cloze_index = payload.get("note_id"), payload.get("cloze_index")
            if not isinstance(note_id, str) or not isinstance(cloze_index, int):
                logger.warning(f"Dropping card row without identity from {self.path}")
                continue
            state.cards[CardKey(note_id, cloze_index)] = payload

        state.sync = {note_id: SyncState(**row.model_dump()) for note_id, row in data.sync.items()}
        state.logs = [log_from_row(row) for row in data.logs]
        logger.debug(
            f"Loaded {len(state.cards)} card(s), {len(state.sync)} note state(s) from {self.path}"
        )
        return state

    def save(
        self,
        cards: list[Card],
        sync: dict[str, SyncState],
        logs: list[ReviewLog],
    ) -> None:
        """Write the whole state atomically (temp file, then rename)."""
        data = StateFile(
            cards=[card_to_state_row(c).model_dump(mode="json", exclude={"id"}) for c in cards],
            sync={note_id: SyncStateRow(**vars(s)) for note_id, s in sync.items()},
            logs=[log_to_row(log) for log in logs],
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data.model_dump(mode="json"), indent=2), encoding="utf-8")
        os.replace(tmp, self.path)
        logger.debug(f"Saved {len(cards)} card(s) to {self.path}")
