import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from memplayer.domain.errors import CardNotFoundError, RemoteSyncError
from memplayer.domain.interfaces import RemoteStore
from memplayer.domain.models import CardKey
from memplayer.domain.rows import CardContentRow, CardStateRow, NoteRow, ReviewLogRow


@dataclass
class _StoredCard:
    id: str
    content: CardContentRow
    state: CardStateRow


class MemoryStore(RemoteStore):
    """
    In-process remote store.

    Behaves like the PostgREST tables: content upserts never touch scheduling
    columns, new card rows start as New cards, and reviews update the card and
    append the log together. Used for offline mode and tests.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None):
        self.logger = logging.getLogger(__name__)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.notes: dict[str, NoteRow] = {}
        self.cards: dict[CardKey, _StoredCard] = {}
        self.logs: list[ReviewLogRow] = []

    async def get_note_hash(self, note_id: str) -> str | None:
        row = self.notes.get(note_id)
        return row.content_hash if row else None

    async def touch_note(self, note_id: str, at: datetime) -> None:
        row = self.notes.get(note_id)
        if row is not None:
            self.notes[note_id] = row.model_copy(update={"last_sync_at": at})

    async def upsert_note(self, row: NoteRow) -> None:
        self.notes[row.id] = row.model_copy()

    async def upsert_cards(self, rows: list[CardContentRow]) -> int:
        for row in rows:
            key = CardKey(row.note_id, row.cloze_index)
            stored = self.cards.get(key)
            if stored is not None:
                stored.content = row.model_copy()
                continue
            card_id = str(uuid.uuid4())
            self.cards[key] = _StoredCard(
                id=card_id,
                content=row.model_copy(),
                state=CardStateRow(
                    id=card_id,
                    note_id=row.note_id,
                    cloze_index=row.cloze_index,
                    state=0,
                    due=self.clock(),
                    stability=0.0,
                    difficulty=0.0,
                ),
            )
        self.logger.debug(f"Upserted {len(rows)} card row(s)")
        return len(rows)

    def _flag_deleted(self, note_id: str, deleted: bool) -> None:
        row = self.notes.get(note_id)
        if row is not None:
            self.notes[note_id] = row.model_copy(update={"is_deleted": deleted})

    def _card_by_id(self, card_id: str) -> _StoredCard | None:
        return next((s for s in self.cards.values() if s.id == card_id), None)

    async def soft_delete_note(self, note_id: str) -> None:
        self._flag_deleted(note_id, True)

    async def restore_note(self, note_id: str) -> None:
        self._flag_deleted(note_id, False)

    async def set_card_suspended(self, card_id: str, suspended: bool) -> None:
        stored = self._card_by_id(card_id)
        if stored is None:
            raise RemoteSyncError(f"No remote card with id {card_id}")
        stored.state = stored.state.model_copy(update={"is_suspended": suspended})

    async def reset_card(self, card_id: str, card: CardStateRow) -> None:
        stored = self._card_by_id(card_id)
        if stored is None:
            raise CardNotFoundError(card.note_id, card.cloze_index)
        stored.state = card.model_copy(update={"id": card_id})

    async def find_card_id(self, note_id: str, cloze_index: int) -> str | None:
        stored = self.cards.get(CardKey(note_id, cloze_index))
        return stored.id if stored else None

    async def fetch_card(self, note_id: str, cloze_index: int) -> CardStateRow | None:
        stored = self.cards.get(CardKey(note_id, cloze_index))
        return stored.state.model_copy() if stored else None

    async def fetch_cards(self, note_id: str | None = None) -> list[CardStateRow]:
        return [
            stored.state.model_copy()
            for key, stored in sorted(self.cards.items())
            if note_id is None or key.note_id == note_id
        ]

    async def submit_review(self, card_id: str, card: CardStateRow, log: ReviewLogRow) -> None:
        stored = self._card_by_id(card_id)
        if stored is None:
            raise CardNotFoundError(card.note_id, card.cloze_index)
        stored.state = card.model_copy(update={"id": card_id, "is_suspended": stored.state.is_suspended})
        self.logs.append(log.model_copy())

    async def get_review_history(self, start: datetime, end: datetime) -> list[ReviewLogRow]:
        return sorted(
            (log for log in self.logs if start <= log.reviewed_at <= end),
            key=lambda log: log.reviewed_at,
        )

    def seed(self, notes: list[NoteRow], cards: list[tuple[CardContentRow, CardStateRow]]) -> None:
        """Preload rows, e.g. from the local state file when running offline."""
        for note in notes:
            self.notes[note.id] = note.model_copy()
        for content, state in cards:
            key = CardKey(content.note_id, content.cloze_index)
            card_id = state.id or str(uuid.uuid4())
            self.cards[key] = _StoredCard(
                id=card_id, content=content.model_copy(), state=state.model_copy(update={"id": card_id})
            )
