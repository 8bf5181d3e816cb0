"""
Ports (interfaces) for the remote store.

These define the contract that infrastructure adapters must implement.
The sync reconciler depends on this abstraction, not on concrete adapters.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from memplayer.domain.rows import CardContentRow, CardStateRow, NoteRow, ReviewLogRow


class RemoteStore(ABC):
    """
    Port for the remote copy of notes, cards and review logs.

    Implementations:
        - PostgrestStore: Supabase / PostgREST over HTTP (httpx).
        - MemoryStore: In-process store for offline use and tests.

    Cards are keyed by (note_id, cloze_index); notes by note_id.
    """

    @abstractmethod
    async def get_note_hash(self, note_id: str) -> str | None:
        """Return the stored content hash, or None if the note is unknown."""

    @abstractmethod
    async def touch_note(self, note_id: str, at: datetime) -> None:
        """Record a no-op sync (content unchanged) by bumping last_sync_at."""

    @abstractmethod
    async def upsert_note(self, row: NoteRow) -> None:
        """Insert or update the note keyed by its id."""

    @abstractmethod
    async def upsert_cards(self, rows: list[CardContentRow]) -> int:
        """
        Insert or update card content keyed by (note_id, cloze_index).

        Scheduling columns of existing rows must be preserved; new rows start
        with the store's defaults (a New card).

        Returns:
            Number of rows written.
        """

    @abstractmethod
    async def soft_delete_note(self, note_id: str) -> None:
        """Flag the note as deleted. Its cards and their history are kept."""

    @abstractmethod
    async def restore_note(self, note_id: str) -> None:
        """Clear the deleted flag set by soft_delete_note."""

    @abstractmethod
    async def set_card_suspended(self, card_id: str, suspended: bool) -> None:
        """Suspend or unsuspend one card; scheduling columns are untouched."""

    @abstractmethod
    async def reset_card(self, card_id: str, card: CardStateRow) -> None:
        """Overwrite one card's scheduling columns with a fresh state. No log is written."""

    @abstractmethod
    async def find_card_id(self, note_id: str, cloze_index: int) -> str | None:
        """Look up the remote row id for a compound card identity."""

    @abstractmethod
    async def fetch_card(self, note_id: str, cloze_index: int) -> CardStateRow | None:
        """Fetch the current scheduling state of one card."""

    @abstractmethod
    async def fetch_cards(self, note_id: str | None = None) -> list[CardStateRow]:
        """Fetch scheduling state for one note's cards, or all cards."""

    @abstractmethod
    async def submit_review(
        self, card_id: str, card: CardStateRow, log: ReviewLogRow
    ) -> None:
        """Atomically write the graded card state and append the review log."""

    @abstractmethod
    async def get_review_history(self, start: datetime, end: datetime) -> list[ReviewLogRow]:
        """Review logs with start <= reviewed_at <= end, ascending."""

    async def close(self) -> None:  # noqa: B027
        """Release connections. Optional for stores without resources."""
