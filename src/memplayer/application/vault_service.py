import logging
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path, PurePosixPath

from memplayer.application.cards import ExtractionReport, build_report, reconcile_cards
from memplayer.application.cloze import NormalizeResult, normalize_ids
from memplayer.application.parser import parse_note
from memplayer.application.queue_builder import build_forecast, build_queue
from memplayer.application.scheduler import create_empty_card, reset_card
from memplayer.application.utils.fs import iter_markdown_files
from memplayer.domain.constants import DEFAULT_FORECAST_DAYS, OCCURRENCE_WARNING_THRESHOLD
from memplayer.domain.errors import (
    CardNotFoundError,
    ConfirmationRequiredError,
    NoteNotFoundError,
)
from memplayer.domain.models import (
    Card,
    CardKey,
    Note,
    ReviewLog,
    ReviewOutcome,
    ReviewQueue,
    SyncState,
)
from memplayer.domain.rows import CardStateRow, card_from_payload


@dataclass(frozen=True)
class NoteChanged:
    """A note file was created or modified outside the service."""

    filepath: str
    raw: str


@dataclass(frozen=True)
class NoteRemoved:
    filepath: str


NoteEvent = NoteChanged | NoteRemoved


@dataclass(frozen=True)
class ScanResult:
    loaded: int
    removed: int
    failed: int = 0


class VaultService:
    """
    Owns the notes, cards and sync bookkeeping of one vault.

    Notes live in a flat arena keyed by id; folder structure is derived from
    their paths on demand. All mutation goes through this object.
    """

    def __init__(
        self,
        root: Path | None = None,
        occurrence_threshold: int = OCCURRENCE_WARNING_THRESHOLD,
    ):
        self.root = root
        self.occurrence_threshold = occurrence_threshold
        self.logger = logging.getLogger(__name__)

        self._notes: dict[str, Note] = {}
        self._paths: dict[str, str] = {}  # filepath -> note id
        self._cards: dict[CardKey, Card] = {}
        self._sync: dict[str, SyncState] = {}
        self._logs: list[ReviewLog] = []
        # Cards whose note is not loaded (yet)
        self._parked: dict[CardKey, Card] = {}

    # ---------- Persistence ----------

    def restore(
        self,
        cards: dict[CardKey, dict],
        sync: dict[str, SyncState],
        logs: list[ReviewLog],
        now: datetime,
    ) -> None:
        """Seed stored state before the first scan; cards bind to notes as they load."""
        for key, payload in cards.items():
            base = create_empty_card(key.note_id, key.cloze_index, now)
            self._parked[key] = card_from_payload(payload, base)
        self._sync.update(sync)
        self._logs.extend(logs)

    def snapshot(self) -> tuple[list[Card], dict[str, SyncState], list[ReviewLog]]:
        """Everything that must be persisted, including cards of unloaded notes."""
        cards = [*self._cards.values(), *self._parked.values()]
        return sorted(cards, key=lambda c: c.key), dict(self._sync), list(self._logs)

    # ---------- Mutations ----------

    def load_note(self, filepath: str, raw: str, now: datetime) -> Note:
        note = parse_note(raw, filepath)

        previous_id = self._paths.get(filepath)
        if previous_id is not None and previous_id != note.id:
            self.logger.info(f"{filepath}: note id changed from {previous_id} to {note.id}")
            self._unload(previous_id)

        existing = self._notes.get(note.id)
        if existing is not None and existing.filepath != filepath:
            # Moved file, or two files sharing one id: the latest load wins
            self.logger.info(f"Note {note.id} moved from {existing.filepath} to {filepath}")
            self._paths.pop(existing.filepath, None)

        previous = [c for key, c in self._cards.items() if key.note_id == note.id]
        for key in [k for k in self._parked if k.note_id == note.id]:
            previous.append(self._parked.pop(key))

        for card in reconcile_cards(previous, note, now):
            self._cards[card.key] = card

        self._notes[note.id] = note
        self._paths[filepath] = note.id

        state = self._sync.setdefault(note.id, SyncState())
        if state.deleted:
            # The file came back; any unsent tombstone is dropped
            state.deleted = False
            state.content_hash = ""
        if state.content_hash != note.content_hash:
            state.content_hash = note.content_hash
            state.pending = state.synced_hash != note.content_hash
        if state.remote_deleted:
            state.pending = True

        report = build_report(note, self.occurrence_threshold)
        if report.overused_ids:
            self.logger.info(f"{filepath}: heavily shared cloze id(s) {report.overused_ids}")
        return note

    def _unload(self, note_id: str) -> None:
        """Drop a note from the arena, parking its cards' scheduling state."""
        note = self._notes.pop(note_id, None)
        if note is not None:
            self._paths.pop(note.filepath, None)
        for key in [k for k in self._cards if k.note_id == note_id]:
            self._parked[key] = self._cards.pop(key)

    def remove_note(self, filepath: str) -> Note | None:
        note_id = self._paths.get(filepath)
        if note_id is None:
            return None
        note = self._notes.get(note_id)
        self._unload(note_id)
        self._tombstone(note_id)
        self.logger.info(f"Removed note {filepath}")
        return note

    def _tombstone(self, note_id: str) -> None:
        """Mark a note deleted; only notes the remote has seen need the deletion pushed."""
        state = self._sync.get(note_id)
        if state is None or state.deleted:
            return
        state.deleted = True
        state.pending = state.synced_hash is not None and not state.remote_deleted

    def apply_event(self, event: NoteEvent, now: datetime) -> Note | None:
        """Consume a file-watcher message through the normal mutate path."""
        if isinstance(event, NoteChanged):
            return self.load_note(event.filepath, event.raw, now)
        if isinstance(event, NoteRemoved):
            return self.remove_note(event.filepath)
        raise TypeError(f"Unknown vault event: {event!r}")

    def scan(self, now: datetime, root: Path | None = None) -> ScanResult:
        """Load every markdown file under root and drop notes whose files vanished."""
        root = root or self.root
        if root is None:
            raise ValueError("No vault root configured")
        self.root = root

        seen: set[str] = set()
        loaded = failed = 0
        for path in iter_markdown_files(root):
            rel = path.relative_to(root).as_posix() if root.is_dir() else path.name
            try:
                raw = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                self.logger.warning(f"[vault] Skipped {rel}: {e}")
                # Unreadable is not gone: keep whatever was loaded before
                seen.add(rel)
                failed += 1
                continue
            self.load_note(rel, raw, now)
            seen.add(rel)
            loaded += 1

        gone = [fp for fp in self._paths if fp not in seen]
        for filepath in gone:
            self.remove_note(filepath)

        if root.is_dir() and not failed:
            # Notes known from the state file whose files vanished while closed
            for note_id in [i for i in self._sync if i not in self._notes]:
                self._tombstone(note_id)

        self.logger.info(f"[vault] Loaded {loaded} note(s), removed {len(gone)}")
        return ScanResult(loaded=loaded, removed=len(gone), failed=failed)

    def record_review(self, outcome: ReviewOutcome) -> Card:
        key = outcome.card.key
        if key not in self._cards:
            raise CardNotFoundError(key.note_id, key.cloze_index)
        self._cards[key] = outcome.card
        self._logs.append(outcome.log)
        return outcome.card

    def apply_remote_state(self, row: CardStateRow) -> Card:
        """Overlay scheduling state fetched from the remote onto the local card."""
        key = CardKey(row.note_id, row.cloze_index)
        current = self._cards.get(key)
        if current is None:
            raise CardNotFoundError(key.note_id, key.cloze_index)
        card = card_from_payload(row.model_dump(), current)
        self._cards[key] = card
        return card

    def replace_card(self, card: Card) -> Card:
        """Store a card whose scheduling state was changed outside a review."""
        if card.key not in self._cards:
            raise CardNotFoundError(card.note_id, card.cloze_index)
        self._cards[card.key] = card
        return card

    def suspend_card(self, key: CardKey, suspended: bool = True) -> Card:
        """Keep a card out of the review queue (or put it back) without touching its schedule."""
        card = self.replace_card(replace(self.get_card(key), suspended=suspended))
        self.logger.info(f"{'Suspended' if suspended else 'Unsuspended'} card {key.note_id} c{key.cloze_index}")
        return card

    def reset_card(self, key: CardKey, now: datetime) -> Card:
        """Forget a card's progress; it comes back as a New card due now."""
        card = self.replace_card(reset_card(self.get_card(key), now))
        self.logger.info(f"Reset card {key.note_id} c{key.cloze_index}")
        return card

    def delete_card(self, key: CardKey) -> Card:
        """Explicitly delete a card and its scheduling history."""
        card = self._cards.pop(key, None) or self._parked.pop(key, None)
        if card is None:
            raise CardNotFoundError(key.note_id, key.cloze_index)
        self.logger.info(f"Deleted card {key.note_id} c{key.cloze_index}")
        return card

    def normalize_note_ids(self, note_id: str, now: datetime, confirm: bool = False) -> NormalizeResult:
        """
        Renumber a note's cloze ids to 1..K.

        Shifted ids lose their scheduling history (their old cards become
        orphaned), so this refuses to run without explicit confirmation. The
        caller is responsible for writing the new text back to disk.
        """
        if not confirm:
            raise ConfirmationRequiredError(
                "Renumbering cloze ids resets scheduling history for shifted ids"
            )
        note = self.get_note(note_id)
        result = normalize_ids(note.raw)
        if result.changed:
            self.load_note(note.filepath, result.text, now)
            self.logger.info(f"{note.filepath}: renumbered cloze ids {result.mapping}")
        return result

    def mark_synced(self, note_id: str, content_hash: str, at: datetime) -> bool:
        """Clear the pending flag if the synced hash is still the note's current hash."""
        state = self._sync.setdefault(note_id, SyncState())
        state.synced_hash = content_hash
        state.last_sync_at = at
        state.remote_deleted = False
        if state.content_hash == content_hash:
            state.pending = False
            return True
        return False

    def mark_remote_deleted(self, note_id: str, at: datetime) -> None:
        """Record that the remote row now carries the deletion flag."""
        state = self._sync.setdefault(note_id, SyncState())
        state.remote_deleted = True
        state.last_sync_at = at
        # A note that came back meanwhile still needs restoring
        state.pending = not state.deleted

    # ---------- Queries ----------

    def get_note(self, note_id: str) -> Note:
        try:
            return self._notes[note_id]
        except KeyError:
            raise NoteNotFoundError(note_id) from None

    def get_card(self, key: CardKey) -> Card:
        try:
            return self._cards[key]
        except KeyError:
            raise CardNotFoundError(key.note_id, key.cloze_index) from None

    def get_sync_state(self, note_id: str) -> SyncState:
        return self._sync.get(note_id) or SyncState()

    def has_tombstone(self, note_id: str) -> bool:
        state = self._sync.get(note_id)
        return state is not None and state.deleted

    def notes(self) -> list[Note]:
        return sorted(self._notes.values(), key=lambda n: n.filepath)

    def cards(self, include_orphaned: bool = False) -> list[Card]:
        return sorted(
            (c for c in self._cards.values() if include_orphaned or not c.orphaned),
            key=lambda c: c.key,
        )

    def note_cards(self, note_id: str, include_orphaned: bool = False) -> list[Card]:
        return [c for c in self.cards(include_orphaned) if c.note_id == note_id]

    @property
    def logs(self) -> list[ReviewLog]:
        return list(self._logs)

    def notes_under(self, prefix: str) -> list[Note]:
        """Notes whose path lies under the folder `prefix` ("" for the whole vault)."""
        prefix = prefix.strip("/")
        if not prefix:
            return self.notes()
        return [n for n in self.notes() if n.filepath.startswith(prefix + "/")]

    def group_by_folder(self) -> dict[str, list[Note]]:
        groups: dict[str, list[Note]] = defaultdict(list)
        for note in self.notes():
            parent = PurePosixPath(note.filepath).parent.as_posix()
            groups["" if parent == "." else parent].append(note)
        return dict(sorted(groups.items()))

    def pending_notes(self) -> list[Note]:
        return [n for n in self.notes() if self._sync.get(n.id, SyncState()).pending]

    def pending_deletions(self) -> list[str]:
        """Ids of removed notes whose deletion has not reached the remote yet."""
        return sorted(i for i, s in self._sync.items() if s.deleted and s.pending and i not in self._notes)

    @property
    def pending_sync_count(self) -> int:
        return len(self.pending_notes()) + len(self.pending_deletions())

    def reports(self) -> list[ExtractionReport]:
        return [build_report(n, self.occurrence_threshold) for n in self.notes()]

    def build_queue(self, now: datetime) -> ReviewQueue:
        filepaths = {n.id: n.filepath for n in self._notes.values()}
        return build_queue(self.cards(), now, filepaths)

    def forecast(self, now: datetime, days: int = DEFAULT_FORECAST_DAYS) -> dict[str, int]:
        return build_forecast(self.cards(), now, days)

