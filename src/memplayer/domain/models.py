"""
Domain models for notes, cards and reviews.

These are pure data structures with no I/O or external dependencies.
Integers that travel over the wire (card state, rating) are enums here and
are only converted back to plain ints in `memplayer.domain.rows`.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, NamedTuple

from memplayer.domain.constants import MAX_DIFFICULTY, MIN_DIFFICULTY, MIN_STABILITY
from memplayer.domain.errors import InvalidRatingError


class CardState(IntEnum):
    NEW = 0
    LEARNING = 1
    REVIEW = 2
    RELEARNING = 3


class Rating(IntEnum):
    AGAIN = 1
    HARD = 2
    GOOD = 3
    EASY = 4

    @classmethod
    def parse(cls, value: Any) -> "Rating":
        """Coerce a caller-supplied rating, rejecting anything outside 1..4."""
        if isinstance(value, Rating):
            return value
        if isinstance(value, bool) or not isinstance(value, (int, str)):
            raise InvalidRatingError(f"Rating must be an integer 1..4, got {value!r}")
        try:
            return cls(int(value))
        except ValueError as e:
            raise InvalidRatingError(f"Rating must be an integer 1..4, got {value!r}") from e


class BlockType(str, Enum):
    FRONTMATTER = "frontmatter"
    HEADING = "heading"
    PARAGRAPH = "paragraph"
    LIST = "list"
    BLOCKQUOTE = "blockquote"
    CODE = "code"
    MATH = "math"
    TABLE = "table"
    THEMATIC_BREAK = "thematic_break"


class CardKey(NamedTuple):
    """Stable card identity and remote conflict key."""

    note_id: str
    cloze_index: int


@dataclass(frozen=True)
class Block:
    """
    A structural unit of a note.

    Attributes:
        id: Positional id, "block-<index>-<hash prefix>".
        hash: Digest of raw_content; equal hashes mean identical content.
        start/end: Character offsets of raw_content inside the note text.
        line_range: 1-based inclusive (first, last) line numbers.
    """

    id: str
    type: BlockType
    hash: str
    raw_content: str
    start: int
    end: int
    line_range: tuple[int, int]
    heading_level: int | None = None
    heading_id: str | None = None


@dataclass(frozen=True)
class Cloze:
    """One well-formed `{{cN::answer::hint}}` span in the note text."""

    id: int
    occurrence_index: int
    answer: str
    hint: str | None
    start: int
    end: int

    @property
    def original(self) -> str:
        hint = f"::{self.hint}" if self.hint is not None else ""
        return f"{{{{c{self.id}::{self.answer}{hint}}}}}"


@dataclass(frozen=True)
class UnclosedSpan:
    index: int
    cloze_id: int | None = None


@dataclass(frozen=True)
class MalformedSpan:
    start: int
    end: int
    inner_text: str
    reason: str


@dataclass(frozen=True)
class Note:
    id: str
    filepath: str
    raw: str
    content_hash: str
    frontmatter: dict[str, Any]
    title: str
    tags: tuple[str, ...]
    hints: tuple[str, ...]
    blocks: tuple[Block, ...]
    clozes: tuple[Cloze, ...]
    unclosed: tuple[UnclosedSpan, ...] = ()
    malformed: tuple[MalformedSpan, ...] = ()
    frontmatter_error: str | None = None

    @property
    def cloze_ids(self) -> list[int]:
        return sorted({c.id for c in self.clozes})

    def occurrences(self, cloze_id: int) -> list[Cloze]:
        return [c for c in self.clozes if c.id == cloze_id]


def _is_aware(moment: Any) -> bool:
    return isinstance(moment, datetime) and moment.utcoffset() is not None


@dataclass(frozen=True)
class Card:
    """
    One schedulable unit, identified by (note_id, cloze_index).

    Scheduling fields are only ever produced by the scheduler or loaded from
    storage. Display fields are refreshed from the note text on re-extraction.
    """

    note_id: str
    cloze_index: int
    due: datetime
    state: CardState = CardState.NEW
    stability: float = 0.0
    difficulty: float = 0.0
    elapsed_days: int = 0
    scheduled_days: int = 0
    reps: int = 0
    lapses: int = 0
    last_review: datetime | None = None
    suspended: bool = False

    # Derived from the note text
    answer_text: str = ""
    hint: str | None = None
    occurrence_count: int = 0
    section_path: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    orphaned: bool = False

    @property
    def key(self) -> CardKey:
        return CardKey(self.note_id, self.cloze_index)

    @property
    def is_new(self) -> bool:
        return self.reps == 0

    def is_leech(self, threshold: int) -> bool:
        return self.lapses > threshold

    def has_valid_schedule(self) -> bool:
        """False when numeric fields are corrupt and the card must be treated as New."""
        numbers = (self.stability, self.difficulty)
        if any(not isinstance(n, (int, float)) or not math.isfinite(n) for n in numbers):
            return False
        counters = (self.elapsed_days, self.scheduled_days, self.reps, self.lapses)
        if any(not isinstance(c, int) or c < 0 for c in counters):
            return False
        if not _is_aware(self.due):
            return False
        if self.last_review is not None and not _is_aware(self.last_review):
            return False
        if self.state is CardState.NEW:
            return self.stability >= 0 and self.difficulty >= 0
        return self.stability >= MIN_STABILITY and MIN_DIFFICULTY <= self.difficulty <= MAX_DIFFICULTY


@dataclass(frozen=True)
class ReviewLog:
    """
    Append-only record of one grading event.

    Holds the card's snapshot from *before* the review plus the rating.
    """

    note_id: str
    cloze_index: int
    rating: Rating
    state: CardState
    due: datetime
    stability: float
    difficulty: float
    elapsed_days: int
    scheduled_days: int
    reviewed_at: datetime

    @property
    def card_key(self) -> CardKey:
        return CardKey(self.note_id, self.cloze_index)


@dataclass(frozen=True)
class ReviewOutcome:
    card: Card
    log: ReviewLog
    leech: bool = False


@dataclass(frozen=True)
class QueueItem:
    note_id: str
    filepath: str
    cloze_index: int
    due: datetime

    @property
    def card_key(self) -> CardKey:
        return CardKey(self.note_id, self.cloze_index)


@dataclass(frozen=True)
class ReviewQueue:
    new: tuple[QueueItem, ...] = ()
    today: tuple[QueueItem, ...] = ()
    overdue: tuple[QueueItem, ...] = ()
    future: tuple[QueueItem, ...] = ()
    suspended: tuple[QueueItem, ...] = ()

    def counts(self) -> dict[str, int]:
        return {
            "new": len(self.new),
            "today": len(self.today),
            "overdue": len(self.overdue),
            "future": len(self.future),
            "suspended": len(self.suspended),
        }


@dataclass
class SyncState:
    """Per-note bookkeeping for reconciliation with the remote store."""

    content_hash: str = ""
    last_sync_at: datetime | None = None
    pending: bool = False
    synced_hash: str | None = None
    deleted: bool = False  # file gone; while pending, a tombstone still has to reach the remote
    remote_deleted: bool = False  # remote row is flagged is_deleted


@dataclass(frozen=True)
class SyncResult:
    note_id: str
    updated: int = 0
    failed: int = 0
    skipped: bool = False
    deleted: bool = False  # the result of pushing a tombstone
    discarded: bool = False  # finished after cancel(); not applied locally
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.failed == 0


@dataclass
class BulkSyncResult:
    retried_count: int = 0
    error_count: int = 0
    results: list[SyncResult] = field(default_factory=list)

    def summary(self) -> str:
        return f"{self.retried_count} synced, {self.error_count} failed"
