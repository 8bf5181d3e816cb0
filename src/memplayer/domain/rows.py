"""
Wire shapes exchanged with the remote store and the local state file.

This is the serialization boundary: `CardState` and `Rating` become plain
integers here and timestamps become ISO-8601 strings.
"""

import logging
from dataclasses import replace
from datetime import datetime

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, ValidationError, model_validator

from memplayer.domain.constants import MIN_STABILITY
from memplayer.domain.models import Card, CardState, Note, Rating, ReviewLog

logger = logging.getLogger(__name__)


class NoteRow(BaseModel):
    id: str
    relative_path: str
    title: str = ""
    tags: list[str] = Field(default_factory=list)
    content_hash: str | None  # None until the note's cards are written
    is_deleted: bool = False
    last_sync_at: AwareDatetime | None = None


class CardContentRow(BaseModel):
    """Content-derived card fields. Scheduling fields cannot be set here."""

    model_config = ConfigDict(extra="forbid")

    note_id: str
    cloze_index: int
    answer_text: str
    section_path: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)


class CardStateRow(BaseModel):
    model_config = ConfigDict(extra="ignore", allow_inf_nan=False)

    id: str | None = None  # remote row id
    note_id: str
    cloze_index: int = Field(ge=1)
    state: int = Field(ge=0, le=3)
    due: AwareDatetime
    stability: float = Field(ge=0)
    difficulty: float = Field(ge=0)
    elapsed_days: int = Field(default=0, ge=0)
    scheduled_days: int = Field(default=0, ge=0)
    reps: int = Field(default=0, ge=0)
    lapses: int = Field(default=0, ge=0)
    last_review: AwareDatetime | None = None
    is_suspended: bool = False

    @model_validator(mode="after")
    def reviewed_cards_keep_min_stability(self) -> "CardStateRow":
        if self.state != 0 and self.stability < MIN_STABILITY:
            raise ValueError(f"stability {self.stability} below {MIN_STABILITY} on a reviewed card")
        return self


class ReviewLogRow(BaseModel):
    note_id: str
    cloze_index: int
    grade: int = Field(ge=1, le=4)
    state: int = Field(ge=0, le=3)
    due: AwareDatetime
    stability: float
    difficulty: float
    elapsed_days: int = 0
    scheduled_days: int = 0
    reviewed_at: AwareDatetime


def note_to_row(note: Note, last_sync_at: datetime | None = None, placeholder: bool = False) -> NoteRow:
    """A placeholder row carries no hash, so it never marks the note as synced."""
    return NoteRow(
        id=note.id,
        relative_path=note.filepath,
        title=note.title,
        tags=list(note.tags),
        content_hash=None if placeholder else note.content_hash,
        last_sync_at=last_sync_at,
    )


def card_to_content_row(card: Card) -> CardContentRow:
    return CardContentRow(
        note_id=card.note_id,
        cloze_index=card.cloze_index,
        answer_text=card.answer_text,
        section_path=list(card.section_path),
        tags=list(card.tags),
    )


def card_to_state_row(card: Card, remote_id: str | None = None) -> CardStateRow:
    return CardStateRow(
        id=remote_id,
        note_id=card.note_id,
        cloze_index=card.cloze_index,
        state=int(card.state),
        due=card.due,
        stability=card.stability,
        difficulty=card.difficulty,
        elapsed_days=card.elapsed_days,
        scheduled_days=card.scheduled_days,
        reps=card.reps,
        lapses=card.lapses,
        last_review=card.last_review,
        is_suspended=card.suspended,
    )


def apply_state_row(card: Card, row: CardStateRow) -> Card:
    """Overlay stored scheduling fields onto a card, keeping its display fields."""
    return replace(
        card,
        state=CardState(row.state),
        due=row.due,
        stability=row.stability,
        difficulty=row.difficulty,
        elapsed_days=row.elapsed_days,
        scheduled_days=row.scheduled_days,
        reps=row.reps,
        lapses=row.lapses,
        last_review=row.last_review,
        suspended=row.is_suspended,
    )


def card_from_payload(payload: dict, base: Card) -> Card:
    """
    Build a card from an untrusted stored payload.

    A payload that fails validation leaves `base` (normally a fresh New card)
    untouched instead of failing the whole load.
    """
    try:
        row = CardStateRow.model_validate(payload)
    except ValidationError as e:
        logger.warning(
            f"Corrupt scheduling data for {base.note_id} c{base.cloze_index}, "
            f"treating as new: {e.error_count()} error(s)"
        )
        return base
    card = apply_state_row(base, row)
    if not card.has_valid_schedule():
        logger.warning(
            f"Inconsistent scheduling data for {base.note_id} c{base.cloze_index}, "
            "treating as new"
        )
        return base
    return card


def log_to_row(log: ReviewLog) -> ReviewLogRow:
    return ReviewLogRow(
        note_id=log.note_id,
        cloze_index=log.cloze_index,
        grade=int(log.rating),
        state=int(log.state),
        due=log.due,
        stability=log.stability,
        difficulty=log.difficulty,
        elapsed_days=log.elapsed_days,
        scheduled_days=log.scheduled_days,
        reviewed_at=log.reviewed_at,
    )


def log_from_row(row: ReviewLogRow) -> ReviewLog:
    return ReviewLog(
        note_id=row.note_id,
        cloze_index=row.cloze_index,
        rating=Rating(row.grade),
        state=CardState(row.state),
        due=row.due,
        stability=row.stability,
        difficulty=row.difficulty,
        elapsed_days=row.elapsed_days,
        scheduled_days=row.scheduled_days,
        reviewed_at=row.reviewed_at,
    )
