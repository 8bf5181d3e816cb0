"""
Card extraction and re-extraction.

Every distinct cloze id in a note is exactly one Card, however many spans
share it. Re-extraction after an edit never touches scheduling fields of
known ids and never drops a card whose id vanished from the text: such a
card is kept and flagged as orphaned until the user deletes it explicitly.
"""

import bisect
import logging
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime

from memplayer.application.scheduler import create_empty_card
from memplayer.domain.constants import OCCURRENCE_WARNING_THRESHOLD
from memplayer.domain.models import BlockType, Card, Cloze, Note

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExtractionReport:
    """Non-blocking integrity findings for one note."""

    note_id: str
    card_count: int
    missing_ids: tuple[int, ...] = ()
    overused_ids: dict[int, int] | None = None
    unclosed_count: int = 0
    malformed_count: int = 0

    @property
    def has_warnings(self) -> bool:
        return bool(
            self.missing_ids or self.overused_ids or self.unclosed_count or self.malformed_count
        )


def _section_index(note: Note) -> tuple[list[int], list[tuple[str, ...]]]:
    """Block start offsets paired with the heading slug chain in effect there."""
    starts: list[int] = []
    paths: list[tuple[str, ...]] = []
    stack: list[tuple[int, str]] = []
    for block in note.blocks:
        if block.type is BlockType.HEADING and block.heading_level:
            while stack and stack[-1][0] >= block.heading_level:
                stack.pop()
            if block.heading_id:
                stack.append((block.heading_level, block.heading_id))
        starts.append(block.start)
        paths.append(tuple(slug for _, slug in stack))
    return starts, paths


def _group(note: Note) -> dict[int, list[Cloze]]:
    groups: dict[int, list[Cloze]] = defaultdict(list)
    for cloze in note.clozes:
        groups[cloze.id].append(cloze)
    return dict(sorted(groups.items()))


def _display_fields(note: Note, occurrences: list[Cloze], starts, paths) -> dict:
    first = occurrences[0]
    pos = bisect.bisect_right(starts, first.start) - 1
    hint = next((c.hint for c in occurrences if c.hint), None)
    return {
        "answer_text": first.answer,
        "hint": hint,
        "occurrence_count": len(occurrences),
        "section_path": paths[pos] if pos >= 0 else (),
        "tags": note.tags,
        "orphaned": False,
    }


def extract_cards(note: Note, now: datetime) -> list[Card]:
    """One New card per distinct cloze id, ordered by id."""
    starts, paths = _section_index(note)
    return [
        replace(create_empty_card(note.id, cloze_id, now), **_display_fields(note, occ, starts, paths))
        for cloze_id, occ in _group(note).items()
    ]


def reconcile_cards(previous: list[Card], note: Note, now: datetime) -> list[Card]:
    """
    Re-extract cards after an edit, preserving scheduling state.

    Known ids keep every scheduling field and only get their display fields
    refreshed. New ids become New cards. Known ids no longer in the text are
    returned with `orphaned=True`.
    """
    known = {c.cloze_index: c for c in previous if c.note_id == note.id}
    starts, paths = _section_index(note)
    groups = _group(note)

    cards: list[Card] = []
    for cloze_id, occ in groups.items():
        base = known.get(cloze_id) or create_empty_card(note.id, cloze_id, now)
        cards.append(replace(base, **_display_fields(note, occ, starts, paths)))

    orphans = [c for idx, c in known.items() if idx not in groups]
    for card in orphans:
        if not card.orphaned:
            logger.info(f"Card c{card.cloze_index} of {note.id} no longer occurs in the note; kept")
        cards.append(replace(card, orphaned=True, occurrence_count=0))

    return sorted(cards, key=lambda c: c.cloze_index)


def find_missing_ids(note: Note) -> list[int]:
    """Ids in 1..max (counting unclosed openings) with no valid occurrence."""
    present = {c.id for c in note.clozes}
    ids = list(present) + [u.cloze_id for u in note.unclosed if u.cloze_id]
    return [i for i in range(1, max(ids, default=0) + 1) if i not in present]


def find_overused_ids(note: Note, threshold: int = OCCURRENCE_WARNING_THRESHOLD) -> dict[int, int]:
    return {
        cloze_id: len(occ) for cloze_id, occ in _group(note).items() if len(occ) > threshold
    }


def build_report(note: Note, threshold: int = OCCURRENCE_WARNING_THRESHOLD) -> ExtractionReport:
    report = ExtractionReport(
        note_id=note.id,
        card_count=len(note.cloze_ids),
        missing_ids=tuple(find_missing_ids(note)),
        overused_ids=find_overused_ids(note, threshold) or None,
        unclosed_count=len(note.unclosed),
        malformed_count=len(note.malformed),
    )
    if report.missing_ids:
        logger.info(f"{note.filepath or note.id}: missing cloze id(s) {list(report.missing_ids)}")
    return report
