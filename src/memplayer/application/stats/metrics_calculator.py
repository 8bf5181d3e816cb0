"""
Metrics calculator for deriving insights from card scheduling state.

This is a pure computation module with no I/O.
"""

from dataclasses import dataclass
from datetime import datetime

from memplayer.application.scheduler import Scheduler
from memplayer.domain.constants import LEECH_THRESHOLD
from memplayer.domain.models import Card, CardState


@dataclass
class EnrichedCard:
    """
    Card scheduling state enriched with computed metrics.
    """

    note_id: str
    cloze_index: int
    state: CardState
    section_path: tuple[str, ...]
    reps: int
    lapses: int
    stability: float
    difficulty: float

    # Computed metrics
    current_retrievability: float | None
    lapse_rate: float | None  # lapses / reps
    days_overdue: int | None  # Negative if not yet due
    is_leech: bool


class MetricsCalculator:
    """
    Computes derived metrics from Card objects.

    Stateless and side-effect free: `now` is always passed in.
    """

    def __init__(self, scheduler: Scheduler | None = None, leech_threshold: int = LEECH_THRESHOLD):
        self.scheduler = scheduler or Scheduler()
        self.leech_threshold = leech_threshold

    def enrich(self, card: Card, now: datetime) -> EnrichedCard:
        return EnrichedCard(
            note_id=card.note_id,
            cloze_index=card.cloze_index,
            state=card.state,
            section_path=card.section_path,
            reps=card.reps,
            lapses=card.lapses,
            stability=card.stability,
            difficulty=card.difficulty,
            current_retrievability=self._compute_retrievability(card, now),
            lapse_rate=self._compute_lapse_rate(card),
            days_overdue=self._compute_days_overdue(card, now),
            is_leech=card.is_leech(self.leech_threshold),
        )

    def _compute_retrievability(self, card: Card, now: datetime) -> float | None:
        """
        Current recall probability on the FSRS forgetting curve.

        None for cards that were never reviewed.
        """
        if card.is_new or card.stability <= 0:
            return None
        return self.scheduler.retrievability(card, now)

    def _compute_lapse_rate(self, card: Card) -> float | None:
        if card.reps == 0:
            return None
        return card.lapses / card.reps

    def _compute_days_overdue(self, card: Card, now: datetime) -> int | None:
        """Whole days past due (negative if not yet due); None for new cards."""
        if card.is_new:
            return None
        return (now.date() - card.due.date()).days
