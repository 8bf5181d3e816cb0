"""
Spaced-repetition scheduling on the FSRS-4.5 memory model.

Grading is a pure function of (card, rating, now): no fuzz, no clock reads,
no shared state. The memory model itself only has to honour three contracts:
stability never drops on a successful review, difficulty goes up on Again and
down on Easy (within bounds), and stability stays strictly positive.
"""

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from memplayer.domain.constants import (
    DECAY,
    DEFAULT_WEIGHTS,
    FACTOR,
    LEARNING_STEPS_MINUTES,
    LEECH_THRESHOLD,
    MAX_DIFFICULTY,
    MAXIMUM_INTERVAL,
    MIN_DIFFICULTY,
    MIN_STABILITY,
    RELEARNING_STEP_MINUTES,
    REQUEST_RETENTION,
)
from memplayer.domain.models import Card, CardState, Rating, ReviewLog, ReviewOutcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SchedulerParams:
    weights: tuple[float, ...] = DEFAULT_WEIGHTS
    request_retention: float = REQUEST_RETENTION
    maximum_interval: int = MAXIMUM_INTERVAL
    learning_steps: tuple[int, ...] = LEARNING_STEPS_MINUTES
    relearning_step: int = RELEARNING_STEP_MINUTES
    leech_threshold: int = LEECH_THRESHOLD

    def __post_init__(self):
        if len(self.weights) != len(DEFAULT_WEIGHTS):
            raise ValueError(f"Expected {len(DEFAULT_WEIGHTS)} weights, got {len(self.weights)}")
        if not 0 < self.request_retention < 1:
            raise ValueError(f"request_retention must be in (0, 1), got {self.request_retention}")
        if self.maximum_interval < 1:
            raise ValueError("maximum_interval must be at least 1 day")
        if len(self.learning_steps) != 3:
            raise ValueError("learning_steps needs exactly three entries (again, hard, good)")


def create_empty_card(note_id: str, cloze_index: int, now: datetime) -> Card:
    """A fresh New card, due immediately."""
    return Card(note_id=note_id, cloze_index=cloze_index, due=now)


def reset_card(card: Card, now: datetime) -> Card:
    """Forget all progress but keep the card's identity, display fields and suspension."""
    empty = create_empty_card(card.note_id, card.cloze_index, now)
    return replace(
        card,
        state=empty.state,
        due=empty.due,
        stability=empty.stability,
        difficulty=empty.difficulty,
        elapsed_days=0,
        scheduled_days=0,
        reps=0,
        lapses=0,
        last_review=None,
    )


def _clamp_difficulty(d: float) -> float:
    return min(max(d, MIN_DIFFICULTY), MAX_DIFFICULTY)


def _clamp_stability(s: float) -> float:
    return max(s, MIN_STABILITY)


class Scheduler:
    def __init__(self, params: SchedulerParams | None = None):
        self.params = params or SchedulerParams()
        self.w = self.params.weights

    # ---------- Memory model ----------

    def forgetting_curve(self, elapsed_days: float, stability: float) -> float:
        return (1 + FACTOR * elapsed_days / stability) ** DECAY

    def init_stability(self, rating: Rating) -> float:
        return _clamp_stability(self.w[rating - 1])

    def init_difficulty(self, rating: Rating) -> float:
        return _clamp_difficulty(self.w[4] - (rating - 3) * self.w[5])

    def next_difficulty(self, difficulty: float, rating: Rating) -> float:
        next_d = difficulty - self.w[6] * (rating - 3)
        # Mean reversion towards the Easy initial difficulty
        reverted = self.w[7] * self.init_difficulty(Rating.EASY) + (1 - self.w[7]) * next_d
        return _clamp_difficulty(reverted)

    def next_recall_stability(
        self, difficulty: float, stability: float, r: float, rating: Rating
    ) -> float:
        hard_penalty = self.w[15] if rating == Rating.HARD else 1.0
        easy_bonus = self.w[16] if rating == Rating.EASY else 1.0
        growth = (
            math.exp(self.w[8])
            * (11 - difficulty)
            * stability ** (-self.w[9])
            * (math.exp((1 - r) * self.w[10]) - 1)
            * hard_penalty
            * easy_bonus
        )
        return _clamp_stability(stability * (1 + max(growth, 0.0)))

    def next_forget_stability(self, difficulty: float, stability: float, r: float) -> float:
        forgotten = (
            self.w[11]
            * difficulty ** (-self.w[12])
            * ((stability + 1) ** self.w[13] - 1)
            * math.exp((1 - r) * self.w[14])
        )
        return _clamp_stability(min(stability, forgotten))

    def next_interval(self, stability: float) -> int:
        r = self.params.request_retention
        interval = stability / FACTOR * (r ** (1 / DECAY) - 1)
        return min(max(round(interval), 1), self.params.maximum_interval)

    # ---------- Public API ----------

    def retrievability(self, card: Card, now: datetime) -> float:
        """Estimated recall probability at `now`; 0.0 for cards never reviewed."""
        if card.state is CardState.NEW or card.last_review is None or card.stability <= 0:
            return 0.0
        elapsed = max((now - card.last_review).total_seconds() / 86400, 0.0)
        return self.forgetting_curve(elapsed, card.stability)

    def reset(self, card: Card, now: datetime) -> Card:
        return reset_card(card, now)

    def preview(self, card: Card, now: datetime) -> dict[Rating, ReviewOutcome]:
        return {rating: self.grade(card, rating, now) for rating in Rating}

    def grade(self, card: Card, rating, now: datetime) -> ReviewOutcome:
        """
        Apply one review and return the updated card plus its review log.

        Raises:
            InvalidRatingError: rating is not 1..4.
        """
        rating = Rating.parse(rating)

        if not card.has_valid_schedule():
            logger.warning(
                f"Corrupt scheduling data on {card.note_id} c{card.cloze_index}, "
                "grading as a new card"
            )
            card = self.reset(card, now)

        elapsed_days = 0
        if card.state is not CardState.NEW and card.last_review is not None:
            elapsed_days = max((now - card.last_review).days, 0)

        log = ReviewLog(
            note_id=card.note_id,
            cloze_index=card.cloze_index,
            rating=rating,
            state=card.state,
            due=card.due,
            stability=card.stability,
            difficulty=card.difficulty,
            elapsed_days=elapsed_days,
            scheduled_days=card.scheduled_days,
            reviewed_at=now,
        )

        if card.state is CardState.NEW:
            state, stability, difficulty, delay, days = self._from_new(rating)
        else:
            r = self.forgetting_curve(elapsed_days, card.stability)
            difficulty = self.next_difficulty(card.difficulty, rating)
            if rating == Rating.AGAIN:
                stability = self.next_forget_stability(difficulty, card.stability, r)
            else:
                stability = self.next_recall_stability(difficulty, card.stability, r, rating)

            if card.state is CardState.REVIEW:
                state, delay, days = self._from_review(card, rating, r)
            else:
                state, delay, days = self._from_learning(card, rating, r)

        lapses = card.lapses + (
            1 if rating == Rating.AGAIN and card.state is CardState.REVIEW else 0
        )
        due = now + (timedelta(days=days) if days else timedelta(minutes=delay))
        updated = replace(
            card,
            state=state,
            due=due,
            stability=stability,
            difficulty=difficulty,
            elapsed_days=elapsed_days,
            scheduled_days=days,
            reps=card.reps + 1,
            lapses=lapses,
            last_review=now,
        )

        leech = updated.is_leech(self.params.leech_threshold)
        if leech and lapses != card.lapses:
            logger.info(f"Card {card.note_id} c{card.cloze_index} is a leech ({lapses} lapses)")
        return ReviewOutcome(card=updated, log=log, leech=leech)

    # ---------- Transitions ----------

    def _from_new(self, rating: Rating) -> tuple[CardState, float, float, int, int]:
        """Returns (state, stability, difficulty, delay minutes, scheduled days)."""
        stability = self.init_stability(rating)
        difficulty = self.init_difficulty(rating)
        if rating == Rating.EASY:
            return CardState.REVIEW, stability, difficulty, 0, self.next_interval(stability)
        step = self.params.learning_steps[rating - 1]
        return CardState.LEARNING, stability, difficulty, step, 0

    def _raw_interval(self, card: Card, r: float, rating: Rating) -> int:
        difficulty = self.next_difficulty(card.difficulty, rating)
        return self.next_interval(self.next_recall_stability(difficulty, card.stability, r, rating))

    def _from_learning(self, card: Card, rating: Rating, r: float) -> tuple[CardState, int, int]:
        if rating == Rating.AGAIN:
            return card.state, self.params.relearning_step, 0
        if rating == Rating.HARD:
            return card.state, self.params.learning_steps[2], 0
        good = self._raw_interval(card, r, Rating.GOOD)
        if rating == Rating.GOOD:
            return CardState.REVIEW, 0, good
        easy = max(self._raw_interval(card, r, Rating.EASY), good + 1)
        return CardState.REVIEW, 0, min(easy, self.params.maximum_interval)

    def _from_review(self, card: Card, rating: Rating, r: float) -> tuple[CardState, int, int]:
        if rating == Rating.AGAIN:
            return CardState.RELEARNING, self.params.relearning_step, 0

        # Keep intervals ordered hard < good < easy
        hard = self._raw_interval(card, r, Rating.HARD)
        good = self._raw_interval(card, r, Rating.GOOD)
        hard = min(hard, good)
        good = max(good, hard + 1)
        easy = max(self._raw_interval(card, r, Rating.EASY), good + 1)
        interval = {Rating.HARD: hard, Rating.GOOD: good, Rating.EASY: easy}[rating]
        return CardState.REVIEW, 0, min(interval, self.params.maximum_interval)
