"""
Queue builder for review sessions.

Partitions cards into five disjoint sets relative to the calendar day of
`now`:
1. new: never reviewed (reps == 0), whatever their due date
2. overdue: due before today started
3. today: due at any time today
4. future: due tomorrow or later
5. suspended: held out of review whatever their state or due date

Queue membership is recomputed on every build and never persisted.
"""

import logging
from collections.abc import Iterable, Mapping
from datetime import date, datetime, time, timedelta

from memplayer.domain.constants import DEFAULT_FORECAST_DAYS
from memplayer.domain.models import Card, QueueItem, ReviewQueue

logger = logging.getLogger(__name__)


def start_of_day(now: datetime) -> datetime:
    """Midnight of `now`'s calendar day, in `now`'s own timezone."""
    return datetime.combine(now.date(), time.min, tzinfo=now.tzinfo)


def _local_date(moment: datetime, now: datetime) -> date:
    if moment.tzinfo is not None and now.tzinfo is not None:
        return moment.astimezone(now.tzinfo).date()
    return moment.date()


def _sort_key(item: QueueItem):
    # Ties on due are broken by identity so identical inputs give identical order
    return (item.due, item.note_id, item.cloze_index)


def build_queue(
    cards: Iterable[Card],
    now: datetime,
    filepaths: Mapping[str, str] | None = None,
) -> ReviewQueue:
    """
    Partition cards into new / today / overdue / future, with suspended cards set aside.

    Args:
        cards: Cards to partition; every card lands in exactly one bucket.
        now: Reference time; day boundaries use its timezone.
        filepaths: Optional note_id -> filepath map for the queue items.
    """
    filepaths = filepaths or {}
    today_start = start_of_day(now)
    tomorrow_start = today_start + timedelta(days=1)

    buckets: dict[str, list[QueueItem]] = {"new": [], "today": [], "overdue": [], "future": [], "suspended": []}
    for card in cards:
        item = QueueItem(
            note_id=card.note_id,
            filepath=filepaths.get(card.note_id, ""),
            cloze_index=card.cloze_index,
            due=card.due,
        )
        if card.suspended:
            buckets["suspended"].append(item)
        elif card.is_new:
            buckets["new"].append(item)
        elif card.due < today_start:
            buckets["overdue"].append(item)
        elif card.due < tomorrow_start:
            buckets["today"].append(item)
        else:
            buckets["future"].append(item)

    queue = ReviewQueue(**{name: tuple(sorted(items, key=_sort_key)) for name, items in buckets.items()})
    logger.debug(f"Built queue: {queue.counts()}")
    return queue


def build_forecast(
    cards: Iterable[Card], now: datetime, days: int = DEFAULT_FORECAST_DAYS
) -> dict[str, int]:
    """
    Count reviews per calendar day for the next `days` days.

    Keys are ISO dates starting with today. Today's bucket also holds every
    overdue card. New and suspended cards are not counted.
    """
    if days < 1:
        raise ValueError(f"days must be at least 1, got {days}")

    today = now.date()
    forecast = {(today + timedelta(days=i)).isoformat(): 0 for i in range(days)}
    today_key = today.isoformat()

    for card in cards:
        if card.is_new or card.suspended:
            continue
        due_day = _local_date(card.due, now)
        if due_day <= today:
            forecast[today_key] += 1
        elif due_day.isoformat() in forecast:
            forecast[due_day.isoformat()] += 1
    return forecast


def select_session(
    queue: ReviewQueue, new_limit: int, review_limit: int
) -> list[QueueItem]:
    """
    Pick today's session: overdue first, then today's reviews, then new cards.

    Reviews are capped at `review_limit` and new cards at `new_limit`.
    """
    reviews = [*queue.overdue, *queue.today][: max(review_limit, 0)]
    new = list(queue.new[: max(new_limit, 0)])
    return reviews + new
