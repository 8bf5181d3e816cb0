from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from memplayer.application.queue_builder import (
    build_forecast,
    build_queue,
    select_session,
    start_of_day,
)
from memplayer.application.scheduler import create_empty_card
from memplayer.domain.models import CardState


def _reviewed(note_id, index, due):
    card = create_empty_card(note_id, index, due)
    return replace(card, state=CardState.REVIEW, stability=3.0, difficulty=5.0, reps=2)


@pytest.fixture
def cards(now):
    return [
        create_empty_card("a", 1, now),
        _reviewed("a", 2, now - timedelta(days=3)),  # overdue
        _reviewed("b", 1, now + timedelta(hours=2)),  # today
        _reviewed("b", 2, start_of_day(now)),  # today, at midnight
        _reviewed("c", 1, now + timedelta(days=2)),  # future
    ]


def test_start_of_day_keeps_timezone(now):
    assert start_of_day(now) == datetime(2024, 3, 1, tzinfo=timezone.utc)


def test_every_card_lands_in_exactly_one_bucket(cards, now):
    queue = build_queue(cards, now)
    assert queue.counts() == {"new": 1, "today": 2, "overdue": 1, "future": 1, "suspended": 0}
    keys = [i.card_key for bucket in (queue.new, queue.today, queue.overdue, queue.future) for i in bucket]
    assert sorted(keys) == sorted(c.key for c in cards)


def test_suspended_cards_are_set_aside(cards, now):
    held = [replace(c, suspended=True) for c in cards[:2]]
    queue = build_queue([*held, *cards[2:]], now)
    assert queue.counts() == {"new": 0, "today": 2, "overdue": 0, "future": 1, "suspended": 2}
    assert [i.card_key for i in queue.suspended] == [c.key for c in sorted(held, key=lambda c: c.due)]
    assert select_session(queue, new_limit=10, review_limit=10) == [*queue.today]
    forecast = build_forecast([*held, *cards[2:]], now, days=3)
    assert sum(forecast.values()) == 3


def test_new_card_with_past_due_is_still_new(now):
    card = create_empty_card("a", 1, now - timedelta(days=30))
    queue = build_queue([card], now)
    assert len(queue.new) == 1
    assert not queue.overdue


def test_queue_is_sorted_by_due_then_identity(now):
    due = now + timedelta(hours=1)
    queue = build_queue([_reviewed("z", 1, due), _reviewed("a", 2, due), _reviewed("a", 1, due)], now)
    assert [(i.note_id, i.cloze_index) for i in queue.today] == [("a", 1), ("a", 2), ("z", 1)]


def test_filepaths_are_attached(cards, now):
    queue = build_queue(cards, now, {"a": "notes/a.md"})
    assert queue.new[0].filepath == "notes/a.md"
    assert queue.future[0].filepath == ""


def test_forecast_buckets(cards, now):
    forecast = build_forecast(cards, now, days=3)
    assert list(forecast) == ["2024-03-01", "2024-03-02", "2024-03-03"]
    # Overdue rolls into today; the new card is not counted
    assert forecast == {"2024-03-01": 3, "2024-03-02": 0, "2024-03-03": 1}


def test_forecast_ignores_cards_past_window(cards, now):
    assert sum(build_forecast(cards, now, days=1).values()) == 3


def test_forecast_rejects_zero_days(now):
    with pytest.raises(ValueError):
        build_forecast([], now, days=0)


def test_select_session_order_and_limits(cards, now):
    queue = build_queue(cards, now)
    session = select_session(queue, new_limit=1, review_limit=2)
    assert [i.card_key for i in session] == [("a", 2), ("b", 2), ("a", 1)]

    assert select_session(queue, new_limit=0, review_limit=0) == []
