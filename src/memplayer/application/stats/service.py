"""
Stats Service: application layer orchestrator for vault statistics.

Aggregates card state into health counts and per-section difficulty, and
review logs into per-day activity.
"""

import logging
from collections import Counter, defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

from memplayer.application.vault_service import VaultService
from memplayer.domain.constants import LEECH_THRESHOLD
from memplayer.domain.interfaces import RemoteStore
from memplayer.domain.models import Card, CardState, ReviewLog
from memplayer.domain.rows import log_from_row

from .metrics_calculator import EnrichedCard, MetricsCalculator

logger = logging.getLogger(__name__)

UNSECTIONED = "(no section)"


@dataclass(frozen=True)
class SectionSummary:
    section: str
    card_count: int
    mean_difficulty: float | None  # over reviewed cards only
    leech_count: int


@dataclass(frozen=True)
class VaultHealth:
    total: int = 0
    new: int = 0
    learning: int = 0
    review: int = 0
    relearning: int = 0
    leeches: int = 0
    orphaned: int = 0


def summarize_sections(
    cards: Iterable[Card], leech_threshold: int = LEECH_THRESHOLD
) -> list[SectionSummary]:
    """Per top-level section: card count, mean difficulty and leech count."""
    groups: dict[str, list[Card]] = defaultdict(list)
    for card in cards:
        groups[card.section_path[0] if card.section_path else UNSECTIONED].append(card)

    summaries = []
    for section, members in sorted(groups.items()):
        reviewed = [c.difficulty for c in members if not c.is_new]
        summaries.append(
            SectionSummary(
                section=section,
                card_count=len(members),
                mean_difficulty=sum(reviewed) / len(reviewed) if reviewed else None,
                leech_count=sum(1 for c in members if c.is_leech(leech_threshold)),
            )
        )
    return summaries


def vault_health(cards: Iterable[Card], leech_threshold: int = LEECH_THRESHOLD) -> VaultHealth:
    cards = list(cards)
    states = Counter(c.state for c in cards if not c.orphaned)
    return VaultHealth(
        total=sum(1 for c in cards if not c.orphaned),
        new=states[CardState.NEW],
        learning=states[CardState.LEARNING],
        review=states[CardState.REVIEW],
        relearning=states[CardState.RELEARNING],
        leeches=sum(1 for c in cards if not c.orphaned and c.is_leech(leech_threshold)),
        orphaned=sum(1 for c in cards if c.orphaned),
    )


def review_counts_by_day(logs: Iterable[ReviewLog]) -> dict[str, int]:
    """Number of reviews per ISO calendar date, in date order."""
    counts = Counter(log.reviewed_at.date().isoformat() for log in logs)
    return dict(sorted(counts.items()))


class StatsService:
    """
    Application service for vault statistics.

    Reads cards from the vault service; review history comes from the remote
    store when one is given, else from the locally recorded logs.
    """

    def __init__(
        self,
        vault: VaultService,
        store: RemoteStore | None = None,
        calculator: MetricsCalculator | None = None,
    ):
        self._vault = vault
        self._store = store
        self._calc = calculator or MetricsCalculator()

    def health(self) -> VaultHealth:
        return vault_health(self._vault.cards(include_orphaned=True), self._calc.leech_threshold)

    def sections(self) -> list[SectionSummary]:
        return summarize_sections(self._vault.cards(), self._calc.leech_threshold)

    def enriched(self, now: datetime) -> list[EnrichedCard]:
        return [self._calc.enrich(card, now) for card in self._vault.cards()]

    def leeches(self, now: datetime) -> list[EnrichedCard]:
        return [card for card in self.enriched(now) if card.is_leech]

    async def activity(self, now: datetime, days: int = 30) -> dict[str, int]:
        """Reviews per day over the last `days` days."""
        start = now - timedelta(days=days)
        if self._store is not None:
            rows = await self._store.get_review_history(start, now)
            logs = [log_from_row(row) for row in rows]
        else:
            logs = [log for log in self._vault.logs if start <= log.reviewed_at <= now]
        logger.debug(f"Activity over {days} day(s): {len(logs)} review(s)")
        return review_counts_by_day(logs)
