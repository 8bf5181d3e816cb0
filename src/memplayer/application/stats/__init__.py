# Application Stats Package
from .metrics_calculator import EnrichedCard, MetricsCalculator
from .service import (
    SectionSummary,
    StatsService,
    VaultHealth,
    review_counts_by_day,
    summarize_sections,
    vault_health,
)

__all__ = [
    "MetricsCalculator",
    "EnrichedCard",
    "StatsService",
    "SectionSummary",
    "VaultHealth",
    "review_counts_by_day",
    "summarize_sections",
    "vault_health",
]
