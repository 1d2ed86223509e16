"""Change-frequency heuristic used to order sitemap entries."""

import math
from datetime import datetime
from typing import Optional

from knowledge_ingest.core.config import SitemapOptions, settings
from knowledge_ingest.core.constants import CHANGE_FREQUENCY_WEIGHTS, NEUTRAL_HEURISTIC_SCORE
from knowledge_ingest.core.utils import utcnow
from knowledge_ingest.ingestion.models import SitemapEntry, SitemapIngestionContext


class ChangeFrequencyHeuristic:
    """Scores sitemap entries in [0, 1] for ordering only.

    The score blends a categorical changefreq weight with a recency term
    that halves every ``recency_half_life_days``. A declared priority is
    averaged in when present.
    """

    def __init__(self, options: Optional[SitemapOptions] = None, now: Optional[datetime] = None):
        self.options = options or settings.sitemap
        self._now = now

    def frequency_weight(self, change_frequency: Optional[str]) -> float:
        if not change_frequency:
            return NEUTRAL_HEURISTIC_SCORE
        return CHANGE_FREQUENCY_WEIGHTS.get(change_frequency.strip().lower(), NEUTRAL_HEURISTIC_SCORE)

    def recency_weight(self, last_modified: Optional[datetime], half_life_days: Optional[float] = None) -> float:
        if last_modified is None:
            return NEUTRAL_HEURISTIC_SCORE
        now = self._now or utcnow()
        age_days = (now - last_modified).total_seconds() / 86400
        if age_days <= 0:
            return 1.0
        if half_life_days is None:
            half_life_days = self.options.recency_half_life_days
        half_life = max(half_life_days, 1e-6)
        return math.exp(-math.log(2) * age_days / half_life)

    def calculate_score(self, entry: SitemapEntry, context: Optional[SitemapIngestionContext] = None) -> float:
        options = context.options if context is not None else self.options
        weight = min(1.0, max(0.0, options.change_frequency_weight))

        score = weight * self.frequency_weight(entry.change_frequency)
        score += (1.0 - weight) * self.recency_weight(entry.last_modified, options.recency_half_life_days)
        if entry.priority is not None:
            score = (score + entry.priority) / 2.0
        return min(1.0, max(0.0, score))
