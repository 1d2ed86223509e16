"""Tests for the change-frequency heuristic and entry prioritization."""

from datetime import datetime, timedelta, timezone

import pytest

from knowledge_ingest.core.config import SitemapOptions
from knowledge_ingest.ingestion.crawler import prioritize
from knowledge_ingest.ingestion.heuristics import ChangeFrequencyHeuristic
from knowledge_ingest.ingestion.models import SitemapEntry

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


@pytest.fixture
def heuristic():
    return ChangeFrequencyHeuristic(SitemapOptions(recency_half_life_days=30.0, change_frequency_weight=0.75), now=NOW)


def test_frequency_weights(heuristic):
    """Known frequencies map to fixed weights; unknown ones are neutral."""
    assert heuristic.frequency_weight("always") == 1.0
    assert heuristic.frequency_weight(" Daily ") == 0.85
    assert heuristic.frequency_weight("never") == 0.1
    assert heuristic.frequency_weight("fortnightly") == 0.5
    assert heuristic.frequency_weight(None) == 0.5


def test_recency_halves_every_half_life(heuristic):
    """Recency is 1 for fresh entries and halves every half-life."""
    assert heuristic.recency_weight(NOW) == 1.0
    assert heuristic.recency_weight(NOW + timedelta(days=3)) == 1.0
    assert heuristic.recency_weight(NOW - timedelta(days=30)) == pytest.approx(0.5)
    assert heuristic.recency_weight(NOW - timedelta(days=60)) == pytest.approx(0.25)
    assert heuristic.recency_weight(None) == 0.5


def test_score_blends_frequency_and_recency(heuristic):
    """The score is a weighted blend, averaged with priority when declared."""
    entry = SitemapEntry(location="https://example.com/a", change_frequency="daily")
    assert heuristic.calculate_score(entry) == pytest.approx(0.75 * 0.85 + 0.25 * 0.5)

    with_priority = entry.model_copy(update={"priority": 1.0})
    assert heuristic.calculate_score(with_priority) == pytest.approx((0.7625 + 1.0) / 2)


def test_score_bounds(heuristic):
    """Scores stay within [0, 1]."""
    entries = [
        SitemapEntry(location="https://example.com/a", change_frequency="always", last_modified=NOW, priority=1.0),
        SitemapEntry(location="https://example.com/b", change_frequency="never", priority=0.0),
        SitemapEntry(location="https://example.com/c", last_modified=NOW - timedelta(days=3650)),
    ]
    for entry in entries:
        assert 0.0 <= heuristic.calculate_score(entry) <= 1.0


def test_frequent_recent_entries_rank_first(heuristic):
    """Frequently changing, recently modified pages are ingested first."""
    stale = SitemapEntry(
        location="https://example.com/old",
        change_frequency="yearly",
        last_modified=NOW - timedelta(days=400),
    )
    fresh = SitemapEntry(
        location="https://example.com/new",
        change_frequency="daily",
        last_modified=NOW - timedelta(days=1),
    )
    scored = [e.with_score(heuristic.calculate_score(e)) for e in (stale, fresh)]

    assert [e.location for e in prioritize(scored)] == ["https://example.com/new", "https://example.com/old"]


def test_prioritize_breaks_ties_by_last_modified():
    """Equal scores fall back to the most recent modification first."""
    older = SitemapEntry(location="https://example.com/a", last_modified=NOW - timedelta(days=5), heuristic_score=0.5)
    newer = SitemapEntry(location="https://example.com/b", last_modified=NOW, heuristic_score=0.5)
    undated = SitemapEntry(location="https://example.com/c", heuristic_score=0.5)

    assert [e.location for e in prioritize([undated, older, newer])] == [
        "https://example.com/b",
        "https://example.com/a",
        "https://example.com/c",
    ]
