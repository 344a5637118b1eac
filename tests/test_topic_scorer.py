"""
Tests for src/services/topic_scorer.py - weighted topic confidence.
"""
import pytest
from datetime import datetime, timedelta, timezone

from src.schemas.pipeline import TrendCandidate
from src.services.topic_scorer import (
    WEIGHTS,
    description_completeness,
    get_score_breakdown,
    keyword_relevance,
    recency,
    score_topic,
    source_credibility,
    title_quality,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _candidate(**overrides):
    fields = {
        "title": "How to Secure Your API in Production",
        "description": "x" * 200,
        "keywords": ["api", "security"],
        "source_urls": ["https://techcrunch.com/2026/api-security"],
        "published_at": NOW - timedelta(hours=3),
    }
    fields.update(overrides)
    return TrendCandidate(**fields)


class TestWeights:
    def test_weights_sum_to_one(self):
        assert sum(WEIGHTS.values()) == pytest.approx(1.0)


class TestKeywordRelevance:
    def test_no_category_keywords_is_neutral(self):
        assert keyword_relevance(_candidate(), []) == 0.5

    def test_fraction_of_keywords_present(self):
        score = keyword_relevance(_candidate(), ["api", "security", "kubernetes"])
        assert score == pytest.approx(2 / 3)

    def test_case_insensitive(self):
        assert keyword_relevance(_candidate(title="API SECURITY"), ["api"]) == 1.0


class TestTitleQuality:
    def test_how_to_title_scores_full(self):
        assert title_quality("How to Secure Your API in Production") == 1.0

    def test_short_title_penalized(self):
        assert title_quality("API tips") == pytest.approx(0.7)

    def test_long_title_penalized(self):
        assert title_quality("a" * 151) == pytest.approx(0.8)

    def test_question_bonus(self):
        assert title_quality("API tips?") == pytest.approx(0.8)

    def test_clickbait_penalized(self):
        assert title_quality("You won't believe this API security trick") == pytest.approx(0.7)

    def test_never_negative(self):
        assert title_quality("") >= 0.0


class TestDescriptionCompleteness:
    @pytest.mark.parametrize("length,expected", [
        (0, 0.3),
        (50, 0.75),
        (100, 1.0),
        (500, 1.0),
        (501, 0.8),
    ])
    def test_length_bands(self, length, expected):
        assert description_completeness("d" * length) == pytest.approx(expected)


class TestSourceCredibility:
    def test_no_sources_is_neutral(self):
        assert source_credibility([]) == 0.5

    def test_all_credible(self):
        assert source_credibility(["https://www.wired.com/story"]) == 1.0

    def test_mixed_sources(self):
        urls = ["https://wired.com/a", "https://random-blog.example/b"]
        assert source_credibility(urls) == pytest.approx(0.75)


class TestRecency:
    @pytest.mark.parametrize("age,expected", [
        (timedelta(hours=2), 1.0),
        (timedelta(days=2), 0.8),
        (timedelta(days=5), 0.6),
        (timedelta(days=10), 0.4),
    ])
    def test_age_bands(self, age, expected):
        assert recency(NOW - age, now=NOW) == expected

    def test_unknown_date(self):
        assert recency(None, now=NOW) == 0.7

    def test_naive_date_treated_as_utc(self):
        assert recency((NOW - timedelta(hours=1)).replace(tzinfo=None), now=NOW) == 1.0


class TestScoreTopic:
    def test_ideal_candidate_scores_one(self):
        assert score_topic(_candidate(), ["api", "security"], now=NOW) == 1.0

    def test_score_is_clamped_to_unit_interval(self):
        weak = _candidate(
            title="Shocking",
            description="",
            keywords=[],
            source_urls=["https://unknown.example/x"],
            published_at=NOW - timedelta(days=30),
        )
        score = score_topic(weak, ["kubernetes"], now=NOW)
        assert 0.0 <= score <= 1.0

    def test_breakdown_matches_total(self):
        breakdown = get_score_breakdown(_candidate(description=""), ["api"], now=NOW)
        expected = sum(breakdown["scores"][k] * w for k, w in breakdown["weights"].items())
        assert breakdown["total"] == pytest.approx(expected, abs=1e-3)
        assert breakdown["scores"]["description_completeness"] == 0.3

    def test_better_candidate_ranks_higher(self):
        good = score_topic(_candidate(), ["api"], now=NOW)
        poor = score_topic(_candidate(source_urls=[], published_at=NOW - timedelta(days=9)), ["api"], now=NOW)
        assert good > poor
