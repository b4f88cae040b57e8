"""
Tests for keyword fallback scoring.
"""

import pytest

from specialist_router.registry import SpecialistRegistry
from specialist_router.scorer import (
    ClassifierHint,
    KeywordFallbackScorer,
    ScoringWeights,
    match_keywords,
    tokenize,
)
from specialist_router.utils import ConfigurationError

from fakes import CHURN_QUERY, JOKE_QUERY, ROI_QUERY


def _registry(*specs):
    """Small registry from (id, keywords, intents, threshold) tuples."""
    return SpecialistRegistry.from_config([
        {
            "id": specialist_id,
            "label": specialist_id.title(),
            "keywords": list(keywords),
            "intent_keywords": list(intents),
            "threshold": threshold,
            "prompt_template": "{context}\n{query}",
        }
        for specialist_id, keywords, intents, threshold in specs
    ])


def _by_id(scores):
    return {s.specialist.id: s for s in scores}


class TestTokenize:
    """Query normalization."""

    def test_lowercases_and_strips_punctuation(self):
        assert tokenize("What's the ROI?!") == ["whats", "the", "roi"]

    def test_empty(self):
        assert tokenize("") == []
        assert tokenize("   ") == []

    def test_phrase_keywords_match_whole_words(self):
        normalized = " ".join(tokenize("Our cash flow is tight"))
        assert match_keywords(normalized, ("cash flow", "flow", "cash flows")) == ("cash flow", "flow")

    def test_substrings_do_not_match(self):
        normalized = " ".join(tokenize("The coder wrote apis"))
        assert match_keywords(normalized, ("code", "api")) == ()


class TestScoring:
    """Combined keyword, intent and context scoring."""

    def test_financial_query_scores_financial_highest(self, scorer):
        scores = scorer.score(ROI_QUERY)
        by_id = _by_id(scores)

        assert scores[0].specialist.id == "financial"
        # 3/4 keywords (roi, revenue, marketing) and 1/3 intents (spend)
        assert by_id["financial"].confidence == pytest.approx(0.475)
        assert by_id["financial"].matched_keywords == ("roi", "revenue", "marketing")
        assert by_id["financial"].matched_intents == ("spend",)
        # marketing keyword and increase intent only
        assert by_id["business-analyst"].confidence == pytest.approx(0.225)

    def test_context_bonus_only_for_previous_specialist(self, scorer):
        by_id = _by_id(scorer.score(CHURN_QUERY, previous_specialist_id="data-scientist"))

        assert by_id["data-scientist"].context_bonus
        assert by_id["data-scientist"].confidence == pytest.approx(0.1)
        assert by_id["business-analyst"].confidence == pytest.approx(0.475)
        assert not by_id["business-analyst"].context_bonus

    def test_unrelated_query_scores_zero(self, scorer):
        assert all(s.confidence == 0.0 for s in scorer.score(JOKE_QUERY))

    def test_scores_are_deterministic(self, scorer):
        first = scorer.score(ROI_QUERY, previous_specialist_id="technical")
        second = scorer.score(ROI_QUERY, previous_specialist_id="technical")
        assert first == second

    def test_ties_keep_declaration_order(self):
        scorer = KeywordFallbackScorer(_registry(
            ("alpha", ["shared"], [], 0.1),
            ("beta", ["shared"], [], 0.1),
        ))
        scores = scorer.score("shared topic")

        assert [s.specialist.id for s in scores] == ["alpha", "beta"]
        assert scores[0].confidence == scores[1].confidence
        assert scorer.select("shared topic").specialist.id == "alpha"

    def test_confidence_is_clamped(self):
        scorer = KeywordFallbackScorer(_registry(("alpha", ["a"], ["b"], 0.1)))
        hint = ClassifierHint(specialist_id="alpha", confidence=1.0)

        scores = scorer.score("a b", previous_specialist_id="alpha", hint=hint)
        assert scores[0].confidence == 1.0

    def test_hint_adds_weighted_prior(self, scorer):
        plain = _by_id(scorer.score(ROI_QUERY))["financial"]
        hinted = _by_id(scorer.score(ROI_QUERY, hint=ClassifierHint("financial", 0.35)))["financial"]

        assert hinted.hint_applied
        assert hinted.confidence == pytest.approx(plain.confidence + 0.2 * 0.35)

    def test_general_role_never_scored(self, scorer):
        assert "general" not in _by_id(scorer.score("general question"))


class TestSelection:
    """Threshold-aware selection."""

    def test_selects_winner_meeting_threshold(self, scorer):
        selection = scorer.select(ROI_QUERY)

        assert selection.specialist.id == "financial"
        assert selection.confidence == pytest.approx(0.475)
        assert "financial scored" in selection.describe()
        assert "keywords: roi, revenue, marketing" in selection.describe()

    def test_no_qualifier_routes_general_with_best_score(self, scorer):
        selection = scorer.select(JOKE_QUERY, previous_specialist_id="technical")

        assert selection.specialist is None
        assert selection.confidence == pytest.approx(0.1)
        assert selection.best.specialist.id == "technical"
        assert "general assistant" in selection.describe()

    def test_skips_higher_score_below_its_own_threshold(self):
        scorer = KeywordFallbackScorer(_registry(
            ("alpha", ["x", "y"], [], 0.9),
            ("beta", ["x", "z", "w", "v"], [], 0.1),
        ))
        selection = scorer.select("x")

        assert selection.best.specialist.id == "alpha"
        assert selection.specialist.id == "beta"
        assert selection.confidence == pytest.approx(0.125)

    def test_zero_scores_give_zero_confidence(self, scorer):
        selection = scorer.select(JOKE_QUERY)
        assert selection.specialist is None
        assert selection.confidence == 0.0


class TestWeights:
    """Weight configuration."""

    def test_defaults(self):
        weights = ScoringWeights()
        assert (weights.keyword, weights.intent, weights.context) == (0.5, 0.3, 0.2)
        assert weights.context_bonus == 0.5

    def test_weights_must_sum_to_one(self):
        with pytest.raises(ConfigurationError):
            ScoringWeights(keyword=0.6, intent=0.3, context=0.2)

    def test_negative_weight_rejected(self):
        with pytest.raises(ConfigurationError):
            ScoringWeights(keyword=1.2, intent=-0.2, context=0.0)

    def test_from_config(self):
        weights = ScoringWeights.from_config({
            "FALLBACK_KEYWORD_WEIGHT": 0.6,
            "FALLBACK_INTENT_WEIGHT": 0.2,
            "FALLBACK_CONTEXT_WEIGHT": 0.2,
            "FALLBACK_CONTEXT_BONUS": 1.0,
        })
        assert weights.keyword == 0.6
        assert weights.context_bonus == 1.0

    def test_hint_weight_bounds(self, registry):
        with pytest.raises(ConfigurationError):
            KeywordFallbackScorer(registry, hint_weight=1.5)
