"""
Keyword fallback scoring for specialist selection.

Used whenever the external classifier is unavailable or inconclusive. Each
named specialist gets a confidence in [0, 1] built from three components:

    confidence = keyword_weight * |query ∩ keywords| / max(1, |keywords|)
               + intent_weight  * |query ∩ intent_keywords| / max(1, |intent_keywords|)
               + context_weight * context_bonus   (previous specialist only)

plus an optional weak prior from a low-confidence classifier suggestion.
Scores are rounded to six decimals so that thresholds compare exactly.
Scoring is deterministic and side-effect free; ties keep registry
declaration order.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Tuple

from loguru import logger

from specialist_router.models import Specialist
from specialist_router.registry import SpecialistRegistry
from specialist_router.utils import ConfigurationError


TOKEN_PATTERN = re.compile(r"[a-z0-9]+")


def tokenize(text: str) -> List[str]:
    """Lower-case, punctuation-stripped word tokens in order of appearance."""
    if not text:
        return []
    return TOKEN_PATTERN.findall(text.lower().replace("'", ""))


def match_keywords(normalized_query: str, keywords: Tuple[str, ...]) -> Tuple[str, ...]:
    """Keywords (single words or phrases) present as whole words in the query."""
    padded = f" {normalized_query} "
    matched = []
    for keyword in keywords:
        phrase = " ".join(tokenize(keyword))
        if phrase and f" {phrase} " in padded:
            matched.append(keyword)
    return tuple(matched)


@dataclass(frozen=True)
class ScoringWeights:
    """Weights of the fallback score components."""
    keyword: float = 0.5
    intent: float = 0.3
    context: float = 0.2
    context_bonus: float = 0.5

    def __post_init__(self):
        parts = (self.keyword, self.intent, self.context)
        if any(p < 0 for p in parts) or abs(sum(parts) - 1.0) > 1e-6:
            raise ConfigurationError(f"Scoring weights must be non-negative and sum to 1.0, got {parts}")
        if not 0.0 <= self.context_bonus <= 1.0:
            raise ConfigurationError(f"Context bonus must be within [0, 1], got {self.context_bonus}")

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ScoringWeights":
        return cls(
            keyword=config["FALLBACK_KEYWORD_WEIGHT"],
            intent=config["FALLBACK_INTENT_WEIGHT"],
            context=config["FALLBACK_CONTEXT_WEIGHT"],
            context_bonus=config["FALLBACK_CONTEXT_BONUS"],
        )


@dataclass(frozen=True)
class ClassifierHint:
    """Low-confidence classifier suggestion blended in as a weak prior."""
    specialist_id: str
    confidence: float


@dataclass(frozen=True)
class SpecialistScore:
    """Fallback score of one specialist for one query."""
    specialist: Specialist
    confidence: float
    matched_keywords: Tuple[str, ...] = ()
    matched_intents: Tuple[str, ...] = ()
    context_bonus: bool = False
    hint_applied: bool = False

    @property
    def meets_threshold(self) -> bool:
        return self.confidence >= self.specialist.threshold


@dataclass(frozen=True)
class FallbackSelection:
    """Result of choosing a specialist from fallback scores.

    ``specialist`` is None when no score met its threshold; ``confidence``
    is then the best sub-threshold score.
    """
    specialist: Optional[Specialist]
    confidence: float
    best: Optional[SpecialistScore]
    scores: Tuple[SpecialistScore, ...] = field(default=())

    def describe(self) -> str:
        """Machine-built rationale for the selection."""
        if self.best is None:
            return "no specialists configured for keyword scoring; routed to general assistant"

        if self.specialist is None:
            return (
                f"no specialist met its threshold (best {self.best.specialist.id} "
                f"{self.best.confidence:.2f} < {self.best.specialist.threshold:.2f}); "
                f"routed to general assistant"
            )

        chosen = next(s for s in self.scores if s.specialist.id == self.specialist.id)
        parts = [f"{chosen.specialist.id} scored {chosen.confidence:.2f} >= threshold {chosen.specialist.threshold:.2f}"]
        if chosen.matched_keywords:
            parts.append(f"keywords: {', '.join(chosen.matched_keywords)}")
        if chosen.matched_intents:
            parts.append(f"intents: {', '.join(chosen.matched_intents)}")
        if chosen.context_bonus:
            parts.append("continuity bonus")
        if chosen.hint_applied:
            parts.append("classifier hint")
        return "; ".join(parts)


class KeywordFallbackScorer:
    """Deterministic lexical scorer over the specialist registry."""

    def __init__(self, registry: SpecialistRegistry, weights: Optional[ScoringWeights] = None,
                 hint_weight: float = 0.2):
        if not 0.0 <= hint_weight <= 1.0:
            raise ConfigurationError(f"Hint weight must be within [0, 1], got {hint_weight}")
        self.registry = registry
        self.weights = weights or ScoringWeights()
        self.hint_weight = hint_weight

    def _score_one(self, specialist: Specialist, normalized_query: str,
                   previous_specialist_id: Optional[str], hint: Optional[ClassifierHint]) -> SpecialistScore:
        matched_keywords = match_keywords(normalized_query, specialist.keywords)
        matched_intents = match_keywords(normalized_query, specialist.intent_keywords)
        context_bonus = previous_specialist_id is not None and previous_specialist_id == specialist.id

        keyword_match = len(matched_keywords) / max(1, len(specialist.keywords))
        intent_match = len(matched_intents) / max(1, len(specialist.intent_keywords))
        context_match = self.weights.context_bonus if context_bonus else 0.0

        confidence = (
            self.weights.keyword * keyword_match +
            self.weights.intent * intent_match +
            self.weights.context * context_match
        )

        hint_applied = hint is not None and hint.specialist_id == specialist.id
        if hint_applied:
            confidence += self.hint_weight * hint.confidence

        return SpecialistScore(
            specialist=specialist,
            confidence=round(max(0.0, min(1.0, confidence)), 6),
            matched_keywords=matched_keywords,
            matched_intents=matched_intents,
            context_bonus=context_bonus,
            hint_applied=hint_applied
        )

    def score(self, query: str, previous_specialist_id: Optional[str] = None,
              hint: Optional[ClassifierHint] = None) -> List[SpecialistScore]:
        """
        Score every named specialist for the query.

        Args:
            query: User query
            previous_specialist_id: Active specialist of the previous turn, if any
            hint: Optional classifier suggestion used as a weak prior

        Returns:
            Scores ordered highest first, ties in registry declaration order
        """
        normalized_query = " ".join(tokenize(query))
        scores = [
            self._score_one(specialist, normalized_query, previous_specialist_id, hint)
            for specialist in self.registry.scored_specialists()
        ]
        # sorted() is stable, so equal scores keep declaration order
        return sorted(scores, key=lambda s: -s.confidence)

    def select(self, query: str, previous_specialist_id: Optional[str] = None,
               hint: Optional[ClassifierHint] = None) -> FallbackSelection:
        """
        Choose the highest-scoring specialist that meets its own threshold.

        Returns:
            FallbackSelection; its specialist is None when nothing qualifies
        """
        scores = self.score(query, previous_specialist_id, hint)
        best = scores[0] if scores else None
        winner = next((s for s in scores if s.meets_threshold), None)

        selection = FallbackSelection(
            specialist=winner.specialist if winner else None,
            confidence=winner.confidence if winner else (best.confidence if best else 0.0),
            best=best,
            scores=tuple(scores)
        )

        logger.debug(
            "Fallback scoring complete",
            selected=winner.specialist.id if winner else None,
            confidence=round(selection.confidence, 4),
            top_scores={s.specialist.id: round(s.confidence, 4) for s in scores[:3]}
        )
        return selection
