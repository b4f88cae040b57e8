"""
Routing orchestrator: decides which specialist answers each query.

A routing request moves through these states:

    START -> CLASSIFYING -> CLASSIFIED_HIGH_CONFIDENCE ------------> DECIDED
                         -> CLASSIFIED_LOW_CONFIDENCE -> FALLBACK -> DECIDED
                         -> CLASSIFICATION_FAILED     -> FALLBACK -> DECIDED

- High confidence: the classifier's target meets that specialist's own
  threshold; source is ``classifier``.
- Low confidence (below threshold, unknown target, or a confidence outside
  [0, 1]): keyword fallback decides. A known target above the hint floor is
  blended in as a weak prior. If the classifier asked for clarification the
  general assistant is chosen instead of scoring.
- Failure (unavailable, malformed, rejected): keyword fallback unmodified.

Every request ends in DECIDED with exactly one turn appended to the session.
The fallback scorer only depends on local configuration, so a decision is
always produced.
"""

import math
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol, Sequence, Tuple

from loguru import logger

from specialist_router.classifier import ClassificationError
from specialist_router.models import (
    ClassificationResult,
    ClassificationSource,
    FailureKind,
    MAX_QUERY_LENGTH,
    RoutingDecision,
    RoutingState,
    Turn,
)
from specialist_router.registry import SpecialistRegistry
from specialist_router.scorer import ClassifierHint, KeywordFallbackScorer
from specialist_router.store import SessionStore
from specialist_router.utils import Timer, sanitize_for_logging


class Classifier(Protocol):
    async def classify(self, query: str, context: Sequence[Turn] = (),
                       max_context_turns: int = 3) -> ClassificationResult:
        ...


@dataclass
class RoutingOutcome:
    """Decision plus the context that was visible when it was made."""
    decision: RoutingDecision
    context: List[Turn]
    routing_time_ms: float = 0.0
    classification_time_ms: float = 0.0


def validate_query(query: str) -> str:
    """
    Validate the input query for basic requirements.

    Returns:
        The stripped query

    Raises:
        ValueError: If the query is empty or too long
    """
    if not query or not query.strip():
        raise ValueError("Query is empty or contains only whitespace")
    if len(query) > MAX_QUERY_LENGTH:
        raise ValueError(f"Query too long: {len(query)} characters (max {MAX_QUERY_LENGTH})")
    return query.strip()


class RoutingOrchestrator:
    """Classify, fall back if needed, decide and record one turn per query."""

    def __init__(self, registry: SpecialistRegistry, scorer: KeywordFallbackScorer,
                 classifier: Classifier, store: SessionStore,
                 max_context_turns: int = 3, hint_floor: float = 0.3):
        self.registry = registry
        self.scorer = scorer
        self.classifier = classifier
        self.store = store
        self.max_context_turns = max_context_turns
        self.hint_floor = hint_floor

        logger.info(
            "Routing orchestrator initialized",
            max_context_turns=max_context_turns,
            hint_floor=hint_floor
        )

    def _transition(self, session_id: str, state: RoutingState, **extra: Any) -> RoutingState:
        logger.debug("Routing state", session_id=session_id, state=state.value, **extra)
        return state

    @staticmethod
    def _confidence_in_range(value: Any) -> bool:
        return isinstance(value, (int, float)) and not isinstance(value, bool) \
            and math.isfinite(value) and 0.0 <= value <= 1.0

    def _decide_from_classification(self, session_id: str, query: str, result: ClassificationResult,
                                    previous: Optional[str]) -> Tuple[Optional[str], float, str, bool, ClassificationSource]:
        """Apply thresholds and clarification policy to a classifier answer."""
        if not self._confidence_in_range(result.confidence):
            self._transition(session_id, RoutingState.CLASSIFIED_LOW_CONFIDENCE, reason="confidence_out_of_range")
            return self._fallback(
                session_id, query, previous, None,
                f"classifier confidence {result.confidence!r} outside [0, 1] rejected"
            )

        confidence = float(result.confidence)
        target = self.registry.find(result.target_specialist)
        classifier_note = str(result.rationale or "").strip() or "no rationale provided"

        if target is not None and confidence >= target.threshold:
            self._transition(session_id, RoutingState.CLASSIFIED_HIGH_CONFIDENCE,
                             target=target.id, confidence=confidence)
            specialist_id = None if target.is_generic else target.id
            rationale = f"Classifier selected {target.id} ({confidence:.2f} >= {target.threshold:.2f}): {classifier_note}"
            return specialist_id, confidence, rationale, False, ClassificationSource.CLASSIFIER

        if target is None:
            reason = f"classifier suggested unknown specialist '{result.target_specialist}'"
        else:
            reason = f"classifier suggested {target.id} below threshold ({confidence:.2f} < {target.threshold:.2f})"
        self._transition(session_id, RoutingState.CLASSIFIED_LOW_CONFIDENCE,
                         target=result.target_specialist, confidence=confidence)

        if result.needs_clarification:
            rationale = f"Clarification requested: {reason}; {classifier_note}"
            return None, confidence, rationale, True, ClassificationSource.CLASSIFIER

        hint = None
        if target is not None and not target.is_generic and confidence > self.hint_floor:
            hint = ClassifierHint(specialist_id=target.id, confidence=confidence)
        return self._fallback(session_id, query, previous, hint, reason)

    def _fallback(self, session_id: str, query: str, previous: Optional[str],
                  hint: Optional[ClassifierHint], reason: str) -> Tuple[Optional[str], float, str, bool, ClassificationSource]:
        """Run keyword scoring and build the fallback outcome."""
        self._transition(session_id, RoutingState.FALLBACK, hinted=hint.specialist_id if hint else None)
        with Timer("fallback_scoring"):
            selection = self.scorer.select(query, previous, hint)

        specialist_id = selection.specialist.id if selection.specialist else None
        rationale = f"Keyword fallback ({reason}): {selection.describe()}"
        return specialist_id, selection.confidence, rationale, False, ClassificationSource.FALLBACK

    async def route(self, session_id: str, query: str) -> RoutingOutcome:
        """
        Route one query for a session and record the resulting turn.

        Requests for the same session are serialized; different sessions
        proceed independently.

        Args:
            session_id: Existing session identifier
            query: User query

        Returns:
            RoutingOutcome with the recorded decision and the context used

        Raises:
            SessionNotFound: If the session is unknown or expired
            ValueError: If the query is invalid
        """
        query = validate_query(query)

        async with self.store.lock(session_id):
            with Timer("routing") as timer:
                self._transition(session_id, RoutingState.START)
                session = await self.store.get(session_id, touch=True)
                previous = session.active_specialist_id
                context = session.recent_turns(self.max_context_turns)

                failure_kind: Optional[FailureKind] = None
                failure: Optional[ClassificationError] = None
                self._transition(session_id, RoutingState.CLASSIFYING)
                with Timer("classification_call") as classification_timer:
                    try:
                        result = await self.classifier.classify(query, context, self.max_context_turns)
                    except ClassificationError as e:
                        failure = e

                if failure is not None:
                    failure_kind = failure.kind
                    self._transition(session_id, RoutingState.CLASSIFICATION_FAILED, kind=failure.kind.value)
                    outcome = self._fallback(session_id, query, previous, None,
                                             f"classifier {failure.kind.value}: {failure}")
                else:
                    if not self._confidence_in_range(result.confidence):
                        failure_kind = FailureKind.MALFORMED
                    outcome = self._decide_from_classification(session_id, query, result, previous)

                specialist_id, confidence, rationale, needs_clarification, source = outcome
                rationale = rationale.strip() or f"Routed to {specialist_id or 'general'} by {source.value}"

                session = await self.store.append_turn(session_id, Turn(
                    query=query,
                    specialist_id=specialist_id,
                    confidence=confidence,
                    rationale=rationale,
                    source=source,
                    needs_clarification=needs_clarification,
                    failure_kind=failure_kind
                ))
                turn = session.turns[-1]

                decision = RoutingDecision(
                    specialist_id=specialist_id,
                    specialist_label=self.registry.resolve(specialist_id).label,
                    confidence=confidence,
                    rationale=rationale,
                    needs_clarification=needs_clarification,
                    switched=specialist_id != previous,
                    source=source,
                    previous_specialist_id=previous,
                    failure_kind=failure_kind,
                    turn_index=turn.index
                )
                self._transition(session_id, RoutingState.DECIDED)

        logger.info(
            "Routing decision",
            session_id=session_id,
            query_preview=sanitize_for_logging(query, 50),
            specialist=decision.specialist_id,
            confidence=round(decision.confidence, 4),
            source=decision.source.value,
            switched=decision.switched,
            turn_index=decision.turn_index,
            duration_ms=timer.duration_ms
        )

        return RoutingOutcome(
            decision=decision,
            context=context,
            routing_time_ms=timer.duration_ms,
            classification_time_ms=classification_timer.duration_ms
        )
