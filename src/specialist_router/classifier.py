"""
Classification client for the external AI routing service.

This module provides:
- Compact conversation context summaries for the classification prompt
- A single-attempt, time-bounded classification call via OpenRouter
- Structured XML output parsing into ClassificationResult
- Mapping of every failure onto ClassificationError kinds

No retries happen here; the orchestrator falls back to keyword scoring on
any ClassificationError.
"""

import asyncio
import re
from typing import Any, Dict, List, Optional, Sequence

import openai
from openai import AsyncOpenAI
from loguru import logger

from specialist_router.models import ClassificationResult, FailureKind, Turn
from specialist_router.registry import SpecialistRegistry
from specialist_router.utils import Timer, get_config, sanitize_for_logging


CONTEXT_EXCERPT_CHARS = 80


class ClassificationError(Exception):
    """Raised when the classification service cannot produce a usable result."""

    def __init__(self, kind: FailureKind, message: str):
        super().__init__(message)
        self.kind = kind


def failure_kind_for(exc: BaseException) -> FailureKind:
    """Map a transport or SDK exception onto a FailureKind."""
    if isinstance(exc, (asyncio.TimeoutError, openai.APIConnectionError)):
        return FailureKind.UNAVAILABLE
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code >= 500 or exc.status_code == 429:
            return FailureKind.UNAVAILABLE
        return FailureKind.REJECTED
    if isinstance(exc, (openai.APIResponseValidationError, ValueError)):
        return FailureKind.MALFORMED
    return FailureKind.UNAVAILABLE


def summarize_context(turns: Sequence[Turn], max_turns: int,
                      general_id: str = "general") -> List[Dict[str, str]]:
    """
    Reduce recent turns to (specialist, short query excerpt) pairs.

    Args:
        turns: Session turns, most recent last
        max_turns: Maximum number of turns to keep
        general_id: Label for turns answered by the general assistant

    Returns:
        At most ``max_turns`` entries, most recent last
    """
    if max_turns <= 0:
        return []
    summary = []
    for turn in list(turns)[-max_turns:]:
        query = " ".join(turn.query.split())
        excerpt = query[:CONTEXT_EXCERPT_CHARS] + "..." if len(query) > CONTEXT_EXCERPT_CHARS else query
        summary.append({
            "specialist": turn.specialist_id or general_id,
            "query": excerpt
        })
    return summary


def _parse_confidence(raw: Optional[str]) -> float:
    """Numeric confidence from the response; absent or non-numeric values become 0."""
    if raw is None:
        return 0.0
    try:
        value = float(raw.strip())
    except ValueError:
        return 0.0
    if value != value:  # NaN
        return 0.0
    return value


def _parse_flag(raw: Optional[str]) -> bool:
    return raw is not None and raw.strip().lower() in {"true", "yes", "1"}


def parse_classification_response(response: str) -> ClassificationResult:
    """
    Parse the XML-tagged classification answer.

    Only four fields are read: target_specialist, confidence,
    needs_clarification and rationale. Anything else is ignored.

    Raises:
        ClassificationError: MALFORMED if the target specialist is missing
    """
    def tag(name: str) -> Optional[str]:
        match = re.search(rf'<{name}>(.*?)</{name}>', response, re.IGNORECASE | re.DOTALL)
        return match.group(1).strip() if match else None

    target = tag("target_specialist")
    if not target:
        raise ClassificationError(FailureKind.MALFORMED, "No target_specialist found in classification response")

    return ClassificationResult(
        target_specialist=target.lower(),
        confidence=_parse_confidence(tag("confidence")),
        rationale=tag("rationale") or "",
        needs_clarification=_parse_flag(tag("needs_clarification"))
    )


class ClassificationClient:
    """Single-attempt classifier backed by an OpenAI-compatible chat API."""

    def __init__(self, registry: SpecialistRegistry, client: Optional[Any] = None,
                 model: Optional[str] = None, timeout_seconds: Optional[float] = None,
                 config: Optional[Dict[str, Any]] = None):
        self.registry = registry
        if client is None or model is None or timeout_seconds is None:
            config = config or get_config()
        self.model = model or config["CLASSIFICATION_MODEL"]
        self.timeout_seconds = timeout_seconds or config["CLASSIFICATION_TIMEOUT_SECONDS"]
        self.client = client or AsyncOpenAI(
            base_url=config["OPENROUTER_BASE_URL"],
            api_key=config["OPENROUTER_API_KEY"],
            timeout=self.timeout_seconds,
            max_retries=0,
            default_headers={"X-Title": "Specialist Router - Classifier"}
        )

        logger.info("Classification client initialized", model=self.model, timeout_s=self.timeout_seconds)

    def build_prompt(self, query: str, context: List[Dict[str, str]]) -> str:
        """Build the classification prompt with specialists and compact context."""
        specialist_lines = []
        for specialist in self.registry.list_specialists():
            if specialist.is_generic:
                specialist_lines.append(f"- {specialist.id}: {specialist.label} (anything no specialist covers)")
            else:
                specialist_lines.append(
                    f"- {specialist.id}: {specialist.label} (topics: {', '.join(specialist.keywords)})"
                )

        if context:
            history_text = "\n".join(f"- [{item['specialist']}] {item['query']}" for item in context)
        else:
            history_text = "No previous conversation"

        return f"""# Your role as Query Router

You decide which specialist should answer the user's message.

## Specialists
{chr(10).join(specialist_lines)}

## Recent Conversation (specialist and message excerpt)
{history_text}

## Current Message
"{query}"

## Rules
- Prefer the specialist whose domain matches the message most closely
- Stay with the current specialist only when the message continues its topic
- Set needs_clarification to true when the message is too ambiguous to route
- Confidence is a number between 0.0 and 1.0

## Your decision
<target_specialist>specialist id</target_specialist>
<confidence>0.0-1.0</confidence>
<needs_clarification>true|false</needs_clarification>
<rationale>Brief explanation of routing decision</rationale>"""

    async def _complete(self, prompt: str) -> str:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=0.0,
            max_tokens=200
        )

        if not response.choices:
            raise ClassificationError(FailureKind.MALFORMED, "No response choices returned from classifier")

        message = response.choices[0].message
        if getattr(message, "refusal", None):
            raise ClassificationError(FailureKind.REJECTED, f"Classifier refused: {message.refusal}")
        if not message.content:
            raise ClassificationError(FailureKind.MALFORMED, "Empty response from classifier")

        return message.content.strip()

    async def classify(self, query: str, context: Sequence[Turn] = (),
                       max_context_turns: int = 3) -> ClassificationResult:
        """
        Classify a query against the registry.

        Args:
            query: Current user message
            context: Recent session turns, most recent last
            max_context_turns: Maximum turns included in the prompt

        Returns:
            ClassificationResult as reported by the service

        Raises:
            ClassificationError: UNAVAILABLE, MALFORMED or REJECTED
        """
        prompt = self.build_prompt(
            query, summarize_context(context, max_context_turns, self.registry.general.id)
        )

        logger.info(
            "Requesting classification",
            model=self.model,
            query_preview=sanitize_for_logging(query, 50),
            context_turns=min(len(context), max(0, max_context_turns))
        )

        try:
            with Timer("classification"):
                raw = await asyncio.wait_for(self._complete(prompt), timeout=self.timeout_seconds)
            result = parse_classification_response(raw)
        except ClassificationError as e:
            logger.warning("Classification failed", kind=e.kind.value, error=str(e))
            raise
        except Exception as e:
            kind = failure_kind_for(e)
            logger.warning("Classification failed", kind=kind.value, error=str(e), error_type=type(e).__name__)
            raise ClassificationError(kind, f"Classification call failed: {type(e).__name__}: {e}") from e

        logger.info(
            "Classification completed",
            target=result.target_specialist,
            confidence=result.confidence,
            needs_clarification=result.needs_clarification
        )
        return result
