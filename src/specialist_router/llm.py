"""
OpenRouter generation client and specialist prompt rendering.

This module provides:
- Role prompts built from each specialist's template
- Compact context hints (roles and topics, not the raw transcript)
- A single-attempt, time-bounded generation call
- Mapping of every failure onto GenerationError kinds

A GenerationError never changes the routing decision already recorded for
the turn; it is surfaced to the caller as a failed reply.
"""

import asyncio
from typing import Any, Dict, Optional, Sequence

from openai import AsyncOpenAI
from loguru import logger

from specialist_router.classifier import failure_kind_for
from specialist_router.models import FailureKind, Specialist, Turn
from specialist_router.scorer import tokenize
from specialist_router.utils import Timer, get_config


TOPIC_HINT_CHARS = 60
QUERY_IN_USER_MESSAGE = "(the user's message follows)"
TOPIC_STOPWORDS = {
    "a", "an", "and", "are", "be", "by", "can", "do", "does", "for", "from", "how", "i",
    "if", "in", "is", "it", "me", "my", "of", "on", "or", "our", "should", "the", "this",
    "to", "we", "what", "whats", "when", "which", "why", "will", "with", "you", "your"
}


class GenerationError(Exception):
    """Raised when the generation service cannot produce a reply."""

    def __init__(self, kind: FailureKind, message: str):
        super().__init__(message)
        self.kind = kind


def topic_hint(query: str, limit: int = 6) -> str:
    """Content words of a query, for compact context rendering."""
    words = [w for w in tokenize(query) if w not in TOPIC_STOPWORDS]
    hint = " ".join(words[:limit])
    return hint[:TOPIC_HINT_CHARS]


def render_context(context: Sequence[Turn], labels: Dict[Optional[str], str]) -> str:
    """
    Render recent turns as role and topic hints.

    Args:
        context: Recent turns, most recent last
        labels: Display label per specialist id (None for the general assistant)

    Returns:
        Multi-line hint text, or a placeholder when there is no history
    """
    if not context:
        return "No previous conversation"

    lines = []
    previous = None
    for position, turn in enumerate(context):
        label = labels.get(turn.specialist_id, turn.specialist_id or "General Assistant")
        line = f"- {label}: {topic_hint(turn.query) or 'general question'}"
        if position > 0 and turn.specialist_id != previous:
            line += " (handed over)"
        lines.append(line)
        previous = turn.specialist_id
    return "\n".join(lines)


class ResponseGenerator:
    """Builds role prompts and calls the generation model once per reply."""

    def __init__(self, client: Optional[Any] = None, model: Optional[str] = None,
                 timeout_seconds: Optional[float] = None, config: Optional[Dict[str, Any]] = None):
        if client is None or model is None or timeout_seconds is None:
            config = config or get_config()
        self.model = model or config["GENERATION_MODEL"]
        self.timeout_seconds = timeout_seconds or config["GENERATION_TIMEOUT_SECONDS"]
        self.client = client or AsyncOpenAI(
            base_url=config["OPENROUTER_BASE_URL"],
            api_key=config["OPENROUTER_API_KEY"],
            timeout=self.timeout_seconds,
            max_retries=0,
            default_headers={"X-Title": "Specialist Router - Generator"}
        )

        logger.info("Response generator initialized", model=self.model, timeout_s=self.timeout_seconds)

    def build_prompt(self, specialist: Specialist, query: str, context: Sequence[Turn] = (),
                     labels: Optional[Dict[Optional[str], str]] = None, inline_query: bool = True) -> str:
        """
        Render the specialist's template with the query and context hints.

        Args:
            specialist: Role answering this turn
            query: Current user query
            context: Recent turns, most recent last
            labels: Optional display labels per specialist id
            inline_query: Put the query into the template; otherwise the
                template points at the user message that carries it

        Returns:
            Prompt text
        """
        context_text = render_context(context, labels or {})
        query_text = query if inline_query else QUERY_IN_USER_MESSAGE
        # context first so a literal "{context}" typed by the user stays untouched
        return specialist.prompt_template.replace("{context}", context_text).replace("{query}", query_text)

    async def _complete(self, prompt: str, query: Optional[str]) -> str:
        messages = [{"role": "system", "content": prompt}]
        if query:
            messages.append({"role": "user", "content": query})

        response = await self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=0.7,
            max_tokens=1500
        )

        if not response.choices:
            raise GenerationError(FailureKind.MALFORMED, "No response choices returned from LLM")

        message = response.choices[0].message
        if getattr(message, "refusal", None):
            raise GenerationError(FailureKind.REJECTED, f"Model refused: {message.refusal}")
        if not message.content or not message.content.strip():
            raise GenerationError(FailureKind.MALFORMED, "Empty response from LLM")

        return message.content.strip()

    async def generate(self, prompt: str, query: Optional[str] = None) -> str:
        """
        Generate a reply for a rendered prompt.

        The prompt is sent as the system message; ``query``, when given, is
        sent as the user message.

        Raises:
            GenerationError: UNAVAILABLE, MALFORMED or REJECTED
        """
        logger.info("Generating response", model=self.model, prompt_length=len(prompt))

        try:
            with Timer("generation"):
                text = await asyncio.wait_for(self._complete(prompt, query), timeout=self.timeout_seconds)
        except GenerationError as e:
            logger.error("Generation failed", kind=e.kind.value, error=str(e))
            raise
        except Exception as e:
            kind = failure_kind_for(e)
            logger.error("Generation failed", kind=kind.value, error=str(e), error_type=type(e).__name__)
            raise GenerationError(kind, f"Generation call failed: {type(e).__name__}: {e}") from e

        logger.info("Response generated", model=self.model, response_length=len(text))
        return text

    async def respond(self, specialist: Specialist, query: str, context: Sequence[Turn] = (),
                      labels: Optional[Dict[Optional[str], str]] = None) -> str:
        """Build the prompt for ``specialist`` and generate the reply.

        The query travels once, as the user message.
        """
        prompt = self.build_prompt(specialist, query, context, labels, inline_query=False)
        return await self.generate(prompt, query)
