"""
Specialist registry: static definitions of every response role.

The registry is loaded once at startup, validated eagerly and never mutated
afterwards, so it is safe to share between concurrent requests. Adding a
specialist is a configuration change: either edit ``DEFAULT_SPECIALISTS`` or
point ``SPECIALISTS_CONFIG_PATH`` at a JSON file with the same schema.
"""

import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger
from pydantic import ValidationError

from specialist_router.models import Specialist
from specialist_router.utils import ConfigurationError


class ConfigInvalid(ConfigurationError):
    """Raised when the specialist configuration is malformed."""
    pass


class SpecialistNotFound(KeyError):
    """Raised when a specialist id is not registered."""
    pass


GENERAL_TEMPLATE = """You are a helpful general assistant.

## Conversation Context
{context}

## Current Message
{query}

## Response Requirements
- Answer directly and concisely
- If the request is ambiguous, ask one focused clarifying question
- Suggest a more specific question when a domain expert could help better"""


DEFAULT_SPECIALISTS: List[Dict[str, Any]] = [
    {
        "id": "technical",
        "label": "Technical Expert",
        "keywords": ["sql", "code", "database", "api", "server"],
        "intent_keywords": ["optimize", "debug", "deploy", "fix"],
        "threshold": 0.45,
        "prompt_template": """You are a senior software engineer and database specialist.

## Conversation Context
{context}

## Current Question
{query}

## Response Requirements
- Give concrete, working steps or code
- Call out performance and correctness trade-offs
- Keep explanations short and precise""",
    },
    {
        "id": "data-scientist",
        "label": "Data Scientist",
        "keywords": ["data", "model", "statistics", "regression", "dataset"],
        "intent_keywords": ["predict", "analyze", "train", "forecast"],
        "threshold": 0.45,
        "prompt_template": """You are an experienced data scientist.

## Conversation Context
{context}

## Current Question
{query}

## Response Requirements
- Recommend suitable methods and explain their assumptions
- Mention how to validate results
- Prefer reproducible, measurable approaches""",
    },
    {
        "id": "business-analyst",
        "label": "Business Analyst",
        "keywords": ["business", "impact", "churn", "marketing"],
        "intent_keywords": ["reduce", "increase", "improve"],
        "threshold": 0.45,
        "prompt_template": """You are a pragmatic business analyst.

## Conversation Context
{context}

## Current Question
{query}

## Response Requirements
- Frame the answer in terms of business outcomes
- Quantify impact where the question allows it
- List the key assumptions and risks""",
    },
    {
        "id": "financial",
        "label": "Financial Advisor",
        "keywords": ["roi", "revenue", "marketing", "cash flow"],
        "intent_keywords": ["spend", "invest", "save"],
        "threshold": 0.45,
        "prompt_template": """You are a corporate finance advisor.

## Conversation Context
{context}

## Current Question
{query}

## Response Requirements
- Show the calculation behind every figure
- Distinguish one-off costs from recurring ones
- Note that this is not personal investment advice""",
    },
    {
        "id": "creative",
        "label": "Creative Writer",
        "keywords": ["story", "poem", "slogan", "tagline"],
        "intent_keywords": ["write", "brainstorm", "draft"],
        "threshold": 0.45,
        "prompt_template": """You are a versatile creative writer.

## Conversation Context
{context}

## Current Request
{query}

## Response Requirements
- Offer a few distinct options when asked for ideas
- Match the tone the user asks for
- Keep it original""",
    },
    {
        "id": "general",
        "label": "General Assistant",
        "keywords": [],
        "intent_keywords": [],
        "threshold": 0.5,
        "prompt_template": GENERAL_TEMPLATE,
        "is_generic": True,
    },
]


class SpecialistRegistry:
    """Ordered, read-only collection of specialists."""

    def __init__(self, specialists: Iterable[Specialist]):
        specialists = list(specialists)
        self._validate(specialists)

        generic = [s for s in specialists if s.is_generic]
        if not generic:
            builtin = Specialist(**DEFAULT_SPECIALISTS[-1])
            if any(s.id == builtin.id for s in specialists):
                raise ConfigInvalid(f"Specialist id '{builtin.id}' is reserved for the general assistant")
            specialists.append(builtin)
            generic = [builtin]

        self._specialists = tuple(specialists)
        self._by_id = {s.id: s for s in self._specialists}
        self._general = generic[0]

    @staticmethod
    def _validate(specialists: List[Specialist]) -> None:
        if not specialists:
            raise ConfigInvalid("Specialist configuration is empty")

        seen = set()
        for specialist in specialists:
            if specialist.id in seen:
                raise ConfigInvalid(f"Duplicate specialist id: {specialist.id}")
            seen.add(specialist.id)

            if not specialist.is_generic and not specialist.keywords:
                raise ConfigInvalid(f"Specialist '{specialist.id}' has no keywords")

            if "{query}" not in specialist.prompt_template:
                raise ConfigInvalid(f"Prompt template for '{specialist.id}' lacks a {{query}} placeholder")

        if sum(1 for s in specialists if s.is_generic) > 1:
            raise ConfigInvalid("Only one generic specialist may be configured")

    @classmethod
    def from_config(cls, entries: List[Dict[str, Any]]) -> "SpecialistRegistry":
        """
        Build a registry from plain dictionaries.

        Raises:
            ConfigInvalid: If any entry fails validation
        """
        if not isinstance(entries, list):
            raise ConfigInvalid("Specialist configuration must be a list")

        specialists = []
        for position, entry in enumerate(entries):
            if not isinstance(entry, dict):
                raise ConfigInvalid(f"Specialist entry {position} is not an object")
            try:
                specialists.append(Specialist(**entry))
            except ValidationError as e:
                raise ConfigInvalid(f"Specialist entry {position} is invalid: {e}") from e

        return cls(specialists)

    @classmethod
    def from_file(cls, path: str) -> "SpecialistRegistry":
        """Load a registry from a JSON file holding a list of specialist objects."""
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigInvalid(f"Cannot read specialist configuration {path}: {e}") from e

        if isinstance(raw, dict):
            raw = raw.get("specialists")
        return cls.from_config(raw)

    def list_specialists(self) -> List[Specialist]:
        """All specialists in declaration order, general assistant included."""
        return list(self._specialists)

    def scored_specialists(self) -> List[Specialist]:
        """Named specialists that take part in keyword scoring."""
        return [s for s in self._specialists if not s.is_generic]

    def get(self, specialist_id: str) -> Specialist:
        """
        Look up a specialist by id.

        Raises:
            SpecialistNotFound: If the id is unknown
        """
        try:
            return self._by_id[specialist_id]
        except KeyError:
            raise SpecialistNotFound(specialist_id) from None

    def find(self, specialist_id: Optional[str]) -> Optional[Specialist]:
        """Look up a specialist, returning None for unknown ids."""
        if not isinstance(specialist_id, str):
            return None
        return self._by_id.get(specialist_id.strip().lower())

    @property
    def general(self) -> Specialist:
        """The generic assistant role."""
        return self._general

    def resolve(self, specialist_id: Optional[str]) -> Specialist:
        """Specialist for a routing target; None means the general assistant."""
        if specialist_id is None:
            return self._general
        return self.get(specialist_id)

    def __len__(self) -> int:
        return len(self._specialists)

    def __contains__(self, specialist_id: object) -> bool:
        return specialist_id in self._by_id


def load_registry(config: Optional[Dict[str, Any]] = None) -> SpecialistRegistry:
    """
    Load the registry from ``SPECIALISTS_CONFIG_PATH`` or the built-in defaults.

    Raises:
        ConfigInvalid: If the configuration is malformed
    """
    path = (config or {}).get("SPECIALISTS_CONFIG_PATH") or ""
    if path:
        registry = SpecialistRegistry.from_file(path)
        origin = path
    else:
        registry = SpecialistRegistry.from_config(DEFAULT_SPECIALISTS)
        origin = "built-in"

    logger.info(
        "Specialist registry loaded",
        origin=origin,
        specialists=[s.id for s in registry.list_specialists()]
    )
    return registry
