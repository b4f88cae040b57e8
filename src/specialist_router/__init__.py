"""
Specialist Router
Query classification and specialist routing for multi-turn conversations
"""

from .utils import APP_VERSION as __version__

# Specialist definitions
from .registry import (
    SpecialistRegistry,
    load_registry,
    ConfigInvalid,
    SpecialistNotFound,
    DEFAULT_SPECIALISTS
)

# Keyword fallback scoring
from .scorer import (
    KeywordFallbackScorer,
    ScoringWeights,
    ClassifierHint,
    SpecialistScore,
    FallbackSelection,
    tokenize
)

# External classification and generation
from .classifier import ClassificationClient, ClassificationError
from .llm import ResponseGenerator, GenerationError

# Session state and routing
from .store import SessionStore, SessionNotFound
from .router import RoutingOrchestrator, RoutingOutcome, validate_query
from .engine import RoutingEngine, ReplyFailed, get_engine, set_engine

from .models import (
    Specialist, Turn, Session, RoutingDecision, ClassificationResult,
    ClassificationSource, FailureKind, RoutingState, SessionStats, SessionReply
)
from .utils import ConfigurationError, initialize_app

__all__ = [
    "__version__",

    # Registry
    "SpecialistRegistry",
    "load_registry",
    "ConfigInvalid",
    "SpecialistNotFound",
    "DEFAULT_SPECIALISTS",

    # Fallback scoring
    "KeywordFallbackScorer",
    "ScoringWeights",
    "ClassifierHint",
    "SpecialistScore",
    "FallbackSelection",
    "tokenize",

    # External services
    "ClassificationClient",
    "ClassificationError",
    "ResponseGenerator",
    "GenerationError",

    # Sessions and routing
    "SessionStore",
    "SessionNotFound",
    "RoutingOrchestrator",
    "RoutingOutcome",
    "validate_query",
    "RoutingEngine",
    "ReplyFailed",
    "get_engine",
    "set_engine",

    # Models and utils
    "Specialist",
    "Turn",
    "Session",
    "RoutingDecision",
    "ClassificationResult",
    "ClassificationSource",
    "FailureKind",
    "RoutingState",
    "SessionStats",
    "SessionReply",
    "ConfigurationError",
    "initialize_app"
]
