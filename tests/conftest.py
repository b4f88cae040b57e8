"""
Shared pytest fixtures for the specialist router tests.

No test reaches the network: classification and generation go through the
fakes in ``fakes.py``.
"""

import pytest

from specialist_router.classifier import ClassificationError
from specialist_router.engine import RoutingEngine
from specialist_router.llm import ResponseGenerator
from specialist_router.models import FailureKind
from specialist_router.registry import DEFAULT_SPECIALISTS, SpecialistRegistry
from specialist_router.router import RoutingOrchestrator
from specialist_router.scorer import KeywordFallbackScorer
from specialist_router.store import SessionStore

from fakes import FakeChatClient, StubClassifier


@pytest.fixture
def registry():
    """Registry built from the default specialist definitions."""
    return SpecialistRegistry.from_config(DEFAULT_SPECIALISTS)


@pytest.fixture
def scorer(registry):
    return KeywordFallbackScorer(registry)


@pytest.fixture
async def store():
    """Session store, shut down after the test."""
    session_store = SessionStore(idle_timeout_minutes=30, cleanup_interval_seconds=60)
    yield session_store
    await session_store.shutdown()


@pytest.fixture
def unavailable():
    """Classification error for an unreachable service."""
    return ClassificationError(FailureKind.UNAVAILABLE, "classifier timed out")


@pytest.fixture
def make_orchestrator(registry, scorer, store):
    """Factory for an orchestrator backed by a scripted classifier."""
    def factory(*outcomes, max_context_turns=3):
        classifier = StubClassifier(*outcomes)
        orchestrator = RoutingOrchestrator(
            registry=registry,
            scorer=scorer,
            classifier=classifier,
            store=store,
            max_context_turns=max_context_turns,
            hint_floor=0.3
        )
        return orchestrator, classifier
    return factory


@pytest.fixture
def make_engine(registry, store, make_orchestrator):
    """Factory for a fully wired engine with scripted classifier and generator."""
    def factory(classifier_outcomes, generator_outcomes=("Here is my answer.",)):
        orchestrator, classifier = make_orchestrator(*classifier_outcomes)
        chat_client = FakeChatClient(*generator_outcomes)
        generator = ResponseGenerator(client=chat_client, model="test/generator", timeout_seconds=1.0)
        engine = RoutingEngine(registry, store, orchestrator, generator)
        return engine, classifier, chat_client
    return factory
