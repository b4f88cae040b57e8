"""
Session-level API of the routing engine.

This module wires the registry, scorer, classifier, session store,
orchestrator and response generator together and exposes the operations
consumed by the HTTP layer:

- start_session(message) -> session id, decision, reply
- continue_session(session_id, message) -> decision, reply
- session_stats(session_id) / get_session(session_id) / end_session(session_id)
- status() -> health summary with last known external service states
- metrics() -> engine-wide routing metrics
"""

from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Optional

import psutil
from loguru import logger

from specialist_router.classifier import ClassificationClient
from specialist_router.llm import GenerationError, ResponseGenerator
from specialist_router.models import (
    GENERAL_ROLE_KEY,
    FailureKind,
    HealthResponse,
    RoutingDecision,
    RoutingMetrics,
    Session,
    SessionReply,
    SessionStats,
)
from specialist_router.registry import SpecialistRegistry, load_registry
from specialist_router.router import RoutingOrchestrator, validate_query
from specialist_router.scorer import KeywordFallbackScorer, ScoringWeights
from specialist_router.store import SessionStore
from specialist_router.utils import APP_VERSION, Timer, get_config, get_current_timestamp


class ReplyFailed(Exception):
    """Raised when the routed specialist could not produce a reply.

    The routing decision is still valid and recorded in the session.
    """

    def __init__(self, session_id: str, decision: RoutingDecision, kind: FailureKind, message: str):
        super().__init__(message)
        self.session_id = session_id
        self.decision = decision
        self.kind = kind


@dataclass
class ServiceState:
    """Last observed outcome of calls to one external service."""
    status: str = "unknown"
    last_checked: Optional[str] = None
    last_error: Optional[str] = None
    latency_ms: Optional[float] = None

    def record(self, failure: Optional[FailureKind], latency_ms: Optional[float] = None,
               error: Optional[str] = None) -> None:
        self.status = failure.value if failure else "reachable"
        self.last_checked = get_current_timestamp()
        self.latency_ms = round(latency_ms, 2) if latency_ms is not None else None
        self.last_error = error if failure else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "last_checked": self.last_checked,
            "last_error": self.last_error,
            "latency_ms": self.latency_ms,
        }


@dataclass
class EngineMetrics:
    """Counters tracked across all sessions."""
    total_requests: int = 0
    total_switches: int = 0
    decisions_by_source: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    decisions_by_specialist: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    classification_failures: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    generation_failures: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    routing_times: Deque[float] = field(default_factory=lambda: deque(maxlen=1000))

    def record_decision(self, decision: RoutingDecision, routing_time_ms: float) -> None:
        self.total_requests += 1
        self.decisions_by_source[decision.source.value] += 1
        self.decisions_by_specialist[decision.specialist_id or GENERAL_ROLE_KEY] += 1
        if decision.switched:
            self.total_switches += 1
        if decision.failure_kind is not None:
            self.classification_failures[decision.failure_kind.value] += 1
        self.routing_times.append(routing_time_ms)

    @property
    def avg_routing_time_ms(self) -> float:
        if not self.routing_times:
            return 0.0
        return sum(self.routing_times) / len(self.routing_times)


class RoutingEngine:
    """Routes messages within sessions and produces specialist replies."""

    def __init__(self, registry: SpecialistRegistry, store: SessionStore,
                 orchestrator: RoutingOrchestrator, generator: ResponseGenerator):
        self.registry = registry
        self.store = store
        self.orchestrator = orchestrator
        self.generator = generator

        self._metrics = EngineMetrics()
        self._classification_state = ServiceState()
        self._generation_state = ServiceState()
        self._labels: Dict[Optional[str], str] = {
            s.id: s.label for s in registry.scored_specialists()
        }
        self._labels[None] = registry.general.label

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None) -> "RoutingEngine":
        """
        Build a fully wired engine from configuration.

        Raises:
            ConfigurationError: If configuration or the specialist registry is invalid
        """
        config = config or get_config()
        registry = load_registry(config)
        scorer = KeywordFallbackScorer(
            registry,
            weights=ScoringWeights.from_config(config),
            hint_weight=config["CLASSIFIER_HINT_WEIGHT"]
        )
        store = SessionStore(
            idle_timeout_minutes=config["SESSION_IDLE_TIMEOUT_MINUTES"],
            cleanup_interval_seconds=config["SESSION_CLEANUP_INTERVAL_SECONDS"]
        )
        orchestrator = RoutingOrchestrator(
            registry=registry,
            scorer=scorer,
            classifier=ClassificationClient(registry, config=config),
            store=store,
            max_context_turns=config["MAX_CONTEXT_TURNS"],
            hint_floor=config["CLASSIFIER_HINT_FLOOR"]
        )
        return cls(registry, store, orchestrator, ResponseGenerator(config=config))

    async def _handle(self, session_id: str, message: str) -> SessionReply:
        outcome = await self.orchestrator.route(session_id, message)
        decision = outcome.decision

        self._metrics.record_decision(decision, outcome.routing_time_ms)
        self._classification_state.record(
            decision.failure_kind,
            outcome.classification_time_ms,
            decision.rationale if decision.failure_kind else None
        )

        specialist = self.registry.resolve(decision.specialist_id)
        try:
            with Timer("reply_generation") as timer:
                reply = await self.generator.respond(specialist, message, outcome.context, self._labels)
        except GenerationError as e:
            self._metrics.generation_failures[e.kind.value] += 1
            self._generation_state.record(e.kind, error=str(e))
            logger.warning(
                "Reply generation failed after routing",
                session_id=session_id,
                specialist=decision.specialist_id,
                kind=e.kind.value
            )
            raise ReplyFailed(session_id, decision, e.kind, str(e)) from e

        self._generation_state.record(None, timer.duration_ms)
        return SessionReply(
            session_id=session_id,
            decision=decision,
            reply=reply,
            routing_time_ms=outcome.routing_time_ms,
            generation_time_ms=timer.duration_ms
        )

    async def start_session(self, message: str, session_id: Optional[str] = None) -> SessionReply:
        """
        Start (or resume, for an existing id) a session with its first message.

        Raises:
            ValueError: If the message is invalid
            ReplyFailed: If the reply could not be generated
        """
        validate_query(message)
        session = await self.store.create_or_get(session_id)
        logger.info("Starting session", session_id=session.session_id)
        return await self._handle(session.session_id, message)

    async def continue_session(self, session_id: str, message: str) -> SessionReply:
        """
        Route and answer the next message of an existing session.

        Raises:
            SessionNotFound: If the session is unknown or expired
            ValueError: If the message is invalid
            ReplyFailed: If the reply could not be generated
        """
        validate_query(message)
        await self.store.get(session_id)
        return await self._handle(session_id, message)

    async def get_session(self, session_id: str) -> Session:
        return await self.store.get(session_id)

    async def session_stats(self, session_id: str) -> SessionStats:
        return await self.store.stats(session_id)

    async def end_session(self, session_id: str) -> bool:
        return await self.store.expire(session_id)

    async def cleanup(self) -> int:
        return await self.store.cleanup_expired()

    async def shutdown(self) -> None:
        await self.store.shutdown()

    def status(self) -> HealthResponse:
        """Health summary from the registry and last known service states."""
        registry_loaded = len(self.registry) > 0
        services = {
            "classification": self._classification_state.status,
            "generation": self._generation_state.status,
        }

        if not registry_loaded:
            overall = "unhealthy"
        elif any(state in {k.value for k in FailureKind} for state in services.values()):
            overall = "degraded"
        else:
            overall = "healthy"

        return HealthResponse(
            status=overall,
            timestamp=get_current_timestamp(),
            version=APP_VERSION,
            registry_loaded=registry_loaded,
            specialist_count=len(self.registry),
            active_sessions=self.store.active_sessions,
            services=services,
            checks={
                "classification": self._classification_state.to_dict(),
                "generation": self._generation_state.to_dict(),
            }
        )

    def metrics(self) -> RoutingMetrics:
        """Engine-wide routing metrics."""
        try:
            memory_usage_mb = psutil.Process().memory_info().rss / 1024 / 1024
        except psutil.Error:
            memory_usage_mb = 0.0

        m = self._metrics
        return RoutingMetrics(
            timestamp=get_current_timestamp(),
            total_requests=m.total_requests,
            decisions_by_source=dict(m.decisions_by_source),
            decisions_by_specialist=dict(m.decisions_by_specialist),
            classification_failures=dict(m.classification_failures),
            generation_failures=dict(m.generation_failures),
            total_switches=m.total_switches,
            avg_routing_time_ms=m.avg_routing_time_ms,
            active_sessions=self.store.active_sessions,
            memory_usage_mb=memory_usage_mb
        )


# Global instance for application use
_engine_instance: Optional[RoutingEngine] = None


def get_engine() -> RoutingEngine:
    """Get global routing engine instance."""
    global _engine_instance
    if _engine_instance is None:
        _engine_instance = RoutingEngine.from_config()
    return _engine_instance


def set_engine(engine: Optional[RoutingEngine]) -> None:
    """Replace the global engine instance."""
    global _engine_instance
    _engine_instance = engine
