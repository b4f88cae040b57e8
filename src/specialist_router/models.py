"""
Pydantic data models for the Specialist Router.

This module defines all data structures used throughout the application,
including the routing data model (specialists, turns, sessions, decisions),
the raw classification result and the HTTP request/response models.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple, Literal, Any
import re

from pydantic import BaseModel, ConfigDict, Field, field_validator


# Key used for the generic role in distributions and metrics
GENERAL_ROLE_KEY = "general"

MAX_QUERY_LENGTH = 4000

SESSION_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_-]{8,64}$')


# UTC datetime factory function
def utc_now():
    """Factory function to get current UTC datetime."""
    return datetime.now(timezone.utc)


# Enums for controlled vocabulary
class ClassificationSource(str, Enum):
    """Which mechanism produced a routing decision."""
    CLASSIFIER = "classifier"    # External AI classification accepted
    FALLBACK = "fallback"        # Local keyword scoring


class FailureKind(str, Enum):
    """Failure categories signalled by the external AI service clients."""
    UNAVAILABLE = "unavailable"  # Network, timeout, 5xx
    MALFORMED = "malformed"      # Response violated the expected schema
    REJECTED = "rejected"        # Service declined the request or auth failed


class RoutingState(str, Enum):
    """States a single routing request moves through."""
    START = "start"
    CLASSIFYING = "classifying"
    CLASSIFIED_HIGH_CONFIDENCE = "classified_high_confidence"
    CLASSIFIED_LOW_CONFIDENCE = "classified_low_confidence"
    CLASSIFICATION_FAILED = "classification_failed"
    FALLBACK = "fallback"
    DECIDED = "decided"


def _normalize_keywords(values) -> Tuple[str, ...]:
    """Lower-case, strip and de-duplicate keywords while keeping their order."""
    seen = []
    for value in values or ():
        keyword = " ".join(str(value).lower().split())
        if keyword and keyword not in seen:
            seen.append(keyword)
    return tuple(seen)


class Specialist(BaseModel):
    """A named response role with domain keywords and a confidence threshold."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Stable specialist identifier")
    label: str = Field(..., min_length=1, description="Display label")
    keywords: Tuple[str, ...] = Field(default=(), description="Ordered domain keywords")
    intent_keywords: Tuple[str, ...] = Field(default=(), description="Ordered intent keywords")
    threshold: float = Field(..., ge=0.0, le=1.0, description="Minimum confidence to route here")
    prompt_template: str = Field(..., min_length=1, description="Role prompt with {query} and {context} slots")
    is_generic: bool = Field(default=False, description="Whether this is the general assistant role")

    @field_validator('keywords', 'intent_keywords', mode='before')
    @classmethod
    def normalize_keywords(cls, v):
        return _normalize_keywords(v)

    @field_validator('id')
    @classmethod
    def validate_id(cls, v):
        v = v.strip()
        if not re.match(r'^[a-z0-9][a-z0-9_-]*$', v):
            raise ValueError('Specialist id must be lower-case alphanumerics, hyphens or underscores')
        return v


@dataclass
class ClassificationResult:
    """Raw structured answer from the external classification service.

    Values are carried as received; range and identifier checks happen in
    the routing orchestrator.
    """
    target_specialist: str
    confidence: float
    rationale: str = ""
    needs_clarification: bool = False


class Turn(BaseModel):
    """One query/decision unit within a session. Immutable once appended."""
    model_config = ConfigDict(frozen=True)

    index: int = Field(default=0, ge=0, description="Sequence index within the session")
    query: str = Field(..., description="User query text")
    specialist_id: Optional[str] = Field(None, description="Resolved specialist, None for the general assistant")
    confidence: float = Field(..., ge=0.0, le=1.0, description="Decision confidence [0,1]")
    rationale: str = Field(..., min_length=1, description="Why this specialist was chosen")
    source: ClassificationSource = Field(..., description="Mechanism that produced the decision")
    needs_clarification: bool = Field(default=False, description="Whether clarification was requested")
    failure_kind: Optional[FailureKind] = Field(None, description="Classification failure, if any")
    timestamp: datetime = Field(default_factory=utc_now, description="When the turn was recorded")


class Session(BaseModel):
    """A single conversation's turn history and active-specialist state."""
    session_id: str = Field(..., description="Unique session identifier")
    created_at: datetime = Field(default_factory=utc_now, description="Session creation timestamp")
    turns: List[Turn] = Field(default_factory=list, description="Append-only turn history")
    active_specialist_id: Optional[str] = Field(None, description="Current specialist, None for the general assistant")
    switch_count: int = Field(default=0, ge=0, description="Number of specialist switches")
    last_activity: datetime = Field(default_factory=utc_now, description="Last activity timestamp")

    @field_validator('session_id')
    @classmethod
    def validate_session_id(cls, v):
        if not SESSION_ID_PATTERN.match(v):
            raise ValueError('Session ID must be 8-64 alphanumeric characters with optional hyphens/underscores')
        return v

    @property
    def turn_count(self) -> int:
        """Total number of turns in the session."""
        return len(self.turns)

    def recent_turns(self, n: int) -> List[Turn]:
        """Last ``n`` turns, most recent last."""
        if n <= 0:
            return []
        return list(self.turns[-n:])


class RoutingDecision(BaseModel):
    """Outcome of routing a single query."""
    specialist_id: Optional[str] = Field(None, description="Target specialist, None for the general assistant")
    specialist_label: str = Field(..., description="Display label of the target role")
    confidence: float = Field(..., ge=0.0, le=1.0, description="Decision confidence [0,1]")
    rationale: str = Field(..., min_length=1, description="Human-readable explanation")
    needs_clarification: bool = Field(default=False, description="Whether the classifier asked for clarification")
    switched: bool = Field(..., description="Whether the specialist differs from the previous turn's")
    source: ClassificationSource = Field(..., description="Mechanism that produced the decision")
    previous_specialist_id: Optional[str] = Field(None, description="Active specialist before this turn")
    failure_kind: Optional[FailureKind] = Field(None, description="Classification failure that forced fallback")
    turn_index: int = Field(default=0, ge=0, description="Index of the turn recording this decision")

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "specialist_id": "technical",
                "specialist_label": "Technical Expert",
                "confidence": 0.95,
                "rationale": "Query is about SQL performance tuning",
                "needs_clarification": False,
                "switched": True,
                "source": "classifier",
                "previous_specialist_id": None,
                "failure_kind": None,
                "turn_index": 0
            }
        }
    )


class SessionStats(BaseModel):
    """Analytics counters for one session."""
    session_id: str = Field(..., description="Session identifier")
    turn_count: int = Field(..., ge=0, description="Number of turns")
    switch_count: int = Field(..., ge=0, description="Number of specialist switches")
    specialist_distribution: Dict[str, int] = Field(default_factory=dict, description="Turns per specialist")


# API-specific models
def _validate_message(v: str) -> str:
    if not v or v.isspace():
        raise ValueError('Message cannot be empty or only whitespace')
    return v.strip()


class StartSessionRequest(BaseModel):
    """Request body for starting a session."""
    message: str = Field(..., max_length=MAX_QUERY_LENGTH, min_length=1, description="Initial user message")
    session_id: Optional[str] = Field(None, description="Optional caller-chosen session identifier")

    @field_validator('message')
    @classmethod
    def validate_message(cls, v):
        return _validate_message(v)

    @field_validator('session_id')
    @classmethod
    def validate_session_id(cls, v):
        if v is not None and not SESSION_ID_PATTERN.match(v):
            raise ValueError('Session ID must be 8-64 alphanumeric characters with optional hyphens/underscores')
        return v

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"message": "How do I optimize this SQL query for better performance?"}
        }
    )


class ContinueSessionRequest(BaseModel):
    """Request body for continuing a session."""
    message: str = Field(..., max_length=MAX_QUERY_LENGTH, min_length=1, description="User message")

    @field_validator('message')
    @classmethod
    def validate_message(cls, v):
        return _validate_message(v)


class SessionReply(BaseModel):
    """Routing decision plus the specialist's reply."""
    session_id: str = Field(..., description="Session identifier")
    decision: RoutingDecision = Field(..., description="Routing decision recorded for this turn")
    reply: str = Field(..., description="Generated reply text")
    routing_time_ms: float = Field(default=0.0, description="Time spent routing")
    generation_time_ms: float = Field(default=0.0, description="Time spent generating the reply")


class ErrorResponse(BaseModel):
    """Standard error response model."""
    error: str = Field(..., description="Error type or code")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")
    request_id: Optional[str] = Field(None, description="Request ID for tracing")
    timestamp: datetime = Field(default_factory=utc_now, description="Error timestamp")


class HealthResponse(BaseModel):
    """Engine health summary."""
    status: Literal["healthy", "degraded", "unhealthy"] = Field(..., description="Overall engine health status")
    timestamp: str = Field(..., description="Health check timestamp")
    version: str = Field(..., description="Application version")
    registry_loaded: bool = Field(..., description="Whether the specialist registry is loaded")
    specialist_count: int = Field(default=0, ge=0, description="Number of configured specialists")
    active_sessions: int = Field(default=0, ge=0, description="Sessions currently held in memory")
    services: Dict[str, str] = Field(default_factory=dict, description="Last known external service states")
    checks: Dict[str, Dict[str, Any]] = Field(default_factory=dict, description="Detailed last-known results")


class RoutingMetrics(BaseModel):
    """Engine-wide routing metrics."""
    timestamp: str = Field(..., description="Metrics collection timestamp")
    total_requests: int = Field(default=0, ge=0, description="Routed requests")
    decisions_by_source: Dict[str, int] = Field(default_factory=dict, description="Decisions per source")
    decisions_by_specialist: Dict[str, int] = Field(default_factory=dict, description="Decisions per specialist")
    classification_failures: Dict[str, int] = Field(default_factory=dict, description="Classifier failures per kind")
    generation_failures: Dict[str, int] = Field(default_factory=dict, description="Generation failures per kind")
    total_switches: int = Field(default=0, ge=0, description="Decisions that switched specialist")
    avg_routing_time_ms: float = Field(default=0.0, ge=0.0, description="Average routing latency")
    active_sessions: int = Field(default=0, ge=0, description="Sessions currently held in memory")
    memory_usage_mb: float = Field(default=0.0, ge=0.0, description="Process resident memory")
