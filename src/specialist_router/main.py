"""FastAPI application entry point for the Specialist Router.

This module provides:
- FastAPI app initialization
- Session endpoints (start, continue, inspect, stats, terminate)
- Health, metrics and admin cleanup endpoints
- Error handling and request logging middleware
"""

import time
import uuid

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from specialist_router.engine import ReplyFailed, RoutingEngine, get_engine
from specialist_router.models import (
    ContinueSessionRequest,
    ErrorResponse,
    HealthResponse,
    RoutingMetrics,
    Session,
    SessionReply,
    SessionStats,
    StartSessionRequest,
)
from specialist_router.store import SessionNotFound
from specialist_router.utils import (
    APP_VERSION,
    ConfigurationError,
    get_current_timestamp,
    initialize_app,
    sanitize_for_logging,
)


app = FastAPI(
    title="Specialist Router",
    description="Routes conversation turns to specialist roles with classifier and keyword fallback",
    version=APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",  # Chat UI development server
        "http://localhost:8080",
    ],
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
)


def _error_body(request: Request, error: str, message: str, details=None) -> dict:
    return ErrorResponse(
        error=error,
        message=message,
        details=details,
        request_id=getattr(request.state, 'request_id', None)
    ).model_dump(mode="json")


# Request/Response logging and timing middleware
@app.middleware("http")
async def logging_and_timing_middleware(request: Request, call_next):
    """Log requests and responses with timing information."""
    start_time = time.time()
    request_id = str(uuid.uuid4())[:8]
    request.state.request_id = request_id

    logger.info(
        "Incoming request",
        method=request.method,
        path=request.url.path,
        request_id=request_id,
        client_ip=request.client.host if request.client else "unknown"
    )

    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(
            "Request failed",
            method=request.method,
            path=request.url.path,
            error=str(e),
            error_type=type(e).__name__,
            processing_time_ms=(time.time() - start_time) * 1000,
            request_id=request_id
        )
        raise

    logger.info(
        "Request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        processing_time_ms=(time.time() - start_time) * 1000,
        request_id=request_id
    )
    return response


# Global exception handlers
@app.exception_handler(SessionNotFound)
async def session_not_found_handler(request: Request, exc: SessionNotFound):
    """Unknown or expired session: the caller must start a new one."""
    return JSONResponse(
        status_code=404,
        content=_error_body(request, "SESSION_NOT_FOUND", str(exc), {"session_id": exc.session_id})
    )


@app.exception_handler(ReplyFailed)
async def reply_failed_handler(request: Request, exc: ReplyFailed):
    """Generation failed; the routing decision is still reported."""
    return JSONResponse(
        status_code=502,
        content=_error_body(
            request,
            "GENERATION_FAILED",
            "The specialist could not produce a reply. Please try again.",
            {
                "session_id": exc.session_id,
                "kind": exc.kind.value,
                "decision": exc.decision.model_dump(mode="json")
            }
        )
    )


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    """Handle configuration errors."""
    return JSONResponse(
        status_code=500,
        content=_error_body(request, "CONFIGURATION_ERROR", "System configuration error", {"error": str(exc)})
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with consistent error format."""
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, "HTTP_ERROR", str(exc.detail), {"status_code": exc.status_code})
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Handle request body validation errors."""
    return JSONResponse(
        status_code=422,
        content=_error_body(
            request,
            "VALIDATION_ERROR",
            "Invalid request",
            {"errors": [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()]}
        )
    )


@app.exception_handler(ValueError)
async def validation_error_handler(request: Request, exc: ValueError):
    """Handle validation errors."""
    return JSONResponse(
        status_code=422,
        content=_error_body(request, "VALIDATION_ERROR", str(exc))
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected errors."""
    logger.error(
        "Unexpected error occurred",
        error=str(exc),
        error_type=type(exc).__name__,
        request_id=getattr(request.state, 'request_id', None)
    )
    return JSONResponse(
        status_code=500,
        content=_error_body(request, "INTERNAL_SERVER_ERROR", "An unexpected error occurred. Please try again later.")
    )


@app.on_event("startup")
async def startup_event():
    """Load configuration and the specialist registry; refuse to start if either is invalid."""
    initialize_app()
    engine = get_engine()
    logger.info(
        "Specialist router started",
        version=APP_VERSION,
        specialists=[s.id for s in engine.registry.list_specialists()]
    )


@app.on_event("shutdown")
async def shutdown_event():
    await get_engine().shutdown()


# API Endpoints

@app.get("/")
async def root():
    return {
        "service": "Specialist Router",
        "version": APP_VERSION,
        "timestamp": get_current_timestamp(),
        "endpoints": ["/sessions", "/health", "/metrics", "/docs"]
    }


@app.post("/sessions", response_model=SessionReply)
async def start_session(
    request: StartSessionRequest,
    engine: RoutingEngine = Depends(get_engine)
) -> SessionReply:
    """Start a session with its first message and answer it."""
    logger.info(
        "Start session request",
        session_id=request.session_id,
        message_preview=sanitize_for_logging(request.message, 100)
    )
    return await engine.start_session(request.message, request.session_id)


@app.post("/sessions/{session_id}/messages", response_model=SessionReply)
async def continue_session(
    session_id: str,
    request: ContinueSessionRequest,
    engine: RoutingEngine = Depends(get_engine)
) -> SessionReply:
    """Route and answer the next message of an existing session."""
    logger.info(
        "Continue session request",
        session_id=session_id,
        message_preview=sanitize_for_logging(request.message, 100)
    )
    return await engine.continue_session(session_id, request.message)


@app.get("/sessions/{session_id}", response_model=Session)
async def get_session(session_id: str, engine: RoutingEngine = Depends(get_engine)) -> Session:
    """Full session record including turn history."""
    return await engine.get_session(session_id)


@app.get("/sessions/{session_id}/stats", response_model=SessionStats)
async def get_session_stats(session_id: str, engine: RoutingEngine = Depends(get_engine)) -> SessionStats:
    """Turn count, switch count and specialist distribution for a session."""
    return await engine.session_stats(session_id)


@app.delete("/sessions/{session_id}")
async def end_session(session_id: str, engine: RoutingEngine = Depends(get_engine)):
    """Terminate a session explicitly."""
    if not await engine.end_session(session_id):
        raise SessionNotFound(session_id)
    return {"session_id": session_id, "terminated": True}


@app.get("/health", response_model=HealthResponse)
async def health_check(engine: RoutingEngine = Depends(get_engine)):
    """
    Engine health summary.

    Reports registry state and the last known state of the classification
    and generation services. Returns 503 only when the engine cannot route.
    """
    health = engine.status()
    if health.status == "unhealthy":
        return JSONResponse(status_code=503, content=health.model_dump(mode="json"))
    return health


@app.get("/metrics", response_model=RoutingMetrics)
async def get_metrics(engine: RoutingEngine = Depends(get_engine)) -> RoutingMetrics:
    """Engine-wide routing metrics."""
    return engine.metrics()


@app.post("/admin/cleanup")
async def trigger_cleanup(engine: RoutingEngine = Depends(get_engine)):
    """Expire idle sessions now."""
    removed = await engine.cleanup()
    logger.info("Manual cleanup completed", removed_sessions=removed)
    return {"removed_sessions": removed, "timestamp": get_current_timestamp()}
