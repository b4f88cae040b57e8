"""
In-memory session state for conversations routed between specialists.

This module provides:
- Session creation and lookup (idempotent for existing ids)
- Atomic, append-only turn recording with switch counting
- Per-session locks that serialize whole routing requests
- Idle expiry with a lazily started background cleanup task
- Per-session analytics (turn count, switches, specialist distribution)

Concurrency model: the store runs on a single asyncio event loop. Mutating
methods contain no awaits, so each one completes without interleaving.
``lock(session_id)`` hands out one asyncio.Lock per session so callers can
serialize a full classify/decide/append cycle for that session while other
sessions proceed in parallel. There is no store-wide lock.
"""

import asyncio
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from loguru import logger

from specialist_router.models import GENERAL_ROLE_KEY, Session, SessionStats, Turn
from specialist_router.utils import generate_session_id


class SessionNotFound(KeyError):
    """Raised when a session id is unknown or has expired."""

    def __init__(self, session_id: str):
        super().__init__(session_id)
        self.session_id = session_id

    def __str__(self) -> str:
        return f"Session {self.session_id} not found"


class SessionStore:
    """In-memory, per-session serialized storage for routing sessions."""

    def __init__(self, idle_timeout_minutes: float = 30, cleanup_interval_seconds: float = 60):
        """Initialize the session store.

        Args:
            idle_timeout_minutes: Inactivity window after which a session expires
            cleanup_interval_seconds: How often the background cleanup runs
        """
        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

        self.idle_timeout = timedelta(minutes=idle_timeout_minutes)
        self.cleanup_interval = cleanup_interval_seconds

        self._cleanup_task: Optional[asyncio.Task] = None

    def _ensure_background_tasks_started(self):
        """Start the cleanup worker on the running loop, once."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop running; started on the next async call
            return

        async def cleanup_worker():
            while True:
                await asyncio.sleep(self.cleanup_interval)
                try:
                    await self.cleanup_expired()
                except Exception as e:
                    logger.error("Session cleanup failed", error=str(e))

        self._cleanup_task = loop.create_task(cleanup_worker())

    async def shutdown(self) -> None:
        """Stop the background cleanup task."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    def _is_expired(self, session: Session, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return session.last_activity + self.idle_timeout <= now

    def _discard(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        lock = self._locks.get(session_id)
        if lock is not None and not lock.locked():
            del self._locks[session_id]

    def _in_use(self, session_id: str) -> bool:
        lock = self._locks.get(session_id)
        return lock is not None and lock.locked()

    def _live_session(self, session_id: str, check_expiry: bool = True) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        if check_expiry and self._is_expired(session):
            logger.info("Session expired on access", session_id=session_id)
            self._discard(session_id)
            raise SessionNotFound(session_id)
        return session

    def lock(self, session_id: str) -> asyncio.Lock:
        """Lock serializing routing requests for one session."""
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    async def create_or_get(self, session_id: Optional[str] = None) -> Session:
        """Return the live session for ``session_id``, creating it if absent.

        Args:
            session_id: Optional session ID, generated if not provided

        Returns:
            Existing session unchanged, or a fresh one
        """
        self._ensure_background_tasks_started()

        if session_id is None:
            session_id = generate_session_id()

        try:
            return self._live_session(session_id)
        except SessionNotFound:
            pass

        session = Session(session_id=session_id)
        self._sessions[session_id] = session
        logger.info("Session created", session_id=session_id, active_sessions=len(self._sessions))
        return session

    async def get(self, session_id: str, touch: bool = False) -> Session:
        """Get a live session.

        Args:
            session_id: Session identifier
            touch: Refresh the session's last activity, restarting its idle window

        Raises:
            SessionNotFound: If the id is unknown or expired
        """
        self._ensure_background_tasks_started()
        session = self._live_session(session_id)
        if touch:
            session.last_activity = datetime.now(timezone.utc)
        return session

    async def append_turn(self, session_id: str, turn: Turn) -> Session:
        """Append a turn, assigning its index and updating switch bookkeeping.

        The switch count grows when the turn's specialist differs from the
        active one and the active one was a named specialist. A session whose
        lock is held is not expired here; the lock holder already read it live.

        Raises:
            SessionNotFound: If the id is unknown or expired
        """
        session = self._live_session(session_id, check_expiry=not self._in_use(session_id))

        recorded = turn.model_copy(update={"index": len(session.turns)})
        previous = session.active_specialist_id

        session.turns.append(recorded)
        if previous is not None and recorded.specialist_id != previous:
            session.switch_count += 1
        session.active_specialist_id = recorded.specialist_id
        session.last_activity = datetime.now(timezone.utc)

        logger.debug(
            "Turn appended",
            session_id=session_id,
            index=recorded.index,
            specialist=recorded.specialist_id,
            switch_count=session.switch_count
        )
        return session

    async def get_recent_turns(self, session_id: str, n: int) -> List[Turn]:
        """Last ``n`` turns of a session, most recent last."""
        session = self._live_session(session_id)
        return session.recent_turns(n)

    async def expire(self, session_id: str) -> bool:
        """Terminate a session explicitly.

        Returns:
            True if removed, False if not found
        """
        existed = session_id in self._sessions
        self._discard(session_id)
        if existed:
            logger.info("Session terminated", session_id=session_id)
        return existed

    async def cleanup_expired(self) -> int:
        """Remove sessions idle longer than the expiry window.

        Sessions with a routing request in progress are skipped.

        Returns:
            Number of sessions removed
        """
        now = datetime.now(timezone.utc)
        expired = [
            session_id for session_id, session in self._sessions.items()
            if self._is_expired(session, now) and not self._in_use(session_id)
        ]
        for session_id in expired:
            self._discard(session_id)

        # locks handed out for ids that never became sessions
        orphaned = [
            session_id for session_id, lock in self._locks.items()
            if session_id not in self._sessions and not lock.locked()
        ]
        for session_id in orphaned:
            del self._locks[session_id]

        if expired:
            logger.info("Expired sessions removed", removed=len(expired), active_sessions=len(self._sessions))
        return len(expired)

    async def stats(self, session_id: str) -> SessionStats:
        """Analytics counters for one session.

        Raises:
            SessionNotFound: If the id is unknown or expired
        """
        session = self._live_session(session_id)
        distribution = Counter(turn.specialist_id or GENERAL_ROLE_KEY for turn in session.turns)
        return SessionStats(
            session_id=session_id,
            turn_count=session.turn_count,
            switch_count=session.switch_count,
            specialist_distribution=dict(distribution)
        )

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)
