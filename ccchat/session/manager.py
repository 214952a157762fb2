"""Session management for per-sender conversations.

One Session exists per sender. It carries the opaque id the backend uses to
resume conversational context and the model currently selected for the
sender.

Backend calls for one sender are serialized by a per-sender lock that lives
beside the sessions, not inside them: ``/reset`` and idle expiry replace the
Session but never the lock, so a prompt queued behind an in-flight call stays
queued behind it. A lock is dropped only once nobody holds or waits on it.

Nothing here is persisted: sessions live in memory and are rebuilt from
scratch after a restart.
"""

import asyncio
import time as _time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, NamedTuple

from loguru import logger


@dataclass
class Session:
    """A conversation with one sender."""

    sender_id: str
    model: str
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    last_activity: float = field(default_factory=_time.monotonic)
    created_at: datetime = field(default_factory=datetime.now)
    started: bool = False  # Backend has seen session_id at least once
    truncated: bool = False  # Last reply looked cut off

    def touch(self) -> None:
        self.last_activity = _time.monotonic()

    def idle_seconds(self) -> float:
        return _time.monotonic() - self.last_activity


class SessionHandle(NamedTuple):
    """What the dispatcher needs for one backend round-trip."""

    session_id: str
    model: str
    is_new: bool


@dataclass
class _SenderLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0  # Holders plus waiters


class SessionManager:
    """
    Manages per-sender sessions and the locks that serialize their calls.

    All mutations are single dict operations with no await in between, so
    concurrent handlers on the event loop never see a half-built session and
    never create two sessions for one sender.
    """

    def __init__(self, default_model: str, ttl_seconds: float | None = None):
        self.default_model = default_model
        self.ttl_seconds = ttl_seconds
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, _SenderLock] = {}

    def _is_expired(self, session: Session) -> bool:
        return self.ttl_seconds is not None and session.idle_seconds() > self.ttl_seconds

    def get_or_create(self, sender: str) -> SessionHandle:
        """
        Get the sender's session or create a new one.

        Args:
            sender: Stable sender id.

        Returns:
            SessionHandle(session_id, model, is_new). ``is_new`` is True
            only for the call that actually inserted the session.
        """
        existing = self._sessions.get(sender)
        if existing is not None and self._is_expired(existing):
            logger.info(f"Session for {sender} idle past TTL, starting fresh")
            self._sessions.pop(sender, None)

        session = self._sessions.get(sender)
        is_new = False
        if session is None:
            candidate = Session(sender_id=sender, model=self.default_model)
            session = self._sessions.setdefault(sender, candidate)
            is_new = session is candidate
            if is_new:
                logger.info(f"New session for {sender}: {session.session_id}")
        session.touch()
        return SessionHandle(session.session_id, session.model, is_new)

    def get(self, sender: str) -> Session | None:
        return self._sessions.get(sender)

    def reset(self, sender: str) -> bool:
        """Forget the sender's session. The next message starts a fresh one."""
        session = self._sessions.pop(sender, None)
        if session is not None:
            logger.info(f"Session reset for {sender} (was {session.session_id})")
        return session is not None

    def switch_model(self, sender: str, model: str) -> Session:
        """Set the sender's model, creating the session if needed. Keeps session_id."""
        session = self._sessions.get(sender)
        if session is None:
            session = self._sessions.setdefault(sender, Session(sender_id=sender, model=model))
        session.model = model
        session.touch()
        logger.info(f"Model for {sender} switched to {model}")
        return session

    def mark_started(self, sender: str, session_id: str) -> None:
        session = self._sessions.get(sender)
        if session is not None and session.session_id == session_id:
            session.started = True

    def mark_truncated(self, sender: str, truncated: bool) -> None:
        session = self._sessions.get(sender)
        if session is not None:
            session.truncated = truncated

    # ── Per-sender serialization ──────────────────────────────────────

    @asynccontextmanager
    async def hold(self, sender: str) -> AsyncIterator[None]:
        """Hold the sender's lock. Waiters are served in arrival order."""
        entry = self._locks.get(sender)
        if entry is None:
            entry = self._locks.setdefault(sender, _SenderLock())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(sender) is entry:
                del self._locks[sender]

    def is_busy(self, sender: str) -> bool:
        """True while a call for ``sender`` is running or queued."""
        return sender in self._locks

    # ── Idle expiry ───────────────────────────────────────────────────

    def expire_idle(self) -> int:
        """Remove sessions idle longer than the TTL. Returns count removed.

        Sessions with a backend call in flight or queued are left alone.
        """
        if self.ttl_seconds is None:
            return 0
        expired = [
            sender for sender, s in self._sessions.items()
            if self._is_expired(s) and not self.is_busy(sender)
        ]
        for sender in expired:
            self._sessions.pop(sender, None)
        if expired:
            logger.info(f"Expired {len(expired)} idle sessions")
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, sender: str) -> bool:
        return sender in self._sessions
