"""
Session table for the HTTP transports.

A Session is one logical MCP conversation. It may be carried by many POSTs
(request/response mode) or by one long-lived SSE stream plus side-channel
POSTs (streaming mode). The SessionStore is the only shared mutable state;
every mutation is a short synchronous block, so it is never observed half
done by another coroutine on the loop, and a lock covers callers on other
threads.
"""

import asyncio
import enum
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .utils import logger, short_id


class SessionState(str, enum.Enum):
    PENDING = "pending"
    INITIALIZED = "initialized"
    ACTIVE = "active"
    CLOSED = "closed"


# markers placed on a session channel next to JSON-RPC messages
PING = object()
CLOSE = object()


@dataclass
class Session:
    session_id: Optional[str] = None
    streaming: bool = False
    created_at: float = field(default_factory=time.time)
    state: SessionState = SessionState.PENDING
    channel: Optional[asyncio.Queue] = None
    # serializes dispatch so replies leave in request order
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    last_used: float = field(default_factory=time.monotonic)
    # true while an event stream generator is reading the channel
    stream_open: bool = False
    _keepalive: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def is_open(self) -> bool:
        return self.state in (SessionState.INITIALIZED, SessionState.ACTIVE)

    def touch(self) -> None:
        self.last_used = time.monotonic()

    def idle_for(self, now: Optional[float] = None) -> float:
        return (time.monotonic() if now is None else now) - self.last_used

    def send(self, message: Any) -> None:
        if self.channel is not None and self.is_open:
            self.channel.put_nowait(message)

    def attach_channel(self) -> asyncio.Queue:
        if self.channel is None:
            self.channel = asyncio.Queue()
        return self.channel

    def detach_channel(self) -> None:
        self._stop_keepalive()
        self.channel = None

    def _stop_keepalive(self) -> None:
        if self._keepalive is not None:
            self._keepalive.cancel()
            self._keepalive = None

    def start_keepalive(self, interval_s: float) -> None:
        """Enqueue a PING every `interval_s` seconds until the session closes."""
        if self.channel is None or self._keepalive is not None:
            return
        self._keepalive = asyncio.get_running_loop().create_task(
            self._keepalive_loop(interval_s),
            name=f"keepalive-{self.session_id}",
        )

    async def _keepalive_loop(self, interval_s: float) -> None:
        while self.is_open:
            await asyncio.sleep(interval_s)
            if not self.is_open:
                break
            self.send(PING)

    def _release(self) -> None:
        self.state = SessionState.CLOSED
        self._stop_keepalive()
        if self.channel is not None:
            # wakes a stream reader blocked on get()
            self.channel.put_nowait(CLOSE)


class SessionStore:
    def __init__(self):
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def _new_id(self) -> str:
        # caller holds self._lock
        while True:
            sid = uuid.uuid4().hex
            if sid not in self._sessions:
                return sid

    def create(self, *, streaming: bool = False) -> Session:
        """Create a session, assign its id and register it in one step."""
        session = Session(
            streaming=streaming,
            channel=asyncio.Queue() if streaming else None,
        )
        with self._lock:
            session.session_id = self._new_id()
            session.state = SessionState.INITIALIZED
            self._sessions[session.session_id] = session
            count = len(self._sessions)
        logger.info(
            "session_created",
            extra={
                "session_id": short_id(session.session_id),
                "streaming": streaming,
                "active_sessions": count,
            },
        )
        return session

    def get(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id:
            return None
        with self._lock:
            return self._sessions.get(session_id)

    def close(self, session_id: Optional[str], reason: str = "terminated") -> bool:
        """Remove and release a session. Returns False if it was not open."""
        if not session_id:
            return False
        with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                return False
            count = len(self._sessions)
        session._release()
        logger.info(
            "session_closed",
            extra={
                "session_id": short_id(session_id),
                "reason": reason,
                "active_sessions": count,
            },
        )
        return True

    def close_all(self, reason: str = "shutdown") -> int:
        with self._lock:
            ids = list(self._sessions)
        return sum(1 for sid in ids if self.close(sid, reason=reason))

    def expire_idle(self, max_idle_s: float, now: Optional[float] = None) -> List[str]:
        """
        Close sessions nobody has used for `max_idle_s` seconds.
        Sessions with a stream being read or a call in flight are left alone.
        """
        now = time.monotonic() if now is None else now
        with self._lock:
            stale = [
                sid for sid, s in self._sessions.items()
                if not s.stream_open and not s.lock.locked() and s.idle_for(now) >= max_idle_s
            ]
        return [sid for sid in stale if self.close(sid, reason="expired")]

    async def sweep(self, max_idle_s: float, interval_s: float) -> None:
        """Run `expire_idle` every `interval_s` seconds until cancelled."""
        while True:
            await asyncio.sleep(interval_s)
            expired = self.expire_idle(max_idle_s)
            if expired:
                logger.info(
                    "sessions_expired",
                    extra={"count": len(expired), "active_sessions": self.active_count},
                )
