"""
Captcha sessions.

A CaptchaSession binds one challenge to the cookies that were issued with it.
Each session owns its CookieJar; jars are never shared between sessions, so
a retry with a fresh session can never replay a stale cookie.

SessionRegistry keeps sessions alive between the "show me the captcha" and
"here is the code" requests of the manual path. Sessions expire after
ttl_seconds (300 by default); expired ids raise SessionExpiredError.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field

import httpx

from courtview.config import settings
from courtview.errors import SessionExpiredError

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL_SECONDS = 300


class CookieJar:
    """Per-session name -> value cookie map built from Set-Cookie headers."""

    def __init__(self):
        self._cookies: dict[str, str] = {}

    def update_from_response(self, resp: httpx.Response) -> None:
        for raw in resp.headers.get_list("set-cookie"):
            pair = raw.split(";", 1)[0]
            name, sep, value = pair.partition("=")
            if sep and name.strip():
                self._cookies[name.strip()] = value.strip()

    def set(self, name: str, value: str) -> None:
        self._cookies[name] = value

    def header(self) -> str:
        return "; ".join(f"{k}={v}" for k, v in self._cookies.items())

    def as_dict(self) -> dict[str, str]:
        return dict(self._cookies)

    def __len__(self) -> int:
        return len(self._cookies)

    def __bool__(self) -> bool:
        return bool(self._cookies)


@dataclass
class CaptchaSession:
    document_id: str
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    cookies: CookieJar = field(default_factory=CookieJar)
    created_at: float = field(default_factory=lambda: time.monotonic())
    ttl_seconds: float = DEFAULT_SESSION_TTL_SECONDS
    challenge_url: str | None = None
    challenge_image: bytes | None = field(default=None, repr=False)

    def is_expired(self, now: float | None = None) -> bool:
        now = time.monotonic() if now is None else now
        return now - self.created_at >= self.ttl_seconds


class SessionRegistry:
    """In-memory session table for the manual captcha path."""

    def __init__(self, ttl_seconds: float = DEFAULT_SESSION_TTL_SECONDS):
        self.ttl_seconds = ttl_seconds
        self._sessions: dict[str, CaptchaSession] = {}
        self._lock = threading.Lock()

    def open(self, document_id: str) -> CaptchaSession:
        session = CaptchaSession(document_id=document_id, ttl_seconds=self.ttl_seconds)
        self.add(session)
        return session

    def add(self, session: CaptchaSession) -> None:
        with self._lock:
            self._sessions[session.session_id] = session

    def get(self, session_id: str) -> CaptchaSession:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionExpiredError(f"Unknown captcha session {session_id!r}")
            if session.is_expired():
                del self._sessions[session_id]
                raise SessionExpiredError(f"Captcha session {session_id!r} expired")
            return session

    def discard(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def cleanup(self) -> int:
        """Drop expired sessions. Returns how many were removed."""
        now = time.monotonic()
        with self._lock:
            expired = [sid for sid, s in self._sessions.items() if s.is_expired(now)]
            for sid in expired:
                del self._sessions[sid]
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)


_registry: SessionRegistry | None = None


def get_registry() -> SessionRegistry:
    """Lazy-init the process-wide session registry."""
    global _registry
    if _registry is None:
        _registry = SessionRegistry(ttl_seconds=settings.captcha_session_ttl_seconds)
    return _registry
