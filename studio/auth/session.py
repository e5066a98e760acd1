from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Protocol

from itsdangerous import BadSignature, BadTimeSignature, URLSafeTimedSerializer

from studio.auth.config import AuthConfig
from studio.auth.models import Session
from studio.auth.util import random_token

SESSION_SALT = "studio-session-v1"


def _copy(session: Session) -> Session:
    hs = session.handshake
    return replace(session, handshake=replace(hs, params=dict(hs.params)) if hs is not None else None)


class SessionStore(Protocol):
    """Server-side session storage keyed by session id."""

    def create(self) -> Session:
        """Create and persist a fresh, unauthenticated session."""
        ...

    def get(self, session_id: str) -> Optional[Session]:
        """Return the session, or None when unknown or expired."""
        ...

    def save(self, session: Session) -> None:
        ...

    def delete(self, session_id: str) -> None:
        ...


class InMemorySessionStore:
    """
    Process-local session store with a fixed TTL counted from creation.

    Expired sessions are dropped on lookup, and `create()` sweeps the whole map at most
    once per `sweep_interval_seconds` so sessions nobody returns to are reclaimed too.
    """

    def __init__(self, ttl_seconds: int, *, sweep_interval_seconds: float = 60.0) -> None:
        self._ttl = timedelta(seconds=ttl_seconds)
        self._sweep_interval = timedelta(seconds=sweep_interval_seconds)
        self._next_sweep = datetime.now(timezone.utc) + self._sweep_interval
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    def create(self) -> Session:
        now = datetime.now(timezone.utc)
        session = Session(id=random_token(32), created_at=now, expires_at=now + self._ttl)
        with self._lock:
            if now >= self._next_sweep:
                self._drop_expired(now)
                self._next_sweep = now + self._sweep_interval
            self._sessions[session.id] = session
        return _copy(session)

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if session.expired():
                del self._sessions[session_id]
                return None
            # Callers mutate their copy and call save(); nothing, including the handshake, is shared.
            return _copy(session)

    def save(self, session: Session) -> None:
        with self._lock:
            self._sessions[session.id] = _copy(session)

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def purge_expired(self) -> int:
        with self._lock:
            return self._drop_expired(datetime.now(timezone.utc))

    def _drop_expired(self, now: datetime) -> int:
        stale = [sid for sid, s in self._sessions.items() if s.expired(now)]
        for sid in stale:
            del self._sessions[sid]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


def session_cookie_name(cfg: AuthConfig) -> str:
    # `__Host-` requires Secure + Path=/ + no Domain; browsers may reject it on HTTP.
    return "__Host-studio_session" if cfg.cookie_secure else "studio_session"


def _serializer(cfg: AuthConfig) -> Optional[URLSafeTimedSerializer]:
    if not cfg.session_secret:
        return None
    return URLSafeTimedSerializer(secret_key=cfg.session_secret, salt=SESSION_SALT)


def encode_session_id(cfg: AuthConfig, session_id: str) -> Optional[str]:
    s = _serializer(cfg)
    if s is None:
        return None
    return s.dumps(session_id)


def decode_session_id(cfg: AuthConfig, value: str | None) -> Optional[str]:
    if not value:
        return None
    s = _serializer(cfg)
    if s is None:
        return None
    try:
        sid = s.loads(value, max_age=cfg.session_ttl_seconds)
    except (BadSignature, BadTimeSignature, ValueError):
        return None
    return sid if isinstance(sid, str) and sid else None


def session_cookie_kwargs(cfg: AuthConfig, value: str) -> dict:
    return {
        "key": session_cookie_name(cfg),
        "value": value,
        "max_age": cfg.session_ttl_seconds,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": "/",
    }


def clear_session_cookie_kwargs(cfg: AuthConfig) -> dict:
    return {
        "key": session_cookie_name(cfg),
        "value": "",
        "max_age": 0,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": "/",
    }
