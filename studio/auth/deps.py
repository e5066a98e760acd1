from __future__ import annotations

from typing import Optional

from fastapi import Request

from studio.auth.config import load_auth_config
from studio.auth.models import Session, User
from studio.auth.session import SessionStore, decode_session_id, session_cookie_name
from studio.users.repository import UserRepository


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.sessions


def get_user_repository(request: Request) -> UserRepository:
    return request.app.state.users


def load_session(request: Request) -> Optional[Session]:
    """Resolve the signed session cookie to a live server-side session, if any."""
    cfg = load_auth_config()
    sid = decode_session_id(cfg, request.cookies.get(session_cookie_name(cfg)))
    if sid is None:
        return None
    return get_session_store(request).get(sid)


def authenticate_request(request: Request, session: Optional[Session]) -> Optional[User]:
    """
    Return the user attached to the session, or None.

    A session whose user no longer resolves is treated as anonymous. Store errors
    propagate to the caller.
    """
    if session is None or not session.authenticated:
        return None
    return get_user_repository(request).get(session.user_id)
