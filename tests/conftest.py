"""
Pytest config.

Pins the repo root on sys.path so the local `studio/` package imports even when the
project is not installed, and provides fake collaborators for `create_app(...)`.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlencode

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

from studio.auth.config import load_auth_config  # noqa: E402
from studio.auth.models import Handshake, Identity, User  # noqa: E402
from studio.auth.providers import HandshakeStart  # noqa: E402
from studio.auth.session import InMemorySessionStore, encode_session_id, session_cookie_name  # noqa: E402
from studio.users.repository import InMemoryUserRepository  # noqa: E402

TEST_SECRET = "test-secret-key-for-testing-purposes-only"

_AUTH_ENV = (
    "AUTH_SESSION_SECRET",
    "AUTH_SESSION_TTL_SECONDS",
    "AUTH_PUBLIC_BASE_URL",
    "AUTH_COOKIE_SECURE",
    "GITHUB_CLIENT_ID",
    "GITHUB_CLIENT_SECRET",
    "OIDC_DISCOVERY_URL",
    "OIDC_CLIENT_ID",
    "OIDC_CLIENT_SECRET",
    "POSTGRES_DSN",
    "POSTGRES_HOST",
    "DB_AUTO_MIGRATE",
    "INFERENCE_MOCK",
    "REPLICATE_API_TOKEN",
)


@pytest.fixture(autouse=True)
def _auth_env(monkeypatch: pytest.MonkeyPatch):
    """Start every test from a known environment with session signing enabled."""
    for name in _AUTH_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("AUTH_SESSION_SECRET", TEST_SECRET)
    load_auth_config.cache_clear()
    yield
    load_auth_config.cache_clear()


class FakeAuthProvider:
    """Provider stub: the authorize URL echoes the state; the callback yields `identity`."""

    def __init__(self, name: str = "fake", identity: Optional[Identity] = None, error: Optional[Exception] = None):
        self.name = name
        self.identity = identity or Identity(provider=name, external_id="42", username="octocat", email="o@example.com")
        self.error = error
        self.completed: List[Tuple[Dict[str, str], Handshake, str]] = []

    def begin_handshake(self, *, redirect_uri: str, state_token: str) -> HandshakeStart:
        query = urlencode({"state": state_token, "redirect_uri": redirect_uri})
        return HandshakeStart(url=f"https://idp.example/authorize?{query}", params={"nonce": "n-1"})

    def complete_handshake(self, callback_params: Mapping[str, str], *, handshake: Handshake, redirect_uri: str):
        self.completed.append((dict(callback_params), handshake, redirect_uri))
        if self.error is not None:
            raise self.error
        return self.identity


class FakeInference:
    """Inference stub; `handler(model, input)` decides the result."""

    def __init__(self, handler: Optional[Callable[[str, Mapping[str, Any]], Any]] = None) -> None:
        self.handler = handler or (lambda model, input: "https://cdn.example/out.png")
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    def run(self, model: str, input: Mapping[str, Any]) -> Any:
        self.calls.append((model, dict(input)))
        return self.handler(model, input)


@pytest.fixture
def sessions() -> InMemorySessionStore:
    return InMemorySessionStore(ttl_seconds=24 * 60 * 60)


@pytest.fixture
def users() -> InMemoryUserRepository:
    return InMemoryUserRepository()


@pytest.fixture
def inference() -> FakeInference:
    return FakeInference()


@pytest.fixture
def provider() -> FakeAuthProvider:
    return FakeAuthProvider()


@pytest.fixture
def app(sessions, users, inference, provider):
    from studio.api.app import create_app

    return create_app(sessions=sessions, users=users, inference=inference, auth_providers={provider.name: provider})


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    return TestClient(app, follow_redirects=False)


def signed_cookie_for(sessions: InMemorySessionStore, user: User) -> Tuple[str, str]:
    """Create an authenticated session for `user`; return (cookie_name, cookie_value)."""
    cfg = load_auth_config()
    session = sessions.create()
    session.user_id = user.id
    sessions.save(session)
    value = encode_session_id(cfg, session.id)
    assert value is not None
    return session_cookie_name(cfg), value


@pytest.fixture
def signed_in(client, sessions, users):
    """Client carrying an authenticated session for a freshly created user."""
    user = users.find_or_create(Identity(provider="fake", external_id="7", username="alice"))
    name, value = signed_cookie_for(sessions, user)
    client.cookies.set(name, value)
    return client
