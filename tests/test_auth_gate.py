from __future__ import annotations

from datetime import datetime, timedelta, timezone

from conftest import signed_cookie_for
from fastapi.testclient import TestClient

from studio.auth.config import load_auth_config
from studio.auth.models import Identity, User
from studio.auth.session import decode_session_id, session_cookie_name


def _session_for(client: TestClient, sessions):
    cfg = load_auth_config()
    sid = decode_session_id(cfg, client.cookies.get(session_cookie_name(cfg)))
    assert sid is not None
    return sessions.get(sid)


def test_healthz_is_public(client) -> None:
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


def test_signin_page_is_public(client) -> None:
    r = client.get("/signin")
    assert r.status_code == 200
    assert "text/html" in r.headers["content-type"]


def test_static_assets_are_public(client) -> None:
    r = client.get("/static/app.js")
    assert r.status_code == 200


def test_root_redirects_anonymous_to_signin(client, sessions) -> None:
    r = client.get("/")
    assert r.status_code == 302
    assert r.headers["location"] == "/signin"
    assert _session_for(client, sessions).return_to == "/"


def test_protected_post_redirects_and_records_path(client, sessions, inference) -> None:
    r = client.post("/generate-image", json={"prompt": "a cat"})
    assert r.status_code == 302
    assert r.headers["location"] == "/signin"
    assert _session_for(client, sessions).return_to == "/generate-image"
    assert inference.calls == []


def test_return_path_keeps_query_string(client, sessions) -> None:
    client.get("/gallery?tab=video&page=2")
    assert _session_for(client, sessions).return_to == "/gallery?tab=video&page=2"


def test_gate_reuses_existing_session(client, sessions) -> None:
    client.get("/first")
    before = len(sessions)
    client.get("/second")
    assert len(sessions) == before
    assert _session_for(client, sessions).return_to == "/second"


def test_signin_does_not_clobber_recorded_path(client, sessions) -> None:
    client.get("/gallery")
    r = client.get("/signin")
    assert r.status_code == 200
    assert _session_for(client, sessions).return_to == "/gallery"


def test_signin_return_to_query_overrides(client, sessions) -> None:
    client.get("/gallery")
    client.get("/signin", params={"returnTo": "/history"})
    assert _session_for(client, sessions).return_to == "/history"


def test_signin_return_to_rejects_external_targets(client, sessions) -> None:
    client.get("/signin", params={"returnTo": "https://evil.example/phish"})
    assert _session_for(client, sessions).return_to == "/"

    client.get("/signin", params={"returnTo": "//evil.example"})
    assert _session_for(client, sessions).return_to == "/"


def test_signin_redirects_when_already_authenticated(signed_in) -> None:
    r = signed_in.get("/signin")
    assert r.status_code == 302
    assert r.headers["location"] == "/"


def test_authenticated_root_serves_landing_page(signed_in) -> None:
    r = signed_in.get("/")
    assert r.status_code == 200
    assert "text/html" in r.headers["content-type"]


def test_logout_clears_session(signed_in, sessions) -> None:
    assert len(sessions) == 1
    r = signed_in.get("/logout")
    assert r.status_code == 302
    assert r.headers["location"] == "/signin"
    assert len(sessions) == 0

    cookies = r.headers.get("set-cookie", "")
    assert "max-age=0" in cookies.lower()

    r = signed_in.get("/")
    assert r.status_code == 302
    assert r.headers["location"] == "/signin"


def test_logout_without_session_still_redirects(client) -> None:
    r = client.get("/logout")
    assert r.status_code == 302
    assert r.headers["location"] == "/signin"


def test_tampered_cookie_is_anonymous(client, sessions, users) -> None:
    user = users.find_or_create(Identity(provider="fake", external_id="1", username="bob"))
    name, value = signed_cookie_for(sessions, user)
    client.cookies.set(name, value + "x")
    r = client.get("/")
    assert r.status_code == 302
    assert r.headers["location"] == "/signin"


def test_expired_session_is_anonymous(signed_in, sessions) -> None:
    only = next(iter(sessions._sessions.values()))
    only.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
    r = signed_in.get("/")
    assert r.status_code == 302
    assert r.headers["location"] == "/signin"


def test_session_for_deleted_user_is_anonymous(client, sessions) -> None:
    ghost = User(id="999", provider="fake", external_id="x", username="ghost")
    name, value = signed_cookie_for(sessions, ghost)
    client.cookies.set(name, value)
    r = client.get("/")
    assert r.status_code == 302


def test_gate_without_session_secret_redirects_without_cookie(monkeypatch, client) -> None:
    monkeypatch.delenv("AUTH_SESSION_SECRET", raising=False)
    load_auth_config.cache_clear()
    r = client.get("/")
    assert r.status_code == 302
    assert r.headers["location"] == "/signin"
    assert "set-cookie" not in {k.lower() for k in r.headers.keys()}


def test_session_cookie_attributes(client) -> None:
    r = client.get("/")
    cookie = r.headers["set-cookie"].lower()
    assert cookie.startswith("studio_session=")
    assert "httponly" in cookie
    assert "max-age=86400" in cookie
    assert "samesite=lax" in cookie
    assert "secure" not in cookie
