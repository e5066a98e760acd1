from __future__ import annotations

import asyncio
import logging
import os
import secrets
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import FileResponse, JSONResponse, RedirectResponse, Response
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from studio.auth.config import AuthConfig, load_auth_config
from studio.auth.deps import authenticate_request, get_session_store, get_user_repository, load_session
from studio.auth.models import Handshake, Session
from studio.auth.providers import AuthError, AuthProvider, build_auth_providers
from studio.auth.session import (
    InMemorySessionStore,
    SessionStore,
    clear_session_cookie_kwargs,
    encode_session_id,
    session_cookie_kwargs,
)
from studio.auth.util import random_token, sanitize_next_path
from studio.generation.service import GenerationFailed, generate_media
from studio.generation.variants import VARIANTS, GenerationVariant
from studio.providers.replicate_provider import InferenceClient, get_inference_client
from studio.users.config import build_postgres_dsn, load_database_config
from studio.users.repository import InMemoryUserRepository, PostgresUserRepository, UserRepository

logger = logging.getLogger(__name__)

WEB_DIR = Path(__file__).resolve().parent.parent / "web"
SIGNIN_PATH = "/signin"


def _is_public_path(path: str) -> bool:
    if path in ("/healthz", SIGNIN_PATH, "/logout", "/api/auth/mode"):
        return True
    # Login/callback endpoints must be reachable without a session.
    if path.startswith("/auth/"):
        return True
    return path.startswith("/static/")


def _skips_user_lookup(path: str) -> bool:
    return path == "/healthz" or path.startswith("/static/")


def _set_session_cookie(resp: Response, cfg: AuthConfig, session: Session) -> bool:
    value = encode_session_id(cfg, session.id)
    if not value:
        logger.warning("Session signing is not configured (AUTH_SESSION_SECRET); session cookie not set")
        return False
    resp.set_cookie(**session_cookie_kwargs(cfg, value))
    return True


def _redirect(url: str) -> RedirectResponse:
    resp = RedirectResponse(url=url, status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _redirect_to_signin(request: Request, session: Optional[Session]) -> Response:
    """Remember where the caller was going, then send them to the sign-in page."""
    cfg = load_auth_config()
    store = get_session_store(request)
    resp = _redirect(SIGNIN_PATH)
    if not cfg.session_secret:
        logger.warning("Cannot record return path: AUTH_SESSION_SECRET is not configured")
        return resp

    target = request.url.path
    if request.url.query:
        target = f"{target}?{request.url.query}"

    is_new = session is None
    if session is None:
        session = store.create()
    session.return_to = sanitize_next_path(target)
    store.save(session)
    if is_new:
        _set_session_cookie(resp, cfg, session)
    return resp


async def _auth_gate(request: Request, call_next):
    """Attach session/user to the request and redirect anonymous callers of protected routes."""
    start_time = time.time()
    path = request.url.path or ""
    logger.debug("%s %s", request.method, path)
    try:
        request.state.session = None
        request.state.user = None
        if not _skips_user_lookup(path):
            session = load_session(request)
            request.state.session = session
            if session is not None and session.authenticated:
                request.state.user = await asyncio.to_thread(authenticate_request, request, session)

        if request.method == "OPTIONS" or _is_public_path(path) or request.state.user is not None:
            response = await call_next(request)
        else:
            response = _redirect_to_signin(request, request.state.session)

        process_time = time.time() - start_time
        logger.debug("%s %s - %d (%.3fs)", request.method, path, response.status_code, process_time)
        return response
    except Exception as e:
        process_time = time.time() - start_time
        logger.exception("%s %s - ERROR after %.3fs: %s", request.method, path, process_time, str(e))
        raise


def get_inference(request: Request) -> InferenceClient:
    return request.app.state.inference


def get_auth_providers(request: Request) -> Dict[str, AuthProvider]:
    return request.app.state.auth_providers


router = APIRouter()


@router.get("/healthz")
def healthz() -> Dict[str, Any]:
    return {"ok": True}


@router.get("/")
def index() -> FileResponse:
    return FileResponse(WEB_DIR / "index.html")


@router.get(SIGNIN_PATH)
def signin(
    request: Request,
    return_to: Optional[str] = Query(None, alias="returnTo"),
    store: SessionStore = Depends(get_session_store),
) -> Response:
    if request.state.user is not None:
        return _redirect("/")

    resp: Response = FileResponse(WEB_DIR / "signin.html")
    cfg = load_auth_config()
    if return_to is not None and cfg.session_secret:
        session = request.state.session
        is_new = session is None
        if session is None:
            session = store.create()
        session.return_to = sanitize_next_path(return_to)
        store.save(session)
        if is_new:
            _set_session_cookie(resp, cfg, session)
    return resp


@router.get("/logout")
def logout(request: Request, store: SessionStore = Depends(get_session_store)) -> Response:
    session = request.state.session
    if session is not None:
        store.delete(session.id)
    resp = _redirect(SIGNIN_PATH)
    resp.set_cookie(**clear_session_cookie_kwargs(load_auth_config()))
    return resp


@router.get("/api/auth/mode")
def auth_mode(providers: Dict[str, AuthProvider] = Depends(get_auth_providers)) -> Dict[str, Any]:
    """Expose enabled login providers so the sign-in page can render its buttons. Returns no secrets."""
    return {
        "ok": True,
        "providers": [{"name": name, "loginUrl": f"/auth/{name}"} for name in sorted(providers)],
    }


def _callback_uri(request: Request, cfg: AuthConfig, provider: str) -> str:
    if cfg.public_base_url:
        return f"{cfg.public_base_url}/auth/{provider}/callback"
    return str(request.url_for("auth_callback", provider=provider))


def _lookup_provider(providers: Mapping[str, AuthProvider], name: str) -> AuthProvider:
    p = providers.get(name)
    if p is None:
        raise HTTPException(status_code=404, detail="Unknown auth provider")
    return p


@router.get("/auth/{provider}")
async def auth_begin(
    request: Request,
    provider: str,
    providers: Dict[str, AuthProvider] = Depends(get_auth_providers),
    store: SessionStore = Depends(get_session_store),
) -> Response:
    """Start the OAuth handshake: record a pending state token and redirect to the provider."""
    p = _lookup_provider(providers, provider)
    cfg = load_auth_config()
    if not cfg.session_secret:
        logger.warning("Login unavailable: AUTH_SESSION_SECRET is not configured")
        return _redirect(SIGNIN_PATH)

    state_token = random_token(32)
    try:
        start = await asyncio.to_thread(
            p.begin_handshake, redirect_uri=_callback_uri(request, cfg, provider), state_token=state_token
        )
    except Exception as e:
        logger.warning("Auth provider %s: failed to begin handshake: %s", provider, str(e))
        return _redirect(SIGNIN_PATH)

    session = request.state.session
    is_new = session is None
    if session is None:
        session = store.create()
    session.handshake = Handshake(provider=provider, state_token=state_token, params=dict(start.params))
    store.save(session)

    resp = _redirect(start.url)
    if is_new:
        _set_session_cookie(resp, cfg, session)
    return resp


def _fail_handshake(store: SessionStore, session: Optional[Session], provider: str, reason: str) -> Response:
    logger.warning("Auth provider %s: handshake failed: %s", provider, reason)
    # Re-read: the caller's copy may be stale after an await.
    current = store.get(session.id) if session is not None else None
    if current is not None and current.handshake is not None and current.handshake.pending:
        current.handshake.fail()
        store.save(current)
    return _redirect(SIGNIN_PATH)


@router.get("/auth/{provider}/callback", name="auth_callback")
async def auth_callback(
    request: Request,
    provider: str,
    providers: Dict[str, AuthProvider] = Depends(get_auth_providers),
    store: SessionStore = Depends(get_session_store),
    users: UserRepository = Depends(get_user_repository),
) -> Response:
    """Complete the OAuth handshake, upsert the user, and start an authenticated session."""
    p = _lookup_provider(providers, provider)
    cfg = load_auth_config()
    session: Optional[Session] = request.state.session
    handshake = session.handshake if session is not None else None
    params = dict(request.query_params)

    if handshake is None or handshake.provider != provider or not handshake.pending:
        return _fail_handshake(store, session, provider, "no pending handshake")
    if params.get("error"):
        return _fail_handshake(store, session, provider, f"provider error: {params.get('error')}")
    if not secrets.compare_digest(str(params.get("state") or "").encode(), handshake.state_token.encode()):
        return _fail_handshake(store, session, provider, "invalid OAuth state")

    try:
        identity = await asyncio.to_thread(
            p.complete_handshake,
            params,
            handshake=handshake,
            redirect_uri=_callback_uri(request, cfg, provider),
        )
        user = await asyncio.to_thread(users.find_or_create, identity)
    except AuthError as e:
        return _fail_handshake(store, session, provider, str(e))
    except Exception:
        logger.exception("Auth provider %s: error completing login", provider)
        return _fail_handshake(store, session, provider, "user store error")

    # A duplicate callback for the same handshake may have completed while this one awaited.
    # No await between this check and the rotation below, so only one of them gets past it.
    current = store.get(session.id)
    if current is None or current.handshake is None or not current.handshake.pending:
        return _fail_handshake(store, current, provider, "handshake already completed")
    current.handshake.authenticate(user.id)
    target = sanitize_next_path(current.return_to)

    # Rotate the session id on login; the pre-login session is discarded.
    authed = store.create()
    authed.user_id = user.id
    store.save(authed)
    store.delete(current.id)

    logger.info("User %s signed in via %s", user.id, provider)
    resp = _redirect(target)
    _set_session_cookie(resp, cfg, authed)
    return resp


class GenerateRequest(BaseModel):
    prompt: str


def _add_generation_route(variant: GenerationVariant) -> None:
    async def generate(req: GenerateRequest, client: InferenceClient = Depends(get_inference)) -> JSONResponse:
        try:
            output = await generate_media(client, variant, req.prompt)
        except GenerationFailed:
            return JSONResponse(status_code=500, content={"success": False, "error": variant.error_message})
        return JSONResponse(content={"success": True, variant.result_key: output})

    router.add_api_route(variant.route, generate, methods=["POST"], name=f"generate_{variant.kind}")


for _variant in VARIANTS.values():
    _add_generation_route(_variant)


def _default_user_repository() -> UserRepository:
    dsn = build_postgres_dsn(load_database_config())
    if not dsn:
        logger.warning("Postgres not configured (POSTGRES_DSN/POSTGRES_*); using in-memory user store")
        return InMemoryUserRepository()
    return PostgresUserRepository(dsn)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    """
    Startup checks. None of them prevent the server from starting; failures are logged.
    """
    from studio.users.migrate import maybe_auto_migrate

    did_attempt, msg = await asyncio.to_thread(maybe_auto_migrate)
    if did_attempt:
        logger.info("DB migrations: %s", msg)

    ping = getattr(app.state.users, "ping", None)
    if ping is not None:
        try:
            await asyncio.to_thread(ping)
            logger.info("User store: connected")
        except Exception as e:
            logger.error("User store: connection failed, continuing without it: %s", str(e))

    cfg = load_auth_config()
    if not cfg.session_secret:
        logger.warning("AUTH_SESSION_SECRET is not set; sign-in is disabled")
    if not app.state.auth_providers:
        logger.warning("No auth providers configured (GITHUB_CLIENT_ID/SECRET or OIDC_*)")
    yield


def create_app(
    *,
    sessions: Optional[SessionStore] = None,
    users: Optional[UserRepository] = None,
    inference: Optional[InferenceClient] = None,
    auth_providers: Optional[Dict[str, AuthProvider]] = None,
) -> FastAPI:
    """
    Build the web app. Collaborators default to the environment-configured ones.
    """
    cfg = load_auth_config()
    app = FastAPI(title="Studio", lifespan=_lifespan)
    app.state.sessions = sessions if sessions is not None else InMemorySessionStore(cfg.session_ttl_seconds)
    app.state.users = users if users is not None else _default_user_repository()
    app.state.inference = inference if inference is not None else get_inference_client()
    app.state.auth_providers = auth_providers if auth_providers is not None else build_auth_providers(cfg)

    app.middleware("http")(_auth_gate)
    app.include_router(router)
    app.mount("/static", StaticFiles(directory=WEB_DIR / "static"), name="static")
    return app


def run(host: str = "0.0.0.0", port: int = 3000) -> None:
    import uvicorn

    # Configure logging for the application
    log_level = os.getenv("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Map Python logging levels to uvicorn log levels
    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    logger.info("Starting server on %s:%d (log_level=%s)", host, port, log_level)
    uvicorn.run(create_app(), host=host, port=port, log_level=uvicorn_log_level)
