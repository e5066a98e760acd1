"""
OAuth providers behind a single handshake interface.

A provider knows how to (1) build the URL that sends the browser to the identity
provider and (2) turn the callback parameters into an `Identity`. Everything else
(state checking, sessions, user records) lives in the HTTP layer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Protocol
from urllib.parse import urlencode

import requests

from studio.auth.config import AuthConfig
from studio.auth.models import Handshake, Identity

logger = logging.getLogger(__name__)


class AuthError(Exception):
    """The provider round-trip did not produce an identity."""


@dataclass(frozen=True)
class HandshakeStart:
    url: str
    params: Dict[str, str] = field(default_factory=dict)


class AuthProvider(Protocol):
    name: str

    def begin_handshake(self, *, redirect_uri: str, state_token: str) -> HandshakeStart:
        """Build the provider authorize URL (plus any secrets to keep server-side)."""
        ...

    def complete_handshake(
        self,
        callback_params: Mapping[str, str],
        *,
        handshake: Handshake,
        redirect_uri: str,
    ) -> Identity:
        """
        Exchange the callback parameters for a verified identity.

        Raises:
            AuthError: on any provider-side failure
        """
        ...


GITHUB_AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_API_URL = "https://api.github.com"


class GitHubAuthProvider:
    """GitHub OAuth app login (authorization code flow)."""

    name = "github"

    def __init__(self, client_id: str, client_secret: str, *, timeout: float = 10.0) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._timeout = timeout

    def begin_handshake(self, *, redirect_uri: str, state_token: str) -> HandshakeStart:
        params = {
            "client_id": self._client_id,
            "redirect_uri": redirect_uri,
            "scope": "read:user user:email",
            "state": state_token,
            "allow_signup": "true",
        }
        return HandshakeStart(url=f"{GITHUB_AUTHORIZE_URL}?{urlencode(params)}")

    def complete_handshake(
        self,
        callback_params: Mapping[str, str],
        *,
        handshake: Handshake,
        redirect_uri: str,
    ) -> Identity:
        code = (callback_params.get("code") or "").strip()
        if not code:
            raise AuthError("Missing authorization code")

        access_token = self._exchange_code(code, redirect_uri)
        profile = self._api_get("/user", access_token)
        if not isinstance(profile, dict) or profile.get("id") is None:
            raise AuthError("Invalid GitHub profile response")

        login = str(profile.get("login") or "").strip()
        email = str(profile.get("email") or "").strip() or None
        if not email:
            email = self._primary_email(access_token)

        return Identity(
            provider=self.name,
            external_id=str(profile["id"]),
            username=login or str(profile["id"]),
            email=email,
        )

    def _exchange_code(self, code: str, redirect_uri: str) -> str:
        try:
            r = requests.post(
                GITHUB_TOKEN_URL,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "code": code,
                    "redirect_uri": redirect_uri,
                },
                headers={"Accept": "application/json"},
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            raise AuthError(f"Token exchange failed: {e}") from e
        if r.status_code >= 400:
            # Avoid leaking sensitive info; include minimal context.
            raise AuthError(f"Token exchange failed (status={r.status_code})")
        try:
            data = r.json()
        except ValueError as e:
            raise AuthError("Token response is not JSON") from e
        if not isinstance(data, dict):
            raise AuthError("Invalid token response")
        if data.get("error"):
            # GitHub reports bad/expired codes with HTTP 200 + an error field.
            raise AuthError(f"Token exchange rejected: {data.get('error')}")
        token = str(data.get("access_token") or "").strip()
        if not token:
            raise AuthError("Missing access_token in token response")
        return token

    def _api_get(self, path: str, access_token: str) -> Any:
        try:
            r = requests.get(
                f"{GITHUB_API_URL}{path}",
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/vnd.github+json",
                },
                timeout=self._timeout,
            )
            r.raise_for_status()
        except requests.RequestException as e:
            raise AuthError(f"GitHub API {path} failed: {e}") from e
        try:
            return r.json()
        except ValueError as e:
            raise AuthError(f"GitHub API {path} returned a non-JSON body") from e

    def _primary_email(self, access_token: str) -> Optional[str]:
        # Email is optional on the user record; a failure here must not fail login.
        try:
            emails = self._api_get("/user/emails", access_token)
        except AuthError as e:
            logger.info("GitHub email lookup skipped: %s", str(e))
            return None
        if not isinstance(emails, list):
            return None
        entries = [e for e in emails if isinstance(e, dict) and e.get("email")]
        primary = next((e for e in entries if e.get("primary")), None)
        chosen = primary or (entries[0] if entries else None)
        return str(chosen["email"]) if chosen else None


def build_auth_providers(cfg: AuthConfig) -> Dict[str, AuthProvider]:
    """Instantiate every provider whose credentials are configured, keyed by route name."""
    providers: Dict[str, AuthProvider] = {}
    if cfg.github_enabled:
        providers["github"] = GitHubAuthProvider(cfg.github_client_id or "", cfg.github_client_secret or "")
    if cfg.oidc_enabled:
        from studio.auth.oidc import OidcAuthProvider

        providers["oidc"] = OidcAuthProvider(
            cfg.oidc_discovery_url or "",
            cfg.oidc_client_id or "",
            cfg.oidc_client_secret or "",
        )
    return providers
