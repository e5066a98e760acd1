from __future__ import annotations

import json
import time
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import urlencode

import jwt  # PyJWT
import requests

from studio.auth.models import Handshake, Identity
from studio.auth.providers import AuthError, HandshakeStart
from studio.auth.util import pkce_challenge, random_token

_CACHE_TTL_SECONDS = 3600

_discovery_cache: Dict[str, Tuple[float, Optional[Dict[str, Any]]]] = {}
_jwks_cache: Dict[str, Tuple[float, Optional[Dict[str, Any]]]] = {}


def _fetch_json_cached(url: str, cache: Dict[str, Tuple[float, Optional[Dict[str, Any]]]], what: str) -> Dict[str, Any]:
    ts, cached = cache.get(url, (0.0, None))
    now = time.time()
    if cached is not None and now - ts < _CACHE_TTL_SECONDS:
        return cached
    r = requests.get(url, timeout=10)
    r.raise_for_status()
    data = r.json()
    if not isinstance(data, dict):
        raise ValueError(f"Invalid {what}")
    cache[url] = (now, data)
    return data


def _get_discovery(discovery_url: str) -> Dict[str, Any]:
    """Fetch the OIDC discovery document (cached for 1 hour per URL)."""
    return _fetch_json_cached(discovery_url, _discovery_cache, "OIDC discovery document")


def _get_jwks(jwks_uri: str) -> Dict[str, Any]:
    """Fetch the provider's JSON Web Key Set (cached for 1 hour per URI)."""
    return _fetch_json_cached(jwks_uri, _jwks_cache, "JWKS")


def _endpoint(disc: Dict[str, Any], key: str) -> str:
    value = str(disc.get(key) or "")
    if not value:
        raise ValueError(f"OIDC discovery missing {key}")
    return value


class OidcAuthProvider:
    """
    Generic OpenID Connect login (Google, Okta, Auth0, ...).

    Uses PKCE + nonce; the ID token is verified against the provider's JWKS.
    """

    name = "oidc"

    def __init__(self, discovery_url: str, client_id: str, client_secret: str) -> None:
        self._discovery_url = discovery_url
        self._client_id = client_id
        self._client_secret = client_secret

    def begin_handshake(self, *, redirect_uri: str, state_token: str) -> HandshakeStart:
        disc = _get_discovery(self._discovery_url)
        nonce = random_token(32)
        verifier = random_token(32)  # 43+ chars (base64url) -> valid PKCE verifier
        params = {
            "client_id": self._client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": "openid email profile",
            "state": state_token,
            "nonce": nonce,
            "code_challenge": pkce_challenge(verifier),
            "code_challenge_method": "S256",
        }
        url = f"{_endpoint(disc, 'authorization_endpoint')}?{urlencode(params)}"
        return HandshakeStart(url=url, params={"nonce": nonce, "code_verifier": verifier})

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
        nonce = handshake.params.get("nonce") or ""
        verifier = handshake.params.get("code_verifier") or ""
        if not nonce or not verifier:
            raise AuthError("Missing OAuth verifier/nonce")

        try:
            tokens = self.exchange_code_for_tokens(code=code, redirect_uri=redirect_uri, code_verifier=verifier)
            id_token = str(tokens.get("id_token") or "").strip()
            if not id_token:
                raise ValueError("Missing id_token in token response")
            claims = self.validate_id_token(id_token=id_token, expected_nonce=nonce)
        except (ValueError, jwt.PyJWTError, requests.RequestException) as e:
            raise AuthError(str(e)) from e

        sub = str(claims.get("sub") or "").strip()
        if not sub:
            raise AuthError("ID token missing sub")
        email = str(claims.get("email") or "").strip().lower() or None
        username = (
            str(claims.get("preferred_username") or "").strip()
            or str(claims.get("name") or "").strip()
            or (email.split("@", 1)[0] if email else "")
            or sub
        )
        return Identity(provider=self.name, external_id=sub, username=username, email=email)

    def exchange_code_for_tokens(self, *, code: str, redirect_uri: str, code_verifier: str) -> Dict[str, Any]:
        disc = _get_discovery(self._discovery_url)
        payload = {
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
        }
        r = requests.post(_endpoint(disc, "token_endpoint"), data=payload, timeout=10)
        if r.status_code >= 400:
            raise ValueError(f"Token exchange failed (status={r.status_code})")
        data = r.json()
        if not isinstance(data, dict):
            raise ValueError("Invalid token response")
        return data

    def validate_id_token(self, *, id_token: str, expected_nonce: str) -> Dict[str, Any]:
        """
        Validate ID token from OIDC provider.
        - Verifies JWT signature using provider's public keys
        - Validates issuer, audience, nonce
        - Checks email verification status
        """
        disc = _get_discovery(self._discovery_url)
        issuer = _endpoint(disc, "issuer")
        jwks_uri = _endpoint(disc, "jwks_uri")

        hdr = jwt.get_unverified_header(id_token)
        kid = str(hdr.get("kid") or "")
        if not kid:
            raise ValueError("ID token missing kid")

        keys = _get_jwks(jwks_uri).get("keys")
        if not isinstance(keys, list):
            raise ValueError("Invalid JWKS keys")
        jwk = next((k for k in keys if isinstance(k, dict) and str(k.get("kid") or "") == kid), None)
        if jwk is None:
            raise ValueError("Unknown signing key (kid)")

        key = jwt.algorithms.RSAAlgorithm.from_jwk(json.dumps(jwk))
        claims = jwt.decode(
            id_token,
            key=key,
            algorithms=["RS256"],
            audience=self._client_id,
            issuer=issuer,
            options={"require": ["exp", "iat", "iss", "aud", "sub"]},
        )
        if not isinstance(claims, dict):
            raise ValueError("Invalid ID token claims")

        nonce = str(claims.get("nonce") or "")
        if not nonce or nonce != expected_nonce:
            raise ValueError("Nonce mismatch")

        # Some providers may not include email_verified claim; treat as optional
        email_verified = claims.get("email_verified")
        if email_verified is not None and email_verified is not True:
            raise ValueError("Email not verified")

        return claims
