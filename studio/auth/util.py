from __future__ import annotations

import base64
import hashlib
import secrets
from urllib.parse import urlsplit


def b64url(data: bytes) -> str:
    """Unpadded base64url, as used by PKCE and JWTs."""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def random_token(nbytes: int = 32) -> str:
    return b64url(secrets.token_bytes(nbytes))


def pkce_challenge(verifier: str) -> str:
    """S256 code challenge for a PKCE verifier (RFC 7636)."""
    return b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def sanitize_next_path(next_path: str | None) -> str:
    """
    Return a same-origin path to redirect to after sign-in, or "/".

    Only absolute paths on this host are kept (`/gallery?tab=video`); anything a browser
    could resolve to another origin (`https://x`, `//x`, `/\\x`) is dropped.
    """
    p = (next_path or "").replace("\r", "").replace("\n", "").strip()
    if not p.startswith("/") or p[1:2] in ("/", "\\"):
        return "/"
    parts = urlsplit(p)
    if parts.scheme or parts.netloc:
        return "/"
    return p
