from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

DEFAULT_SESSION_TTL_SECONDS = 24 * 60 * 60


@dataclass(frozen=True)
class AuthConfig:
    # GitHub OAuth app (optional)
    github_client_id: Optional[str]
    github_client_secret: Optional[str]

    # OIDC Configuration (generic, optional)
    oidc_discovery_url: Optional[str]
    oidc_client_id: Optional[str]
    oidc_client_secret: Optional[str]

    # Session configuration
    public_base_url: Optional[str]  # Used for OAuth redirect URIs when set
    session_secret: Optional[str]  # Required for session signing
    session_ttl_seconds: int
    cookie_secure: bool

    @property
    def github_enabled(self) -> bool:
        return bool(self.github_client_id and self.github_client_secret)

    @property
    def oidc_enabled(self) -> bool:
        """OIDC is enabled if discovery URL and credentials are configured."""
        return bool(self.oidc_discovery_url and self.oidc_client_id and self.oidc_client_secret)


def _env(name: str) -> Optional[str]:
    return (os.getenv(name, "") or "").strip() or None


@lru_cache(maxsize=1)
def load_auth_config() -> AuthConfig:
    """
    Load authentication configuration from environment variables.

    Each provider is enabled only when its client id and secret are both set.
    """
    public_base_url = _env("AUTH_PUBLIC_BASE_URL")
    cookie_secure_env = (os.getenv("AUTH_COOKIE_SECURE", "") or "").strip().lower()
    if cookie_secure_env in ("1", "true", "yes", "on"):
        cookie_secure = True
    elif cookie_secure_env in ("0", "false", "no", "off"):
        cookie_secure = False
    else:
        # Default: secure cookies when base URL is https; otherwise allow local dev.
        cookie_secure = True if (public_base_url or "").startswith("https://") else False

    default_ttl = str(DEFAULT_SESSION_TTL_SECONDS)
    try:
        ttl = int(float((os.getenv("AUTH_SESSION_TTL_SECONDS", "") or default_ttl).strip() or default_ttl))
    except ValueError:
        ttl = DEFAULT_SESSION_TTL_SECONDS
    if ttl <= 60:
        ttl = 60

    return AuthConfig(
        github_client_id=_env("GITHUB_CLIENT_ID"),
        github_client_secret=_env("GITHUB_CLIENT_SECRET"),
        oidc_discovery_url=_env("OIDC_DISCOVERY_URL"),
        oidc_client_id=_env("OIDC_CLIENT_ID"),
        oidc_client_secret=_env("OIDC_CLIENT_SECRET"),
        public_base_url=public_base_url.rstrip("/") if public_base_url else None,
        session_secret=_env("AUTH_SESSION_SECRET"),
        session_ttl_seconds=ttl,
        cookie_secure=cookie_secure,
    )
