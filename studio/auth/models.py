from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional


@dataclass(frozen=True)
class Identity:
    """Identity proven by an auth provider at the end of a handshake."""

    provider: str  # github|oidc
    external_id: str
    username: str
    email: Optional[str] = None


@dataclass(frozen=True)
class User:
    """User record kept by the user store. Never mutated after creation."""

    id: str
    provider: str
    external_id: str
    username: str
    email: Optional[str] = None


class HandshakeStatus(str, Enum):
    PENDING = "pending"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


@dataclass
class Handshake:
    """
    One OAuth round-trip: pending(state_token) -> authenticated(user_id) | failed.

    `params` carries provider-specific secrets (OIDC nonce, PKCE verifier) that must
    survive the redirect but never leave the server.
    """

    provider: str
    state_token: str
    params: Dict[str, str] = field(default_factory=dict)
    status: HandshakeStatus = HandshakeStatus.PENDING
    user_id: Optional[str] = None

    @property
    def pending(self) -> bool:
        return self.status is HandshakeStatus.PENDING

    def authenticate(self, user_id: str) -> None:
        if not self.pending:
            raise ValueError(f"Handshake already {self.status.value}")
        self.status = HandshakeStatus.AUTHENTICATED
        self.user_id = user_id

    def fail(self) -> None:
        if not self.pending:
            raise ValueError(f"Handshake already {self.status.value}")
        self.status = HandshakeStatus.FAILED


@dataclass
class Session:
    """Server-side session record, keyed by the id carried in the signed cookie."""

    id: str
    created_at: datetime
    expires_at: datetime
    user_id: Optional[str] = None
    return_to: Optional[str] = None
    handshake: Optional[Handshake] = None

    @property
    def authenticated(self) -> bool:
        return self.user_id is not None

    def expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.expires_at
