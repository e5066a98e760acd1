from __future__ import annotations

import itertools
import threading
from typing import Dict, Optional, Protocol, Tuple

from studio.auth.models import Identity, User


class UserRepository(Protocol):
    """User records keyed by (provider, external_id)."""

    def find_or_create(self, identity: Identity) -> User:
        """
        Return the user for this identity, creating it on first login.

        Idempotent: repeated calls with the same provider identity return the same
        record and never update it.
        """
        ...

    def get(self, user_id: str) -> Optional[User]:
        ...


class InMemoryUserRepository:
    """Process-local user store (dev mode and tests)."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._by_id: Dict[str, User] = {}
        self._by_identity: Dict[Tuple[str, str], str] = {}
        self._lock = threading.Lock()

    def find_or_create(self, identity: Identity) -> User:
        key = (identity.provider, identity.external_id)
        with self._lock:
            existing = self._by_identity.get(key)
            if existing is not None:
                return self._by_id[existing]
            user = User(
                id=str(next(self._ids)),
                provider=identity.provider,
                external_id=identity.external_id,
                username=identity.username,
                email=identity.email,
            )
            self._by_id[user.id] = user
            self._by_identity[key] = user.id
            return user

    def get(self, user_id: str) -> Optional[User]:
        with self._lock:
            return self._by_id.get(user_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_id)


_USER_COLUMNS = "id, provider, external_id, username, email"


def _row_to_user(row) -> User:
    user_id, provider, external_id, username, email = row
    return User(
        id=str(user_id),
        provider=str(provider),
        external_id=str(external_id),
        username=str(username),
        email=str(email) if email else None,
    )


class PostgresUserRepository:
    """
    User store in PostgreSQL (`users` table, see migrations/).

    Opens one connection per call; the uniqueness invariant is enforced by the
    UNIQUE (provider, external_id) constraint, so concurrent first logins race safely.
    """

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    def _connect(self):
        import psycopg

        return psycopg.connect(self._dsn)

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1;")

    def find_or_create(self, identity: Identity) -> User:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO users (provider, external_id, username, email)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (provider, external_id) DO NOTHING
                    RETURNING {_USER_COLUMNS}
                    """,
                    (identity.provider, identity.external_id, identity.username, identity.email),
                )
                row = cur.fetchone()
                if row is None:
                    cur.execute(
                        f"SELECT {_USER_COLUMNS} FROM users WHERE provider = %s AND external_id = %s",
                        (identity.provider, identity.external_id),
                    )
                    row = cur.fetchone()
            conn.commit()
        if row is None:
            raise RuntimeError("Failed to create user")
        return _row_to_user(row)

    def get(self, user_id: str) -> Optional[User]:
        try:
            pk = int(user_id)
        except (TypeError, ValueError):
            return None
        with self._connect() as conn:
            row = conn.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s", (pk,)).fetchone()
        return _row_to_user(row) if row else None
