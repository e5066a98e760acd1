from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Optional

# POSTGRES_* variable -> libpq conninfo keyword
_CONNINFO_ENV = {
    "POSTGRES_HOST": "host",
    "POSTGRES_PORT": "port",
    "POSTGRES_DB": "dbname",
    "POSTGRES_USER": "user",
    "POSTGRES_PASSWORD": "password",
}
_REQUIRED_PARTS = ("host", "dbname", "user", "password")


@dataclass(frozen=True)
class DatabaseConfig:
    """Where the user store lives. No DSN means the in-memory store is used."""

    auto_migrate: bool
    dsn: Optional[str]  # POSTGRES_DSN, used verbatim
    parts: Dict[str, str] = field(default_factory=dict)  # from POSTGRES_* when no DSN is given


def load_database_config() -> DatabaseConfig:
    parts = {}
    for env_name, key in _CONNINFO_ENV.items():
        value = (os.getenv(env_name) or "").strip()
        if value:
            parts[key] = value
    if not (parts.get("port") or "").isdigit():
        parts["port"] = "5432"

    return DatabaseConfig(
        auto_migrate=(os.getenv("DB_AUTO_MIGRATE") or "").strip().lower() in ("1", "true", "yes", "y", "on"),
        dsn=(os.getenv("POSTGRES_DSN") or "").strip() or None,
        parts=parts,
    )


def build_postgres_dsn(cfg: DatabaseConfig) -> Optional[str]:
    if cfg.dsn:
        return cfg.dsn
    if not all(cfg.parts.get(k) for k in _REQUIRED_PARTS):
        return None
    # make_conninfo quotes values containing spaces or quotes (passwords).
    from psycopg.conninfo import make_conninfo

    return make_conninfo(**cfg.parts)
