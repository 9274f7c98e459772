# config.py
# =============================================================================
# Environment configuration.
# Database priority:
#   1) FITTRACK_DB_URL (explicit async SQLAlchemy URL)
#   2) Cloud SQL (PostgreSQL) if CLOUD_SQL_CONNECTION_NAME is set
#   3) env FITTRACK_DB (path to a SQLite file)
#   4) ./data/fittrack.db if it exists
#   5) ./fittrack.db  (fallback)
# =============================================================================

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Mapping, Optional

from errors import ConfigurationError

_APP_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")
_ALLOWED_SCHEMES = ("sqlite+aiosqlite://", "postgresql+asyncpg://")

DEFAULT_APP_ID = "fittrack"


def database_url(env: Optional[Mapping[str, str]] = None) -> str:
    env = os.environ if env is None else env

    explicit = env.get("FITTRACK_DB_URL")
    if explicit:
        if not explicit.startswith(_ALLOWED_SCHEMES):
            raise ConfigurationError(
                f"FITTRACK_DB_URL must start with one of {list(_ALLOWED_SCHEMES)}"
            )
        return explicit

    cloud_sql = env.get("CLOUD_SQL_CONNECTION_NAME")  # e.g. project:region:instance
    if cloud_sql:
        db_user = env.get("DB_USER", "postgres")
        db_pass = env.get("DB_PASSWORD", "")
        db_name = env.get("DB_NAME", "fittrack")
        if not db_pass:
            raise ConfigurationError("DB_PASSWORD is required with CLOUD_SQL_CONNECTION_NAME")
        if not db_user or not db_name:
            raise ConfigurationError("DB_USER and DB_NAME cannot be empty")
        socket_path = f"/cloudsql/{cloud_sql}"
        return f"postgresql+asyncpg://{db_user}:{db_pass}@/{db_name}?host={socket_path}"

    env_db = env.get("FITTRACK_DB")
    if env_db:
        return f"sqlite+aiosqlite:///{env_db}"

    here = Path(__file__).parent
    candidates = [
        str((here / "data" / "fittrack.db").resolve()),
        str((here / "fittrack.db").resolve()),
    ]
    path = next((p for p in candidates if Path(p).exists()), candidates[-1])
    return f"sqlite+aiosqlite:///{path}"


def db_type(url: str) -> str:
    """Return a safe description of the DB type (no credentials)."""
    if url.startswith("postgresql"):
        return "PostgreSQL"
    return "SQLite"


def app_id(env: Optional[Mapping[str, str]] = None) -> str:
    env = os.environ if env is None else env
    value = env.get("FITTRACK_APP_ID", DEFAULT_APP_ID).strip()
    if not _APP_ID_RE.match(value):
        raise ConfigurationError("FITTRACK_APP_ID may only contain letters, digits, '.', '_' and '-'")
    return value


def int_setting(name: str, default: int, env: Optional[Mapping[str, str]] = None) -> int:
    env = os.environ if env is None else env
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")
    if value < 1:
        raise ConfigurationError(f"{name} must be >= 1")
    return value
