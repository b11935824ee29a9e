from __future__ import annotations

import logging
import os
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path

from dotenv import load_dotenv
from sqlalchemy import URL, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

"""Database connection settings and session lifecycle.

Resolution order for the connection URL (``.env`` is loaded with
override=True first, so its values win over the process environment):

    1. ``DATABASE_URL`` (or ``PGDSN``) from the environment
    2. the URL passed on the command line (``--database-url``)
    3. individual ``PGHOST / PGPORT / PGUSER / PGPASSWORD / PGDATABASE``

Sessions are created with autoflush on; the flow executor commits or rolls
back once per row, so ``session_scope`` only guarantees the session is
closed.
"""

__all__ = [
    "DatabaseConfigError",
    "load_env_file",
    "resolve_database_url",
    "create_session_factory",
    "session_scope",
]

logger = logging.getLogger(__name__)

PG_DRIVER = "postgresql+psycopg2"


class DatabaseConfigError(Exception):
    """No usable connection settings were found."""


def load_env_file(path: Path = Path(".env"), override: bool = True) -> bool:
    """Load ``path`` into the environment; returns False when the file does not exist."""
    if not path.exists():
        return False
    loaded = load_dotenv(dotenv_path=path, override=override)
    logger.debug("loaded environment from %s", path)
    return loaded


def resolve_database_url(explicit: str | None = None, env: Mapping[str, str] | None = None) -> str:
    env = os.environ if env is None else env
    url = env.get("DATABASE_URL") or env.get("PGDSN") or explicit
    if url:
        return url
    if not (env.get("PGHOST") or env.get("PGDATABASE")):
        raise DatabaseConfigError(
            "no database configured: set DATABASE_URL, pass --database-url, or set PGHOST/PGDATABASE"
        )
    port = env.get("PGPORT")
    return URL.create(
        PG_DRIVER,
        username=env.get("PGUSER", "postgres"),
        password=env.get("PGPASSWORD") or None,
        host=env.get("PGHOST", "localhost"),
        port=int(port) if port else 5432,
        database=env.get("PGDATABASE", "postgres"),
    ).render_as_string(hide_password=False)


def create_session_factory(url: str | Engine, *, echo: bool = False) -> sessionmaker[Session]:
    engine = url if isinstance(url, Engine) else create_engine(url, echo=echo)
    return sessionmaker(bind=engine, autoflush=True, expire_on_commit=False)


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Iterator[Session]:
    session = factory()
    try:
        yield session
    except BaseException:
        session.rollback()
        raise
    finally:
        session.close()
