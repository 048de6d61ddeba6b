"""Async SQLAlchemy engine and session factory for the sql backend.

Example:
    >>> engine, sessions = create_engine_and_sessions("sqlite+aiosqlite:///data/staging.db")
    >>> async with sessions() as session:
    ...     await session.execute(text("SELECT 1"))
"""

import logging
from pathlib import Path
from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

logger = logging.getLogger(__name__)


def normalize_database_url(url: str) -> str:
    """Map plain driver URLs onto their async drivers."""
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return url


def _ensure_sqlite_directory(url: str) -> None:
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite" or not parsed.database:
        return
    if parsed.database == ":memory:":
        return
    Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)


def redact_url(url: str) -> str:
    """URL safe to log: the password is masked."""
    return make_url(url).render_as_string(hide_password=True)


def create_engine_and_sessions(
    url: str,
    echo: bool = False,
    pool_size: int | None = None,
) -> tuple[AsyncEngine, async_sessionmaker]:
    url = normalize_database_url(url)
    _ensure_sqlite_directory(url)

    kwargs: dict[str, Any] = {"echo": echo, "pool_pre_ping": True}
    if pool_size and make_url(url).get_backend_name() != "sqlite":
        kwargs["pool_size"] = pool_size

    engine = create_async_engine(url, **kwargs)
    sessions = async_sessionmaker(engine, expire_on_commit=False)
    logger.debug(
        "Created async engine",
        extra={"store_url": redact_url(url), "backend": "sql"},
    )
    return engine, sessions


__all__ = ["create_engine_and_sessions", "normalize_database_url", "redact_url"]
