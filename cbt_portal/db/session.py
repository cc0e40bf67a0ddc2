"""Database engine, session factory and the request-scoped session dependency.

Sessions are synchronous. The exam session store drives them from worker
threads (see :mod:`cbt_portal.session.sql_store`), so a session is used by
several threads over its life, one at a time.
"""

from typing import Any, Iterator, Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from cbt_portal.config import settings

_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None  # type: ignore[type-arg]


class Base(DeclarativeBase):
    """Declarative base shared by every CBT table."""


def engine_options(url: str) -> dict[str, Any]:
    """Keyword arguments for :func:`create_engine` suited to *url*'s backend."""
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return {"pool_pre_ping": True}

    options: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if parsed.database in (None, "", ":memory:"):
        # every session must see the same in-memory database
        options["poolclass"] = StaticPool
    return options


def build_engine(url: str, echo: bool = False) -> Engine:
    return create_engine(url, echo=echo, **engine_options(url))


def build_session_factory(engine: Engine) -> sessionmaker:  # type: ignore[type-arg]
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


def get_engine() -> Engine:
    """Engine for ``settings.DATABASE_URL``, created on first use."""
    global _engine
    if _engine is None:
        _engine = build_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
    return _engine


def get_session_factory() -> sessionmaker:  # type: ignore[type-arg]
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = build_session_factory(get_engine())
    return _SessionLocal


def get_db() -> Iterator[Session]:
    """FastAPI dependency: one session per request, closed afterwards."""
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()
