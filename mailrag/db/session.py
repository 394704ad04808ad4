from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from mailrag.core.config import settings


class Base(DeclarativeBase):
    pass


def build_engine(database_url: str | None = None):
    # bounded pool: no overflow, checkout waits at most DB_POOL_TIMEOUT_SECONDS
    return create_engine(
        database_url or settings.database_url,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT_SECONDS,
        pool_recycle=settings.DB_POOL_RECYCLE_SECONDS,
        pool_pre_ping=True,
        connect_args={"connect_timeout": settings.DB_CONNECT_TIMEOUT_SECONDS},
    )


engine = build_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def session_scope(factory=None) -> Iterator[Session]:
    session = (factory or SessionLocal)()
    try:
        yield session
    finally:
        session.close()
