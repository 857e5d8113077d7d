from __future__ import annotations

from collections.abc import Generator, Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from app.errors import TransientStoreError
from app.settings import get_settings


class Base(DeclarativeBase):
    pass


engine = create_engine(
    get_settings().database_url,
    pool_pre_ping=True,
    pool_size=get_settings().batch_worker_pool_size * 2,
)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def read_session(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    try:
        with session_factory() as session:
            yield session
    except (OperationalError, PoolTimeoutError) as exc:
        raise TransientStoreError(f"store read failed: {exc.__class__.__name__}") from exc


@contextmanager
def chunk_transaction(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    """Open one session and one transaction for a chunk write.

    The transaction commits when the block exits normally and rolls back on any
    exception. The session is always closed before returning. Connection-level
    failures surface as ``TransientStoreError`` so the chunk runner can retry.
    """
    try:
        with session_factory() as session, session.begin():
            yield session
    except (OperationalError, PoolTimeoutError) as exc:
        raise TransientStoreError(f"chunk commit failed: {exc.__class__.__name__}") from exc
