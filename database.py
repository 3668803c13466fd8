import logging
from contextlib import contextmanager
from functools import wraps
from typing import Callable, Iterator, Optional, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from config import get_settings
from errors import ConcurrencyConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _build_engine(database_url: str) -> Engine:
    if not database_url.startswith("sqlite"):
        return create_engine(database_url)
    # Scheduler jobs use the engine from worker threads.
    sqlite_engine = create_engine(
        database_url, connect_args={"check_same_thread": False}
    )
    event.listen(sqlite_engine, "connect", _sqlite_on_connect)
    return sqlite_engine


def _sqlite_on_connect(dbapi_conn, _record) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


engine = _build_engine(get_settings().database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope(
    session_factory: Optional[sessionmaker] = None,
) -> Iterator[Session]:
    session: Session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _log_conflict(attempt: int, attempts: int, exc: StaleDataError) -> None:
    logger.warning(
        f"concurrency_conflict: attempt={attempt} of={attempts} error={exc}"
    )


def run_with_retries(
    work: Callable[[Session], T],
    *,
    session_factory: Optional[sessionmaker] = None,
    attempts: Optional[int] = None,
) -> T:
    """Run ``work`` in a fresh unit of work and commit it.

    A conflicting concurrent write (``StaleDataError`` from a versioned row)
    discards the whole unit of work and runs ``work`` again from scratch.
    """
    attempts = attempts or get_settings().concurrency_retries
    for attempt in range(1, attempts + 1):
        try:
            with session_scope(session_factory) as session:
                return work(session)
        except StaleDataError as exc:
            _log_conflict(attempt, attempts, exc)
    raise ConcurrencyConflictError(attempts)


def retry_on_conflict(method: Callable[..., T]) -> Callable[..., T]:
    """Rerun a committing service method after a conflicting concurrent write.

    The service's session is rolled back between attempts, which expires every
    loaded row, so each attempt reads and validates again before it recomputes
    its changes.
    """

    @wraps(method)
    def wrapper(self, *args, **kwargs):
        attempts = get_settings().concurrency_retries
        for attempt in range(1, attempts + 1):
            try:
                return method(self, *args, **kwargs)
            except StaleDataError as exc:
                self.session.rollback()
                _log_conflict(attempt, attempts, exc)
        raise ConcurrencyConflictError(attempts)

    return wrapper
