"""Database connection and session management."""
from collections.abc import Generator, Iterator
from contextlib import contextmanager
import logging

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from warden.config import get_settings
from warden.errors import StoreUnavailableError

logger = logging.getLogger(__name__)
settings = get_settings()

# SQLite requires check_same_thread=False for FastAPI
connect_args = {"check_same_thread": False} if "sqlite" in settings.database_url else {}

engine = create_engine(
    settings.database_url,
    connect_args=connect_args,
    echo=settings.debug,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Dependency that provides a database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """Context manager for database session (for use outside of FastAPI)."""
    db = SessionLocal()
    try:
        with transaction(db):
            yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """Unit of work: commit everything written inside the block, or nothing.

    Nested blocks join the outermost one; only the outermost commits or
    rolls back. Lock timeouts and dropped connections surface as
    ``StoreUnavailableError`` so callers can retry; domain errors propagate
    unchanged.
    """
    depth = db.info.get("transaction_depth", 0)
    db.info["transaction_depth"] = depth + 1
    try:
        yield db
        if depth == 0:
            db.commit()
    except OperationalError as exc:
        if depth:
            raise
        db.rollback()
        logger.error("Database unavailable, transaction rolled back: %s", exc.orig)
        raise StoreUnavailableError("Database temporarily unavailable") from exc
    except Exception:
        if depth == 0:
            db.rollback()
        raise
    finally:
        db.info["transaction_depth"] = depth
