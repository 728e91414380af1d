# chatsales/database.py
import logging
from contextlib import contextmanager
from typing import Generator, Optional, Tuple

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from sqlalchemy.exc import SQLAlchemyError, IntegrityError, OperationalError

from chatsales.config import settings  # config must not import chatsales.database

logger = logging.getLogger(__name__)


def build_engine(url: str):
    """Engine for the given URL; SQLite needs cross-thread access for to_thread stores."""
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_recycle=3600,
    )


engine = build_engine(settings.DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(session_factory=SessionLocal) -> Generator[Session, None, None]:
    """Session that is always closed; commit stays explicit (see safe_commit)."""
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


def safe_commit(db: Session, operation: str = "database operation") -> Tuple[bool, Optional[str]]:
    """
    Commit, rolling back on failure. Returns (ok, error_message); the message
    is for logs and PersistenceError, never for the chat surface.
    """
    try:
        db.commit()
        return True, None
    except SQLAlchemyError as e:
        db.rollback()
        if isinstance(e, IntegrityError):
            kind = "Integrity error"
        elif isinstance(e, OperationalError):
            kind = "Database operational error"
        else:
            kind = "Database error"
        detail = getattr(e, "orig", None) or e
        error_msg = f"{kind} during {operation}: {str(detail)[:200]}"
        logger.error(error_msg)
        return False, error_msg


def init_db(bind=None) -> None:
    """Create all tables registered on Base."""
    # models register themselves on import
    import chatsales.models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
