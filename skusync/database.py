"""Database connection and session factory.

All naive datetimes read back from the database are tagged as UTC by
UTCDateTime so engine comparisons never mix naive and aware values.
"""

from contextlib import contextmanager
from datetime import timezone

from sqlalchemy import DateTime, TypeDecorator, create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .config import settings


class UTCDateTime(TypeDecorator):
    """DateTime type that ensures UTC timezone on load."""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


def _build_engine(url: str):
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        pool_recycle=1800,
    )


engine = _build_engine(settings.database_url)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(session_factory=None):
    """Commit on success, roll back on error; database errors become PersistenceError."""
    from .errors import PersistenceError

    db = (session_factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Database operation failed: {e.__class__.__name__}", {"error": str(e)[:300]}) from e
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
