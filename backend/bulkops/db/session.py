"""Engine and session factory configuration."""

from collections.abc import Generator
import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DisconnectionError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from bulkops.core.config import get_settings
from bulkops.db.base import Base

logger = logging.getLogger(__name__)

settings = get_settings()


def build_engine(database_url: str) -> Engine:
    """Create an engine tuned for long-running worker tasks.

    PostgreSQL gets a pre-pinged, recycled pool with TCP keepalives and a
    bounded connect timeout so a stalled database cannot wedge a worker.
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            echo=False,
            future=True,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    return create_engine(
        database_url,
        echo=False,
        future=True,
        poolclass=QueuePool,
        pool_pre_ping=True,  # Test connections before using
        pool_recycle=1800,  # Recycle connections after 30 minutes
        pool_size=5,
        max_overflow=10,
        connect_args={
            "connect_timeout": 10,
            "keepalives": 1,
            "keepalives_idle": 30,
            "keepalives_interval": 10,
            "keepalives_count": 5,
        },
    )


engine = build_engine(settings.database_url)

SessionLocal = sessionmaker(
    bind=engine, autoflush=False, autocommit=False, expire_on_commit=True
)


def get_fresh_session() -> Session:
    """Get a fresh database session, handling connection errors.

    Long-running worker tasks call this so a stale pooled connection does
    not fail the job before it starts.
    """
    try:
        return SessionLocal()
    except (OperationalError, DisconnectionError) as e:
        logger.warning(f"Connection error creating session: {e}, retrying...")
        engine.dispose()
        return SessionLocal()


def get_db() -> Generator[Session, None, None]:
    """Yield a transactional session for request/worker lifecycles."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(bind: Engine | None = None) -> None:
    """Create any missing tables."""
    import bulkops.db.models  # noqa: F401  registers every model on Base

    Base.metadata.create_all(bind=bind or engine)
