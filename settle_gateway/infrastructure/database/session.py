"""Database session management with connection pooling and optimistic retry"""

import logging
from typing import Callable, Iterator, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.orm.exc import StaleDataError

from settle_gateway.config import settings
from settle_gateway.domain.exceptions import ConcurrentUpdateError
from settle_gateway.infrastructure.observability.metrics import concurrent_update_retry_counter

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Connection pool: max 20 connections, recycle after 1 hour to avoid stale connections
engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,  # Verify connections before using
    pool_size=10,
    max_overflow=10,
    pool_recycle=3600,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Iterator[Session]:
    """Dependency injection for database sessions"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def run_in_transaction(db: Session, work: Callable[[], T], max_attempts: int | None = None) -> T:
    """
    Run a unit of work and commit it, re-running it on write conflicts.

    `work` must load whatever it mutates from the session so a re-run sees the
    winner's committed state. Version mismatches (StaleDataError) and unique
    index races (IntegrityError) are retried; any other exception rolls back
    and propagates.

    Raises:
        ConcurrentUpdateError: conflicts persisted past max_attempts
    """
    max_attempts = max_attempts or settings.optimistic_retry_attempts
    for attempt in range(1, max_attempts + 1):
        try:
            result = work()
            db.commit()
            return result
        except (StaleDataError, IntegrityError) as e:
            db.rollback()
            concurrent_update_retry_counter.inc()
            logger.info(
                "Write conflict, retrying unit of work",
                extra={"attempt": attempt, "max_attempts": max_attempts, "error": type(e).__name__},
            )
            if attempt >= max_attempts:
                raise ConcurrentUpdateError(f"Gave up after {max_attempts} conflicting writes") from e
        except Exception:
            db.rollback()
            raise
    raise ConcurrentUpdateError("No attempts made")
