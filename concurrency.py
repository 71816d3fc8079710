import logging
import time

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

logger = logging.getLogger("inventory.concurrency")


def run_with_retry(db: Session, func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a unit of work with retry on concurrency-related failures.

    Retries on OperationalError (SQLite "database is locked", Postgres
    deadlocks) and IntegrityError (two requests drawing the same transaction
    number). ``func`` must start from a clean session: the whole unit of work
    is rolled back and replayed. Business errors pass straight through.
    """
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, IntegrityError) as exc:
            db.rollback()
            if attempt >= attempts - 1:
                raise
            logger.warning("retrying after %s (attempt %s/%s)", type(exc).__name__, attempt + 1, attempts)
            time.sleep(backoff_base * (2 ** attempt))
