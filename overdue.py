import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from crud import transaction_to_schema
from lifecycle import TransactionStatus
from models import Transaction
from notifications import NotificationEvent, NotificationSink, emit
from orm import TransactionORM
from time_utils import utcnow

logger = logging.getLogger("inventory.overdue")


def _overdue_query(now: datetime):
    return (
        select(TransactionORM)
        .where(
            TransactionORM.status == TransactionStatus.ACTIVE.value,
            TransactionORM.expected_return_date < now,
        )
        .order_by(TransactionORM.expected_return_date.asc())
    )


def list_overdue(db: Session, *, now: Optional[datetime] = None, user_id: Optional[str] = None) -> list[Transaction]:
    now = now or utcnow()
    stmt = _overdue_query(now)
    if user_id:
        stmt = stmt.where(TransactionORM.user_id == user_id)
    return [transaction_to_schema(t, now) for t in db.execute(stmt).scalars().all()]


def sweep(db: Session, notifier: Optional[NotificationSink], *, now: Optional[datetime] = None) -> int:
    """Notify each newly overdue transaction once. Returns how many were notified."""
    now = now or utcnow()
    rows = db.execute(_overdue_query(now).where(TransactionORM.overdue_notified_at.is_(None))).scalars().all()
    if not rows:
        return 0

    for t in rows:
        t.overdue_notified_at = now
    db.commit()

    for t in rows:
        emit(notifier, NotificationEvent.OVERDUE, transaction_to_schema(t, now))
    logger.info("overdue sweep notified=%s", len(rows))
    return len(rows)


class OverdueSweeper:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        notifier: Optional[NotificationSink],
        interval_seconds: float,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="overdue-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def run_once(self) -> int:
        db = self.session_factory()
        try:
            return sweep(db, self.notifier)
        finally:
            db.close()

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception:
                # keep the timer alive; the next tick retries
                logger.exception("overdue sweep failed")
