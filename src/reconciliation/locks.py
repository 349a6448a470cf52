from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Iterator
from uuid import UUID, uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.orm import Session

from db import models
from domain.base_types import UserId

logger = logging.getLogger(__name__)


class ReconciliationInProgressError(Exception):
    def __init__(self, *, user_id: UserId, held_since: datetime | None) -> None:
        self.user_id = user_id
        self.held_since = held_since
        super().__init__(f"Reconciliation already running for user={user_id} since {held_since}")


class UserRunLock:
    """One reconciliation run per user at a time, enforced through a row in the database.

    "Not already linked" is only checked when candidates are queried, so two runs for the
    same user could otherwise claim the same transfer. Locks not renewed within ``ttl`` belong
    to crashed runs and are taken over; a live run calls ``renew`` as it goes.
    """

    def __init__(self, session: Session, *, ttl: timedelta = timedelta(minutes=30)) -> None:
        self._session = session
        self._ttl = ttl

    @contextmanager
    def hold(self, user_id: UserId) -> Iterator[UUID]:
        run_id = self._acquire(user_id)
        try:
            yield run_id
        finally:
            self._release(user_id, run_id)

    def renew(self, user_id: UserId, run_id: UUID) -> None:
        """Push the lock expiry forward; raises if another run took the lock over."""
        result = self._session.execute(
            update(models.ReconciliationLockOrm)
            .where(
                models.ReconciliationLockOrm.user_id == user_id,
                models.ReconciliationLockOrm.run_id == run_id,
            )
            .values(acquired_at=datetime.now(timezone.utc))
        )
        self._session.commit()
        if result.rowcount != 1:
            raise ReconciliationInProgressError(user_id=user_id, held_since=self._held_since(user_id))

    def _acquire(self, user_id: UserId) -> UUID:
        now = datetime.now(timezone.utc)
        run_id = uuid4()

        stale = self._session.execute(
            delete(models.ReconciliationLockOrm).where(
                models.ReconciliationLockOrm.user_id == user_id,
                models.ReconciliationLockOrm.acquired_at < now - self._ttl,
            )
        )
        if stale.rowcount:
            logger.warning("Taking over stale reconciliation lock for user=%s", user_id)

        stmt = insert(models.ReconciliationLockOrm).values(user_id=user_id, run_id=run_id, acquired_at=now)
        stmt = stmt.on_conflict_do_nothing(index_elements=["user_id"])
        result = self._session.execute(stmt)
        self._session.commit()

        if result.rowcount != 1:
            raise ReconciliationInProgressError(user_id=user_id, held_since=self._held_since(user_id))
        return run_id

    def _held_since(self, user_id: UserId) -> datetime | None:
        return self._session.scalar(
            select(models.ReconciliationLockOrm.acquired_at).where(models.ReconciliationLockOrm.user_id == user_id)
        )

    def _release(self, user_id: UserId, run_id: UUID) -> None:
        self._session.rollback()
        self._session.execute(
            delete(models.ReconciliationLockOrm).where(
                models.ReconciliationLockOrm.user_id == user_id,
                models.ReconciliationLockOrm.run_id == run_id,
            )
        )
        self._session.commit()
