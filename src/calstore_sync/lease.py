"""Per-config run leases stored in the sync database."""

import logging
import os
import socket
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
import pytz

from .database import DatabaseManager, SyncLeaseDB
from .errors import LeaseUnavailableError

logger = logging.getLogger(__name__)


def _naive_utcnow() -> datetime:
    # Lease timestamps are stored as naive UTC for portable comparisons
    return datetime.now(pytz.UTC).replace(tzinfo=None)


def default_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


class LeaseManager:
    """Short-TTL mutual exclusion keyed by sync config id."""

    def __init__(self, db_manager: DatabaseManager, ttl_seconds: int = 600, holder: Optional[str] = None):
        self.db_manager = db_manager
        self.ttl = timedelta(seconds=ttl_seconds)
        self.holder = holder or default_holder()
        self.logger = logger.getChild('lease')

    def acquire(self, config_id: UUID) -> None:
        """Take the lease, or take over an expired one.

        Raises:
            LeaseUnavailableError: If a live lease is held by someone else
        """
        now = _naive_utcnow()
        with self.db_manager.get_session() as session:
            try:
                session.add(SyncLeaseDB(
                    sync_config_id=config_id,
                    holder=self.holder,
                    acquired_at=now,
                    expires_at=now + self.ttl,
                ))
                session.commit()
                self.logger.debug(f"Acquired lease for {config_id}")
                return
            except IntegrityError:
                session.rollback()

            outcome = session.execute(
                update(SyncLeaseDB)
                .where(
                    SyncLeaseDB.sync_config_id == config_id,
                    SyncLeaseDB.expires_at <= now,
                )
                .values(holder=self.holder, acquired_at=now, expires_at=now + self.ttl)
            )
            session.commit()
            if outcome.rowcount != 1:
                raise LeaseUnavailableError(f"Sync config {config_id} is already being synced")
            self.logger.info(f"Took over expired lease for {config_id}")

    def renew(self, config_id: UUID) -> bool:
        """Extend our lease. Returns False if we no longer hold it."""
        with self.db_manager.get_session() as session:
            outcome = session.execute(
                update(SyncLeaseDB)
                .where(SyncLeaseDB.sync_config_id == config_id, SyncLeaseDB.holder == self.holder)
                .values(expires_at=_naive_utcnow() + self.ttl)
            )
            session.commit()
            if outcome.rowcount != 1:
                self.logger.warning(f"Lease for {config_id} was lost before renewal")
                return False
            return True

    def release(self, config_id: UUID) -> None:
        with self.db_manager.get_session() as session:
            session.execute(
                delete(SyncLeaseDB).where(
                    SyncLeaseDB.sync_config_id == config_id, SyncLeaseDB.holder == self.holder
                )
            )
            session.commit()
