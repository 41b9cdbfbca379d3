"""
Lease Module
Time-bounded exclusive claims on a resource (set-if-absent with expiry).

A lease is identified by its resource key and owned by a holder token.
At most one unexpired lease exists per key; an expired lease can be taken
over by any caller even if its holder never released it.
"""

import os
import socket
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterator, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError

from activity_sync.database.models import SyncLease
from activity_sync.utils.helpers import utcnow
from activity_sync.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Lease:
    """An acquired lease."""
    key: str
    holder: str
    expires_at: datetime


def new_holder_id() -> str:
    """Unique holder token for one acquisition."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:12]}"


def repository_lease_key(repository_id: int) -> str:
    return f"sync:repository:{repository_id}"


class LeaseStore:
    """Interface for lease stores."""

    def acquire(self, key: str, ttl_seconds: float, holder: Optional[str] = None) -> Optional[Lease]:
        """
        Acquire the lease for ``key`` if no valid lease exists.

        Returns:
            The lease, or None if another holder owns an unexpired lease
        """
        raise NotImplementedError

    def renew(self, lease: Lease, ttl_seconds: float) -> Optional[Lease]:
        """Extend a lease still owned by its holder. Returns None if it was lost."""
        raise NotImplementedError

    def release(self, lease: Lease) -> bool:
        """Release a lease. Returns False if it was no longer owned by the holder."""
        raise NotImplementedError

    def get(self, key: str) -> Optional[Lease]:
        """Current unexpired lease for ``key``, if any."""
        raise NotImplementedError

    @contextmanager
    def hold(self, key: str, ttl_seconds: float) -> Iterator[Optional[Lease]]:
        """
        Hold a lease for the duration of a block.

        Yields None when the lease is held elsewhere; the block decides what to do.
        """
        lease = self.acquire(key, ttl_seconds)
        try:
            yield lease
        finally:
            if lease is not None:
                self.release(lease)


class InMemoryLeaseStore(LeaseStore):
    """Process-local lease store."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._lock = threading.Lock()
        self._leases: Dict[str, Lease] = {}

    def acquire(self, key: str, ttl_seconds: float, holder: Optional[str] = None) -> Optional[Lease]:
        now = self._clock()
        with self._lock:
            current = self._leases.get(key)
            if current is not None and current.expires_at > now:
                return None

            lease = Lease(key=key, holder=holder or new_holder_id(), expires_at=now + timedelta(seconds=ttl_seconds))
            self._leases[key] = lease
            return lease

    def renew(self, lease: Lease, ttl_seconds: float) -> Optional[Lease]:
        now = self._clock()
        with self._lock:
            current = self._leases.get(lease.key)
            if current is None or current.holder != lease.holder:
                return None

            renewed = Lease(key=lease.key, holder=lease.holder, expires_at=now + timedelta(seconds=ttl_seconds))
            self._leases[lease.key] = renewed
            return renewed

    def release(self, lease: Lease) -> bool:
        with self._lock:
            current = self._leases.get(lease.key)
            if current is None or current.holder != lease.holder:
                return False
            del self._leases[lease.key]
            return True

    def get(self, key: str) -> Optional[Lease]:
        now = self._clock()
        with self._lock:
            current = self._leases.get(key)
            if current is None or current.expires_at <= now:
                return None
            return current


class SqlLeaseStore(LeaseStore):
    """Lease store backed by the ``sync_leases`` table."""

    def __init__(self, db, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self._clock = clock

    def acquire(self, key: str, ttl_seconds: float, holder: Optional[str] = None) -> Optional[Lease]:
        now = self._clock()
        lease = Lease(key=key, holder=holder or new_holder_id(), expires_at=now + timedelta(seconds=ttl_seconds))

        try:
            with self.db.session_scope() as session:
                # Take over an expired lease left by a crashed holder
                session.execute(
                    delete(SyncLease).where(SyncLease.resource_key == key, SyncLease.expires_at <= now)
                )
                session.add(SyncLease(
                    resource_key=key,
                    holder=lease.holder,
                    acquired_at=now,
                    expires_at=lease.expires_at
                ))
        except IntegrityError:
            logger.debug(f"Lease {key} is held by another holder")
            return None

        return lease

    def renew(self, lease: Lease, ttl_seconds: float) -> Optional[Lease]:
        expires_at = self._clock() + timedelta(seconds=ttl_seconds)
        with self.db.session_scope() as session:
            result = session.execute(
                update(SyncLease)
                .where(SyncLease.resource_key == lease.key, SyncLease.holder == lease.holder)
                .values(expires_at=expires_at)
            )
            if result.rowcount != 1:
                return None
        return Lease(key=lease.key, holder=lease.holder, expires_at=expires_at)

    def release(self, lease: Lease) -> bool:
        with self.db.session_scope() as session:
            result = session.execute(
                delete(SyncLease).where(SyncLease.resource_key == lease.key, SyncLease.holder == lease.holder)
            )
            return result.rowcount == 1

    def get(self, key: str) -> Optional[Lease]:
        with self.db.session_scope() as session:
            row = session.get(SyncLease, key)
            if row is None or row.expires_at <= self._clock():
                return None
            return Lease(key=row.resource_key, holder=row.holder, expires_at=row.expires_at)
