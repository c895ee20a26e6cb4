"""Shared state primitives: a readers/writer lock and the identity cache."""

from contextlib import contextmanager
from threading import Condition, Lock
from typing import Dict, Iterator, Optional

from dvr_manager.core.logger import setup_logger
from dvr_manager.core.models import MediaIdentity

logger = setup_logger(__name__)


class ReadWriteLock:
    """Many concurrent readers or a single writer.

    Waiting writers block new readers so a steady stream of reads cannot
    starve a write.
    """

    def __init__(self):
        self._cond = Condition(Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class IdentityCache:
    """Resolved identities keyed by filename fingerprint.

    Lives as long as the object that owns it (normally the process). Nothing
    is ever evicted; only successful resolutions are stored.
    """

    def __init__(self):
        self._lock = ReadWriteLock()
        self._entries: Dict[str, MediaIdentity] = {}
        # Readers share the read lock, so the counters need their own
        self._stats_lock = Lock()
        self.hits = 0
        self.misses = 0

    def get(self, fingerprint: str) -> Optional[MediaIdentity]:
        with self._lock.read():
            identity = self._entries.get(fingerprint)
        with self._stats_lock:
            if identity is None:
                self.misses += 1
            else:
                self.hits += 1
        return identity

    def put(self, fingerprint: str, identity: MediaIdentity) -> MediaIdentity:
        """Store an identity; the first stored value for a fingerprint wins."""
        with self._lock.write():
            existing = self._entries.get(fingerprint)
            if existing is not None:
                return existing
            self._entries[fingerprint] = identity
        logger.debug(f"Cached identity {fingerprint[:8]}: {identity.show} S{identity.season}E{identity.episode}")
        return identity

    def __contains__(self, fingerprint: str) -> bool:
        with self._lock.read():
            return fingerprint in self._entries

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._entries)
