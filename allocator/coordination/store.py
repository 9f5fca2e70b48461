"""
allocator/coordination/store.py
───────────────────────────────
The coordination-store contract: a small watch / get / put-with-lease
key-value service.

Everything above this file (AllocationStore, the store-backed registries)
talks to CoordinationStore only. Two implementations ship:

  MemoryCoordinationStore  → this file. Single process, used by tests and by
                             `--store memory` for a one-node setup.
  RedisCoordinationStore   → redis_store.py. The multi-node deployment.

Leases
───────
grant_lease(ttl) returns a Lease. A value put with a lease disappears when the
lease expires; nothing renews leases here. The publisher grants a fresh lease
for every publish.

Watch
──────
watch(key, stop_event) yields WatchEvent(PUT|DELETE) for changes to one key
after the subscription starts. Events carry no value: subscribers re-read the
key, which keeps delivery a full-state replacement.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

WATCH_POLL_INTERVAL_S: float = 0.5
"""How often a blocked watch wakes up to check its stop event and expiries."""

EVENT_HISTORY: int = 1024
"""Events retained by MemoryCoordinationStore. A watcher that falls further
behind than this resumes from the oldest retained event."""


# ── Exceptions ────────────────────────────────────────────────────────────────

class CoordinationError(Exception):
    """Base class for coordination-store failures."""


class LeaseGrantError(CoordinationError):
    """The store refused or failed to grant a lease. Fatal to a publish."""


class StoreUnavailableError(CoordinationError):
    """Transport failure or timeout talking to the store."""


class CorruptValueError(CoordinationError):
    """A stored value could not be decoded as text."""


# ── Value types ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Lease:
    """A TTL-bound token. Keys put under it vanish when it expires."""
    lease_id: int
    ttl_s: int


class WatchEventType(str, Enum):
    PUT = "PUT"
    DELETE = "DELETE"


@dataclass(frozen=True)
class WatchEvent:
    type: WatchEventType
    key: str
    revision: int = 0


# ── Contract ──────────────────────────────────────────────────────────────────

class CoordinationStore(ABC):
    """Generic watch / get / put-with-lease key-value service."""

    @abstractmethod
    def grant_lease(self, ttl_s: int) -> Lease:
        """Raises LeaseGrantError."""

    @abstractmethod
    def put(self, key: str, value: str, lease: Optional[Lease] = None) -> None:
        """Overwrite key. Raises StoreUnavailableError."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Current value or None. Raises StoreUnavailableError, CorruptValueError."""

    @abstractmethod
    def get_prefix(self, prefix: str) -> Dict[str, str]:
        """
        All live keys starting with prefix. Keys whose value cannot be
        decoded are left out.

        Raises StoreUnavailableError, CorruptValueError (undecodable key).
        """

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove key if present. Raises StoreUnavailableError."""

    @abstractmethod
    def watch(self, key: str, stop_event: Optional[threading.Event] = None) -> Iterator[WatchEvent]:
        """
        Subscribe to key and return an iterator of its changes.

        The subscription is established before this method returns. The
        iterator ends when stop_event is set and raises StoreUnavailableError
        when the subscription breaks; callers that need an unbounded watch
        restart it.
        """

    def close(self) -> None:
        """Release connections. Default: nothing to release."""


# ── In-memory implementation ─────────────────────────────────────────────────

class MemoryCoordinationStore(CoordinationStore):
    """
    Thread-safe in-process store with real lease expiry.

    clock is injectable so tests can expire leases without sleeping.

    Expiry is evaluated lazily: on every operation, and on every wake-up of a
    blocked watcher. An expired key emits one DELETE event.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._cond = threading.Condition()
        self._data: Dict[str, Tuple[str, Optional[int]]] = {}   # key → (value, lease_id)
        self._leases: Dict[int, float] = {}                      # lease_id → expires_at
        self._events: List[WatchEvent] = []
        self._events_base = 0        # absolute index of self._events[0]
        self._revision = 0
        self._lease_ids = itertools.count(1)
        self._closed = False

    def grant_lease(self, ttl_s: int) -> Lease:
        if ttl_s <= 0:
            raise LeaseGrantError(f"lease TTL must be positive, got {ttl_s}")
        with self._cond:
            self._check_open()
            lease = Lease(lease_id=next(self._lease_ids), ttl_s=ttl_s)
            self._leases[lease.lease_id] = self._clock() + ttl_s
            return lease

    def put(self, key: str, value: str, lease: Optional[Lease] = None) -> None:
        with self._cond:
            self._check_open()
            self._expire()
            if lease is not None and lease.lease_id not in self._leases:
                raise StoreUnavailableError(f"lease {lease.lease_id} is unknown or expired")
            self._data[key] = (value, lease.lease_id if lease else None)
            self._emit(WatchEventType.PUT, key)

    def get(self, key: str) -> Optional[str]:
        with self._cond:
            self._check_open()
            self._expire()
            entry = self._data.get(key)
            return entry[0] if entry else None

    def get_prefix(self, prefix: str) -> Dict[str, str]:
        with self._cond:
            self._check_open()
            self._expire()
            return {k: v for k, (v, _) in self._data.items() if k.startswith(prefix)}

    def delete(self, key: str) -> None:
        with self._cond:
            self._check_open()
            self._expire()
            if self._data.pop(key, None) is not None:
                self._emit(WatchEventType.DELETE, key)

    def watch(self, key: str, stop_event: Optional[threading.Event] = None) -> Iterator[WatchEvent]:
        # Subscribe now, not on the first next(): changes made after this call
        # returns are never missed.
        with self._cond:
            self._check_open()
            cursor = self._events_end()
        return self._follow(key, cursor, stop_event or threading.Event())

    def _follow(self, key: str, cursor: int, stop_event: threading.Event) -> Iterator[WatchEvent]:
        while not stop_event.is_set():
            with self._cond:
                self._expire()
                if cursor == self._events_end() and not self._closed:
                    self._cond.wait(timeout=WATCH_POLL_INTERVAL_S)
                    self._expire()
                if self._closed:
                    raise StoreUnavailableError("store closed")
                pending = self._events[max(cursor - self._events_base, 0):]
                cursor = self._events_end()

            for event in pending:
                if event.key == key:
                    yield event

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    # ── Internals (caller holds self._cond) ───────────────────────────────────

    def _check_open(self) -> None:
        if self._closed:
            raise StoreUnavailableError("store closed")

    def _expire(self) -> None:
        now = self._clock()
        dead = {lid for lid, expires_at in self._leases.items() if expires_at <= now}
        if not dead:
            return
        for lid in dead:
            del self._leases[lid]
        for key in [k for k, (_, lid) in self._data.items() if lid in dead]:
            del self._data[key]
            logger.debug("Key %s expired with its lease", key)
            self._emit(WatchEventType.DELETE, key)

    def _events_end(self) -> int:
        return self._events_base + len(self._events)

    def _emit(self, event_type: WatchEventType, key: str) -> None:
        self._revision += 1
        self._events.append(WatchEvent(type=event_type, key=key, revision=self._revision))
        overflow = len(self._events) - EVENT_HISTORY
        if overflow > 0:
            del self._events[:overflow]
            self._events_base += overflow
        self._cond.notify_all()
