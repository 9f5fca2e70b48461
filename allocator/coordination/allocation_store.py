"""
allocator/coordination/allocation_store.py
──────────────────────────────────────────
AllocationStore: publishes the plan and lets any node read or follow it.

Protocol
─────────
  publish(plan)  → serialise, grant a fresh lease (TTL lease_ttl_s), put the
                   plan under the well-known key bound to that lease. The
                   previous value is overwritten. Single writer is assumed,
                   not enforced: two solver nodes would both publish and the
                   last write wins.
  get()          → point read of the key → AllocationPlan.
  watch(stop)    → change notifications for the key. Subscribers re-read
                   the whole plan on every notification; nothing is merged.

Error contract
───────────────
  LeaseGrantError          publish: lease refused. Fatal to the publish.
  StoreUnavailableError    publish/get: transport failure or timeout.
  AllocationNotFoundError  get: key has no value (never published, or the
                           lease expired before the next publish).
  AllocationCorruptError   get: value is not a valid plan, or not text at all.
"""

from __future__ import annotations

import logging
import threading
from typing import Iterator, Optional

from pydantic import ValidationError
from tenacity import RetryCallState, RetryError, Retrying, retry_if_exception_type, wait_exponential

from allocator.coordination.store import (
    CoordinationStore,
    CorruptValueError,
    StoreUnavailableError,
    WatchEvent,
)
from allocator.shared.models import AllocationPlan, plan_from_json, plan_to_json

logger = logging.getLogger(__name__)

ALLOCATION_KEY = "allocation"
DEFAULT_LEASE_TTL_S = 60
DEFAULT_RETRY_BACKOFF_S = 1.0
DEFAULT_MAX_BACKOFF_S = 30.0


class AllocationStoreError(Exception):
    """Base class for plan read failures a watcher survives."""


class AllocationNotFoundError(AllocationStoreError):
    """The allocation key holds no value."""


class AllocationCorruptError(AllocationStoreError):
    """The stored value could not be parsed into an AllocationPlan."""


class AllocationStore:
    """
    Plan publication on top of any CoordinationStore.

    Usage:
        allocations = AllocationStore(store, lease_ttl_s=60)
        allocations.publish(plan)          # solver node
        plan = allocations.get()           # any node
        for event in allocations.watch(stop_event):
            ...
    """

    def __init__(
        self,
        store: CoordinationStore,
        key: str = ALLOCATION_KEY,
        lease_ttl_s: int = DEFAULT_LEASE_TTL_S,
        retry_backoff_s: float = DEFAULT_RETRY_BACKOFF_S,
        max_backoff_s: float = DEFAULT_MAX_BACKOFF_S,
    ) -> None:
        self._store = store
        self.key = key
        self.lease_ttl_s = lease_ttl_s
        self.retry_backoff_s = retry_backoff_s
        self.max_backoff_s = max_backoff_s

    def publish(self, plan: AllocationPlan) -> None:
        """
        Write plan under the allocation key with a fresh lease.

        Raises:
            LeaseGrantError, StoreUnavailableError
        """
        payload = plan_to_json(plan)
        lease = self._store.grant_lease(self.lease_ttl_s)
        self._store.put(self.key, payload, lease=lease)
        logger.info(
            "Published allocation for %d functions under %r (lease %d, ttl %ds)",
            len(plan), self.key, lease.lease_id, lease.ttl_s,
        )

    def get(self) -> AllocationPlan:
        """
        Read the current plan.

        Raises:
            AllocationNotFoundError, StoreUnavailableError, AllocationCorruptError
        """
        try:
            payload = self._store.get(self.key)
        except CorruptValueError as e:
            raise AllocationCorruptError(f"failed to decode allocation under {self.key!r}: {e}") from e
        if payload is None:
            raise AllocationNotFoundError(f"no data found for key {self.key!r}")
        try:
            return plan_from_json(payload)
        except ValidationError as e:
            raise AllocationCorruptError(f"failed to parse allocation under {self.key!r}: {e}") from e

    def watch(self, stop_event: Optional[threading.Event] = None) -> Iterator[WatchEvent]:
        """
        Follow the allocation key until stop_event is set.

        The first subscription is made before this method returns, so a
        caller may subscribe, then read, without missing an update. When the
        subscription breaks it is re-established with exponential backoff,
        starting at retry_backoff_s and capped at max_backoff_s; the backoff
        resets once a notification gets through. Notifications sent while
        disconnected are lost, and the caller's next read picks up the
        latest plan.

        Raises:
            StoreUnavailableError: only if the very first subscription fails.
        """
        stop_event = stop_event or threading.Event()
        subscription = self._store.watch(self.key, stop_event)
        return self._restartable(subscription, stop_event)

    def _restartable(
        self,
        subscription: Optional[Iterator[WatchEvent]],
        stop_event: threading.Event,
    ) -> Iterator[WatchEvent]:
        while not stop_event.is_set():
            try:
                for attempt in self.retrying(stop_event):
                    with attempt:
                        if subscription is None:
                            subscription = self._store.watch(self.key, stop_event)
                            logger.info("Re-established watch on %r", self.key)
                        try:
                            event = next(subscription, None)
                        except StoreUnavailableError:
                            subscription = None
                            raise
            except RetryError:
                # stopped while the store was unreachable
                return
            if event is None:
                subscription = None
                continue
            yield event

    def retrying(self, stop_event: threading.Event) -> Retrying:
        """Retry policy for StoreUnavailableError: exponential backoff until stop_event is set."""
        return Retrying(
            retry=retry_if_exception_type(StoreUnavailableError),
            wait=wait_exponential(multiplier=self.retry_backoff_s, max=self.max_backoff_s),
            stop=lambda retry_state: stop_event.is_set(),
            sleep=stop_event.wait,
            before_sleep=self._log_retry,
        )

    def _log_retry(self, retry_state: RetryCallState) -> None:
        logger.error(
            "Watch on %r failed: %s. Retrying in %.1fs",
            self.key, retry_state.outcome.exception(), retry_state.next_action.sleep,
        )
