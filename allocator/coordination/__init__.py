"""
allocator/coordination: plan distribution through a shared key-value store.

Public API:
    CoordinationStore        : watch / get / put-with-lease contract
    MemoryCoordinationStore  : in-process implementation
    RedisCoordinationStore   : Redis implementation
    AllocationStore          : publish / get / watch of the allocation plan
"""

from allocator.coordination.allocation_store import (
    ALLOCATION_KEY,
    AllocationCorruptError,
    AllocationNotFoundError,
    AllocationStore,
    AllocationStoreError,
)
from allocator.coordination.redis_store import RedisCoordinationStore
from allocator.coordination.store import (
    CoordinationError,
    CoordinationStore,
    CorruptValueError,
    Lease,
    LeaseGrantError,
    MemoryCoordinationStore,
    StoreUnavailableError,
    WatchEvent,
    WatchEventType,
)

__all__ = [
    "ALLOCATION_KEY",
    "AllocationCorruptError",
    "AllocationNotFoundError",
    "AllocationStore",
    "AllocationStoreError",
    "CoordinationError",
    "CoordinationStore",
    "CorruptValueError",
    "Lease",
    "LeaseGrantError",
    "MemoryCoordinationStore",
    "RedisCoordinationStore",
    "StoreUnavailableError",
    "WatchEvent",
    "WatchEventType",
]
