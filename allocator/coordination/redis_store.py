"""
allocator/coordination/redis_store.py
─────────────────────────────────────
CoordinationStore on top of Redis.

Mapping
────────
  lease        → counter key LEASE_COUNTER_KEY hands out ids; each lease is a
                 key "lease:<id>" with EX=ttl. A value put under a lease gets
                 the lease's remaining TTL (PX), so both vanish together.
  put / delete → SET / DEL, then PUBLISH "PUT" / "DELETE" on "watch:<key>".
  watch        → SUBSCRIBE "watch:<key>", polled with get_message(timeout).
  get_prefix   → SCAN MATCH "<prefix>*" + MGET.

Limitation: an expiry does not publish anything, so watchers are not told
when the plan times out. They see NotFound on the next read instead.

Timeouts: every command runs with socket_timeout=timeout_s (default 5s); a
timeout surfaces as StoreUnavailableError.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Iterator, List, Optional

import redis
from redis.exceptions import RedisError

from allocator.coordination.store import (
    CoordinationStore,
    CorruptValueError,
    Lease,
    LeaseGrantError,
    StoreUnavailableError,
    WATCH_POLL_INTERVAL_S,
    WatchEvent,
    WatchEventType,
)

logger = logging.getLogger(__name__)

LEASE_COUNTER_KEY = "lease:counter"
LEASE_KEY_PREFIX = "lease:"
WATCH_CHANNEL_PREFIX = "watch:"

_GLOB_SPECIALS = "\\*?[]"


class RedisCoordinationStore(CoordinationStore):
    """
    Usage:
        store = RedisCoordinationStore.from_url("redis://coordinator:6379/0")
        lease = store.grant_lease(60)
        store.put("allocation", payload, lease)
    """

    def __init__(self, client: "redis.Redis", timeout_s: float = 5.0) -> None:
        self._client = client
        self.timeout_s = timeout_s

    @classmethod
    def from_url(cls, url: str, timeout_s: float = 5.0) -> "RedisCoordinationStore":
        client = redis.Redis.from_url(
            url,
            socket_timeout=timeout_s,
            socket_connect_timeout=timeout_s,
            decode_responses=True,
        )
        logger.info("Using redis coordination store at %s", url)
        return cls(client, timeout_s=timeout_s)

    # ── Leases ────────────────────────────────────────────────────────────────

    def grant_lease(self, ttl_s: int) -> Lease:
        if ttl_s <= 0:
            raise LeaseGrantError(f"lease TTL must be positive, got {ttl_s}")
        try:
            lease_id = int(self._client.incr(LEASE_COUNTER_KEY))
            self._client.set(_lease_key(lease_id), ttl_s, ex=ttl_s)
        except RedisError as e:
            raise LeaseGrantError(f"could not grant {ttl_s}s lease: {e}") from e
        return Lease(lease_id=lease_id, ttl_s=ttl_s)

    # ── Key/value ─────────────────────────────────────────────────────────────

    def put(self, key: str, value: str, lease: Optional[Lease] = None) -> None:
        try:
            pipe = self._client.pipeline()
            if lease is not None:
                remaining_ms = self._client.pttl(_lease_key(lease.lease_id))
                if remaining_ms is None or remaining_ms <= 0:
                    raise StoreUnavailableError(f"lease {lease.lease_id} is unknown or expired")
                pipe.set(key, value, px=remaining_ms)
            else:
                pipe.set(key, value)
            pipe.publish(_channel(key), WatchEventType.PUT.value)
            pipe.execute()
        except RedisError as e:
            raise StoreUnavailableError(f"put {key!r} failed: {e}") from e

    def get(self, key: str) -> Optional[str]:
        try:
            return _decode(self._client.get(key))
        except RedisError as e:
            raise StoreUnavailableError(f"get {key!r} failed: {e}") from e
        except UnicodeDecodeError as e:
            raise CorruptValueError(f"value under {key!r} is not valid UTF-8: {e}") from e

    def get_prefix(self, prefix: str) -> Dict[str, str]:
        try:
            keys = [_decode(k) for k in self._client.scan_iter(match=_escape_glob(prefix) + "*")]
        except RedisError as e:
            raise StoreUnavailableError(f"prefix read {prefix!r} failed: {e}") from e
        except UnicodeDecodeError as e:
            raise CorruptValueError(f"key under {prefix!r} is not valid UTF-8: {e}") from e
        if not keys:
            return {}

        try:
            values = self._client.mget(keys)
            # a key can expire between SCAN and MGET
            return {k: _decode(v) for k, v in zip(keys, values) if v is not None}
        except RedisError as e:
            raise StoreUnavailableError(f"prefix read {prefix!r} failed: {e}") from e
        except UnicodeDecodeError:
            # one bad value spoils the whole MGET reply
            return self._get_each(keys)

    def _get_each(self, keys: List[str]) -> Dict[str, str]:
        values: Dict[str, str] = {}
        for key in keys:
            try:
                value = self.get(key)
            except CorruptValueError as e:
                logger.warning("Skipping %s", e)
                continue
            if value is not None:
                values[key] = value
        return values

    def delete(self, key: str) -> None:
        try:
            pipe = self._client.pipeline()
            pipe.delete(key)
            pipe.publish(_channel(key), WatchEventType.DELETE.value)
            pipe.execute()
        except RedisError as e:
            raise StoreUnavailableError(f"delete {key!r} failed: {e}") from e

    # ── Watch ─────────────────────────────────────────────────────────────────

    def watch(self, key: str, stop_event: Optional[threading.Event] = None) -> Iterator[WatchEvent]:
        pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        try:
            pubsub.subscribe(_channel(key))
        except RedisError as e:
            pubsub.close()
            raise StoreUnavailableError(f"watch {key!r} failed: {e}") from e
        return self._follow(pubsub, key, stop_event or threading.Event())

    def _follow(self, pubsub: Any, key: str, stop_event: threading.Event) -> Iterator[WatchEvent]:
        try:
            while not stop_event.is_set():
                try:
                    message = pubsub.get_message(timeout=WATCH_POLL_INTERVAL_S)
                except RedisError as e:
                    raise StoreUnavailableError(f"watch {key!r} broke: {e}") from e
                except UnicodeDecodeError:
                    logger.warning("Ignoring undecodable notification on %s", _channel(key))
                    continue
                if not message or message.get("type") != "message":
                    continue
                data = message.get("data")
                try:
                    event_type = WatchEventType(_decode(data))
                except ValueError:
                    logger.warning("Ignoring unknown notification %r on %s", data, _channel(key))
                    continue
                yield WatchEvent(type=event_type, key=key)
        finally:
            pubsub.close()

    def close(self) -> None:
        self._client.close()


# ── Helpers ───────────────────────────────────────────────────────────────────

def _lease_key(lease_id: int) -> str:
    return f"{LEASE_KEY_PREFIX}{lease_id}"


def _channel(key: str) -> str:
    return f"{WATCH_CHANNEL_PREFIX}{key}"


def _escape_glob(prefix: str) -> str:
    return "".join("\\" + c if c in _GLOB_SPECIALS else c for c in prefix)


def _decode(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value
