#!/usr/bin/env python3
"""
Idempotency control for creating runs and other persistent work.

A caller supplies (or derives) a key per logical operation. The first
caller with a key runs the factory and stores its result; everyone after
gets the stored record back without side effects.

Atomicity:
- In-process: same-key callers serialize on a per-key asyncio.Lock
- Cross-process: a caller reserves the key in the store (SET NX EX on
  Redis) before running the factory; other writers poll until the record
  appears or the reservation expires
- insert_if_absent stays a compare-and-set for writers whose reservation
  lapsed, so the loser still receives the winner's record

derive_key hashes the payload with 32-bit FNV-1a. The hash is a dedup hint,
not a security boundary.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import math
import os
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union

import redis

from flowguard.config import get_idempotency_settings
from flowguard.event_log import EventType, log_event

logger = logging.getLogger("idempotency")

FNV_OFFSET_BASIS = 0x811C9DC5
FNV_PRIME = 0x01000193
BASE36_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"


@dataclass(frozen=True)
class IdempotencyRecord:
    scope: str
    key: str
    result_ref: Any
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scope": self.scope,
            "key": self.key,
            "result_ref": self.result_ref,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IdempotencyRecord":
        return cls(
            scope=data["scope"],
            key=data["key"],
            result_ref=data.get("result_ref"),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


class IdempotencyConflictError(Exception):
    """Another writer holds the key and did not finish within the reservation window."""


# =============================================================================
# STORES
# =============================================================================

class IdempotencyStore(ABC):
    """
    Persistence for idempotency records keyed by (scope, key).

    Creating a record is a two-step protocol: reserve the key, then insert
    the record. A reservation expires after ttl_seconds so a crashed writer
    does not hold the key forever.
    """

    @abstractmethod
    def get(self, scope: str, key: str) -> Optional[IdempotencyRecord]:
        """Return the stored record or None."""

    @abstractmethod
    def insert_if_absent(self, record: IdempotencyRecord) -> Tuple[IdempotencyRecord, bool]:
        """Store record unless one exists. Returns (stored record, inserted)."""

    @abstractmethod
    def reserve(self, scope: str, key: str, token: str, ttl_seconds: float) -> bool:
        """Claim the right to create (scope, key). False while another claim is live."""

    @abstractmethod
    def release(self, scope: str, key: str, token: str) -> None:
        """Drop the claim held under token, if it is still held."""


class InMemoryIdempotencyStore(IdempotencyStore):
    """Thread-safe dictionary store for a single process."""

    def __init__(self):
        self._records: Dict[Tuple[str, str], IdempotencyRecord] = {}
        self._reservations: Dict[Tuple[str, str], Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def get(self, scope: str, key: str) -> Optional[IdempotencyRecord]:
        with self._lock:
            return self._records.get((scope, key))

    def insert_if_absent(self, record: IdempotencyRecord) -> Tuple[IdempotencyRecord, bool]:
        with self._lock:
            existing = self._records.get((record.scope, record.key))
            if existing is not None:
                return existing, False
            self._records[(record.scope, record.key)] = record
            return record, True

    def reserve(self, scope: str, key: str, token: str, ttl_seconds: float) -> bool:
        now = time.monotonic()
        with self._lock:
            held = self._reservations.get((scope, key))
            if held is not None and held[1] > now:
                return False
            self._reservations[(scope, key)] = (token, now + ttl_seconds)
            return True

    def release(self, scope: str, key: str, token: str) -> None:
        with self._lock:
            held = self._reservations.get((scope, key))
            if held is not None and held[0] == token:
                del self._reservations[(scope, key)]

    def purge_older_than(self, retention: timedelta) -> int:
        """Drop records created before now - retention. Returns the count removed."""
        cutoff = datetime.now(timezone.utc) - retention
        with self._lock:
            stale = [k for k, r in self._records.items() if r.created_at < cutoff]
            for k in stale:
                del self._records[k]
        return len(stale)


class RedisIdempotencyStore(IdempotencyStore):
    """
    Redis-backed store. Records expire after the retention window.

    Key convention: {prefix}:idempotency:{scope}:{key}, with the pending
    reservation under the same key plus ":pending".

    result_ref must be JSON-serializable. Records come back exactly as a
    later get() would return them.
    """

    RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
  return redis.call('del', KEYS[1])
else
  return 0
end
"""

    def __init__(self, client: Any, prefix: Optional[str] = None, retention_days: Optional[int] = None):
        settings = get_idempotency_settings()
        self._client = client
        self.prefix = prefix or settings.get("redis_prefix", "flowguard")
        self.ttl_seconds = int((retention_days or settings.get("retention_days", 7)) * 86400)

    @classmethod
    def from_url(cls, redis_url: Optional[str] = None, **kwargs) -> "RedisIdempotencyStore":
        """Connect using redis_url or REDIS_URL."""
        redis_url = redis_url or (os.getenv("REDIS_URL") or "").strip()
        if not redis_url:
            raise ValueError("REDIS_URL is not set")
        client = redis.Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        return cls(client, **kwargs)

    def _key(self, scope: str, key: str) -> str:
        return ":".join([self.prefix, "idempotency", scope.strip(":"), key])

    def get(self, scope: str, key: str) -> Optional[IdempotencyRecord]:
        raw = self._client.get(self._key(scope, key))
        if not raw:
            return None
        return IdempotencyRecord.from_dict(json.loads(raw))

    def insert_if_absent(self, record: IdempotencyRecord) -> Tuple[IdempotencyRecord, bool]:
        redis_key = self._key(record.scope, record.key)
        payload = json.dumps(record.to_dict(), ensure_ascii=False)
        stored = IdempotencyRecord.from_dict(json.loads(payload))
        for _ in range(2):
            if self._client.set(redis_key, payload, nx=True, ex=self.ttl_seconds):
                return stored, True
            existing = self.get(record.scope, record.key)
            if existing is not None:
                return existing, False
        raise IdempotencyConflictError(f"{record.scope}:{record.key} vanished while inserting")

    def reserve(self, scope: str, key: str, token: str, ttl_seconds: float) -> bool:
        pending_key = self._key(scope, key) + ":pending"
        return bool(self._client.set(pending_key, token, nx=True, ex=max(1, math.ceil(ttl_seconds))))

    def release(self, scope: str, key: str, token: str) -> None:
        self._client.eval(self.RELEASE_SCRIPT, 1, self._key(scope, key) + ":pending", token)


# =============================================================================
# KEY DERIVATION
# =============================================================================

def fnv1a_32(data: bytes) -> int:
    value = FNV_OFFSET_BASIS
    for byte in data:
        value ^= byte
        value = (value * FNV_PRIME) & 0xFFFFFFFF
    return value


def to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(BASE36_ALPHABET[remainder])
    return "".join(reversed(digits))


def derive_key(scope_id: str, payload: Any = None, now: Optional[datetime] = None) -> str:
    """
    Generate an idempotency key: {scope}_{epoch_ms}_{payload_hash}_{random}.

    Callers that mean "the same logical operation" should reuse one key
    rather than rely on this helper producing matching keys.
    """
    moment = now or datetime.now(timezone.utc)
    timestamp = int(moment.timestamp() * 1000)
    if payload is None:
        payload_hash = "nopayload"
    else:
        serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
        payload_hash = to_base36(fnv1a_32(serialized.encode("utf-8")))[:8]
    suffix = uuid.uuid4().hex[:8]
    return f"{scope_id}_{timestamp}_{payload_hash}_{suffix}"


# =============================================================================
# CONTROLLER
# =============================================================================

Factory = Callable[[], Union[Awaitable[Any], Any]]


class IdempotencyController:
    """Deduplicates creation of persistent work within one scope."""

    def __init__(
        self,
        store: IdempotencyStore,
        scope: str = "default",
        reservation_seconds: Optional[float] = None,
        poll_interval: float = 0.05
    ):
        self.store = store
        self.scope = scope
        self.reservation_seconds = float(
            reservation_seconds or get_idempotency_settings().get("reservation_seconds", 30)
        )
        self.poll_interval = poll_interval
        self._key_locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    async def ensure_idempotent(self, key: str, factory: Factory) -> Tuple[IdempotencyRecord, bool]:
        """
        Return (record, created). The factory runs only when no record exists for
        key and this caller holds the key's reservation.

        Raises:
            IdempotencyConflictError: another writer held the key for the whole
                reservation window without storing a record
        """
        if not key:
            raise ValueError("idempotency key must be non-empty")

        lock = self._key_locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                existing = self.store.get(self.scope, key)
                if existing is not None:
                    logger.info("Idempotency hit for %s:%s", self.scope, key)
                    log_event(EventType.IDEMPOTENCY_HIT, {"scope": self.scope, "key": key})
                    return existing, False

                token = uuid.uuid4().hex
                existing = await self._claim(key, token)
                if existing is not None:
                    logger.info("Idempotency hit for %s:%s after waiting on another writer", self.scope, key)
                    log_event(EventType.IDEMPOTENCY_HIT, {"scope": self.scope, "key": key, "waited": True})
                    return existing, False

                try:
                    result = factory()
                    if inspect.isawaitable(result):
                        result = await result

                    candidate = IdempotencyRecord(
                        scope=self.scope,
                        key=key,
                        result_ref=result,
                        created_at=datetime.now(timezone.utc),
                    )
                    stored, created = self.store.insert_if_absent(candidate)
                finally:
                    self.store.release(self.scope, key, token)

                if not created:
                    # Only reachable when the reservation expired under a slow factory
                    logger.warning("Lost idempotency race for %s:%s to another writer", self.scope, key)
                    log_event(EventType.IDEMPOTENCY_HIT, {"scope": self.scope, "key": key, "race_lost": True})
                else:
                    log_event(EventType.IDEMPOTENCY_CREATED, {"scope": self.scope, "key": key})
                return stored, created
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._key_locks.pop(key, None)

    async def _claim(self, key: str, token: str) -> Optional[IdempotencyRecord]:
        """
        Reserve key for this caller. Returns None once reserved, or the record
        another writer stored while this caller waited.
        """
        deadline = time.monotonic() + self.reservation_seconds
        while True:
            if self.store.reserve(self.scope, key, token, self.reservation_seconds):
                existing = self.store.get(self.scope, key)
                if existing is None:
                    return None
                self.store.release(self.scope, key, token)
                return existing

            existing = self.store.get(self.scope, key)
            if existing is not None:
                return existing
            if time.monotonic() >= deadline:
                raise IdempotencyConflictError(
                    f"{self.scope}:{key} is still reserved by another writer "
                    f"after {self.reservation_seconds:.1f}s"
                )
            await asyncio.sleep(self.poll_interval)
