"""
Exactly-once gate for at-least-once webhook deliveries.

The key `webhook:{provider}:{code}` is claimed atomically before the handler
runs. A claimed key suppresses every later delivery for 24 hours, including
after a handler error. When the store itself is unreachable the gate fails
open: the handler runs anyway and the row locks in the handler keep state
transitions exactly-once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

import redis

from .audit import AuditTrail, EventType
from .db import Database


logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60


class IdempotencyStore(Protocol):
    def claim(self, key: str, ttl_seconds: int) -> bool:
        """Atomically set `key` if absent (or expired). True when this call set it."""
        ...

    def purge_expired(self) -> int:
        """Delete claims past their expiry; returns how many went."""
        ...


class SQLiteIdempotencyStore:
    """Claims stored in the engine database."""

    def __init__(self, db: Database):
        self.db = db

    def claim(self, key: str, ttl_seconds: int) -> bool:
        now = self.db.clock()
        with self.db.transaction() as conn:
            conn.execute(
                "DELETE FROM idempotency_keys WHERE key = ? AND expires_at <= ?",
                (key, now),
            )
            cursor = conn.execute(
                "INSERT OR IGNORE INTO idempotency_keys (key, value, expires_at) VALUES (?, '1', ?)",
                (key, now + ttl_seconds),
            )
            return cursor.rowcount == 1

    def purge_expired(self) -> int:
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM idempotency_keys WHERE expires_at <= ?",
                (self.db.clock(),),
            )
            return cursor.rowcount


class RedisIdempotencyStore:
    """Claims stored in Redis with `SET key 1 NX EX ttl`."""

    def __init__(self, client: "redis.Redis"):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisIdempotencyStore":
        return cls(
            redis.Redis.from_url(
                url,
                decode_responses=True,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
            )
        )

    def claim(self, key: str, ttl_seconds: int) -> bool:
        return bool(self.client.set(key, "1", nx=True, ex=ttl_seconds))

    def purge_expired(self) -> int:
        # Redis drops keys on EX expiry itself.
        return 0


def build_store(db: Database, redis_url: Optional[str] = None) -> IdempotencyStore:
    """Redis when configured and constructible, otherwise the SQLite store."""
    if redis_url:
        try:
            return RedisIdempotencyStore.from_url(redis_url)
        except (redis.RedisError, ValueError) as e:
            logger.warning("Redis idempotency store unavailable (%s); using SQLite", e)
    return SQLiteIdempotencyStore(db)


@dataclass
class GateResult:
    duplicate: bool
    value: Any = None
    degraded: bool = False


def webhook_key(provider: str, code: str) -> str:
    return f"webhook:{provider}:{code}"


class IdempotencyGate:
    def __init__(
        self,
        store: IdempotencyStore,
        audit: Optional[AuditTrail] = None,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ):
        self.store = store
        self.audit = audit
        self.ttl_seconds = ttl_seconds

    def guard(self, provider: str, code: str, handler: Callable[[], Any]) -> GateResult:
        key = webhook_key(provider, code)
        try:
            claimed = self.store.claim(key, self.ttl_seconds)
        except Exception as e:
            logger.warning("Idempotency store error for %s; failing open: %s", key, e)
            return GateResult(duplicate=False, value=handler(), degraded=True)

        if not claimed:
            logger.info("Duplicate webhook suppressed: %s", key)
            if self.audit is not None:
                self.audit.log(
                    EventType.WEBHOOK_DUPLICATE,
                    external_code=code,
                    details={"provider": provider},
                )
            return GateResult(duplicate=True)

        return GateResult(duplicate=False, value=handler())
