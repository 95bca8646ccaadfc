"""Redis-backed mutual exclusion for sync jobs.

A lock is a single key set with NX and a millisecond expiry. The value is
the holder token, so only the holder can release or extend it.
"""
from typing import Any, Awaitable, Callable, Dict, Optional
import asyncio
import logging
import secrets

from bookkeeping.config import settings
from bookkeeping.errors import ConflictError
from bookkeeping.redis_client import get_redis, prefixed


logger = logging.getLogger(__name__)


class LockResource:
    XERO_SYNC = "xero-sync"
    XERO_TOKEN_REFRESH = "xero-token-refresh"
    INVOICE_SYNC = "invoice-sync"
    BILL_SYNC = "bill-sync"
    ACCOUNT_SYNC = "account-sync"
    TRANSACTION_SYNC = "transaction-sync"
    FULL_SYNC = "full-sync"
    CASHFLOW_SYNC = "cashflow-sync"
    DATABASE_MIGRATION = "database-migration"


RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

EXTEND_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
else
    return 0
end
"""


def new_holder(prefix: str = "worker") -> str:
    return f"{prefix}-{secrets.token_hex(8)}"


class SyncLock:
    """Distributed lock over Redis."""

    def __init__(self, redis_client=None, default_timeout: float = None):
        self.redis = redis_client
        self.default_timeout = default_timeout or settings.SYNC_LOCK_TIMEOUT_SECONDS

    @property
    def _redis(self):
        if self.redis is None:
            self.redis = get_redis()
        return self.redis

    @staticmethod
    def _key(resource: str) -> str:
        return prefixed(f"lock:{resource}")

    async def acquire(self, resource: str, holder: str, timeout: float = None) -> bool:
        timeout_ms = int((timeout or self.default_timeout) * 1000)
        acquired = await self._redis.set(self._key(resource), holder, nx=True, px=timeout_ms)
        if acquired:
            logger.info(f"Lock acquired: {resource} by {holder}")
        return bool(acquired)

    async def release(self, resource: str, holder: str) -> bool:
        released = await self._redis.eval(RELEASE_SCRIPT, 1, self._key(resource), holder)
        if released:
            logger.info(f"Lock released: {resource} by {holder}")
        else:
            logger.warning(f"Lock {resource} not released: not held by {holder}")
        return bool(released)

    async def extend(self, resource: str, holder: str, timeout: float = None) -> bool:
        timeout_ms = int((timeout or self.default_timeout) * 1000)
        extended = await self._redis.eval(EXTEND_SCRIPT, 1, self._key(resource), holder, timeout_ms)
        return bool(extended)

    async def is_locked(self, resource: str) -> bool:
        return bool(await self._redis.exists(self._key(resource)))

    async def get_lock_info(self, resource: str) -> Optional[Dict[str, Any]]:
        key = self._key(resource)
        holder = await self._redis.get(key)
        if holder is None:
            return None
        return {
            "resource": resource,
            "holder": holder,
            "ttl_ms": await self._redis.pttl(key),
        }

    async def with_lock(
        self,
        resource: str,
        holder: str,
        operation: Callable[[], Awaitable[Any]],
        timeout: float = None,
        retries: int = 0,
        retry_delay: float = 1.0,
    ) -> Any:
        """
        Run `operation` while holding `resource`.

        Makes `retries + 1` acquisition attempts, `retry_delay` seconds
        apart, then raises ConflictError. The lock is released when the
        operation finishes, whether or not it raised.
        """
        for attempt in range(retries + 1):
            if await self.acquire(resource, holder, timeout):
                try:
                    return await operation()
                finally:
                    await self.release(resource, holder)
            if attempt < retries:
                await asyncio.sleep(retry_delay)

        lock_info = await self.get_lock_info(resource)
        raise ConflictError(
            "Sync already in progress",
            details={"resource": resource, "lock": lock_info},
        )


sync_lock = SyncLock()
