"""In-process idempotency for sync operations.

Identical requests share one execution: while an operation is running,
callers with the same key await it; once it succeeds the result is reused
until the entry expires. Failures are not remembered.
"""
from typing import Any, Awaitable, Callable
import asyncio
import hashlib
import json
import logging

from cachetools import TTLCache

from bookkeeping.config import settings


logger = logging.getLogger(__name__)


def generate_key(data: Any) -> str:
    """Stable sha256 over the JSON form of `data` (keys sorted)."""
    payload = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class IdempotencyStore:
    def __init__(self, ttl_seconds: int = None, max_keys: int = None):
        self._entries = TTLCache(
            maxsize=max_keys or settings.IDEMPOTENCY_MAX_KEYS,
            ttl=ttl_seconds or settings.IDEMPOTENCY_TTL_SECONDS,
        )

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    async def with_idempotency(
        self,
        key_data: Any,
        operation: Callable[[], Awaitable[Any]],
    ) -> Any:
        key = generate_key(key_data)
        task = self._entries.get(key)
        if task is not None:
            logger.info(f"Reusing idempotent operation {key[:12]}")
            return await task

        task = asyncio.ensure_future(operation())
        self._entries[key] = task
        try:
            return await task
        except BaseException:
            self._entries.pop(key, None)
            raise


idempotency_store = IdempotencyStore()
