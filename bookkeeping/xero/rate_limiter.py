"""Outbound rate limiting for the Xero API.

Xero enforces, per tenant:
- 60 calls per rolling minute
- 5 concurrent calls
- 5000 calls per day

Each tenant gets an XeroRateLimiter that enforces the minute window with
`limits`, concurrency with a semaphore, a minimum spacing between request
starts, and the daily quota with a Redis counter shared across workers.
429 and 5xx responses are retried with Retry-After or capped exponential
backoff.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional
import asyncio
import logging
import time

from limits import RateLimitItemPerMinute
from limits.aio.storage import MemoryStorage
from limits.aio.strategies import MovingWindowRateLimiter
from redis.exceptions import RedisError
from xero_python.exceptions import ApiException

from bookkeeping.config import settings
from bookkeeping.errors import ExternalServiceError, RateLimitError
from bookkeeping.redis_client import get_redis, prefixed


logger = logging.getLogger(__name__)

DAILY_KEY_TTL_SECONDS = 86400
REMAINING_KEY_TTL_SECONDS = 60
PROBLEM_KEY_TTL_SECONDS = 300
BASE_BACKOFF_SECONDS = 1.0


def _header(headers: Any, name: str) -> Optional[str]:
    """Case-insensitive header lookup over dicts and urllib3 header maps."""
    if not headers:
        return None
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, val in dict(headers).items():
        if str(key).lower() == lowered:
            return val
    return None


def _seconds_until_utc_midnight(now: Optional[datetime] = None) -> int:
    now = now or datetime.now(timezone.utc)
    tomorrow = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return max(int((tomorrow - now).total_seconds()), 1)


def backoff_delay(attempt: int, retry_after: Optional[str] = None) -> float:
    """Seconds to wait before retry number `attempt` (0-based)."""
    if retry_after:
        try:
            return min(float(retry_after), settings.XERO_MAX_BACKOFF_SECONDS)
        except ValueError:
            pass
    return min(BASE_BACKOFF_SECONDS * (2 ** attempt), settings.XERO_MAX_BACKOFF_SECONDS)


class XeroRateLimiter:
    """Per-tenant limiter wrapping every Xero API call."""

    def __init__(
        self,
        tenant_id: str,
        redis_client=None,
        requests_per_minute: int = None,
        daily_limit: int = None,
        max_concurrent: int = None,
        min_time_ms: int = None,
        max_retries: int = None,
    ):
        self.tenant_id = tenant_id
        self.redis = redis_client
        self.requests_per_minute = requests_per_minute or settings.XERO_REQUESTS_PER_MINUTE
        self.daily_limit = daily_limit or settings.XERO_DAILY_LIMIT
        self.max_concurrent = max_concurrent or settings.XERO_MAX_CONCURRENT
        self.min_interval = (settings.XERO_MIN_TIME_MS if min_time_ms is None else min_time_ms) / 1000
        self.max_retries = settings.XERO_MAX_RETRIES if max_retries is None else max_retries

        self._window = MovingWindowRateLimiter(MemoryStorage())
        self._per_minute = RateLimitItemPerMinute(self.requests_per_minute)
        self._semaphore = asyncio.Semaphore(self.max_concurrent)
        self._spacing_lock = asyncio.Lock()
        self._last_start = 0.0

    @property
    def _redis(self):
        if self.redis is None:
            self.redis = get_redis()
        return self.redis

    def _daily_key(self) -> str:
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return prefixed(f"xero:daily:{self.tenant_id}:{today}")

    # -------------------------------------------------------------------------
    # Quota checks
    # -------------------------------------------------------------------------

    async def _check_daily_limit(self) -> None:
        key = self._daily_key()
        try:
            count = await self._redis.incr(key)
            if count == 1:
                await self._redis.expire(key, DAILY_KEY_TTL_SECONDS)
            if count > self.daily_limit:
                await self._redis.decr(key)
                raise RateLimitError(
                    f"Daily API limit ({self.daily_limit}) reached for tenant {self.tenant_id}",
                    retry_after=_seconds_until_utc_midnight(),
                )
        except RedisError as e:
            logger.warning(f"Daily quota check unavailable for tenant {self.tenant_id}: {e}")

    async def _acquire_minute_slot(self) -> None:
        while not await self._window.hit(self._per_minute, "xero", self.tenant_id):
            stats = await self._window.get_window_stats(self._per_minute, "xero", self.tenant_id)
            wait = max(stats.reset_time - time.time(), 0.05)
            logger.debug(f"Minute window full for tenant {self.tenant_id}, waiting {wait:.2f}s")
            await asyncio.sleep(wait)

    async def _respect_min_interval(self) -> None:
        async with self._spacing_lock:
            elapsed = time.monotonic() - self._last_start
            if elapsed < self.min_interval:
                await asyncio.sleep(self.min_interval - elapsed)
            self._last_start = time.monotonic()

    async def _record_headers(self, headers: Any) -> None:
        remaining = _header(headers, "x-rate-limit-remaining")
        problem = _header(headers, "x-rate-limit-problem")
        try:
            if remaining is not None:
                await self._redis.set(
                    prefixed(f"xero:remaining:{self.tenant_id}"), remaining, ex=REMAINING_KEY_TTL_SECONDS
                )
            if problem is not None:
                logger.warning(f"Xero rate limit problem for tenant {self.tenant_id}: {problem}")
                await self._redis.set(
                    prefixed(f"xero:problem:{self.tenant_id}"), problem, ex=PROBLEM_KEY_TTL_SECONDS
                )
        except RedisError as e:
            logger.warning(f"Could not record rate limit headers for tenant {self.tenant_id}: {e}")

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def _invoke(self, func: Callable, args, kwargs) -> Any:
        if asyncio.iscoroutinefunction(func):
            return await func(*args, **kwargs)
        return await asyncio.to_thread(func, *args, **kwargs)

    async def execute(self, func: Callable, *args, priority: bool = False, **kwargs) -> Any:
        """
        Run `func(*args, **kwargs)` under the tenant's limits.

        Synchronous callables (the xero-python SDK) run in a worker thread.
        A `(data, status, headers)` tuple result is unpacked and its rate
        limit headers recorded; `data` is returned.
        """
        attempt = 0
        while True:
            await self._check_daily_limit()
            await self._acquire_minute_slot()
            async with self._semaphore:
                if not priority:
                    await self._respect_min_interval()
                try:
                    result = await self._invoke(func, args, kwargs)
                except ApiException as e:
                    status = e.status or 0
                    headers = getattr(e, "headers", None)
                    await self._record_headers(headers)
                    retryable = status == 429 or status >= 500
                    if not retryable:
                        raise
                    if attempt >= self.max_retries:
                        if status == 429:
                            raise RateLimitError(
                                "Xero rate limit exceeded",
                                retry_after=int(backoff_delay(attempt, _header(headers, "Retry-After"))),
                            ) from e
                        raise ExternalServiceError("Xero", details={"status": status, "reason": e.reason}) from e
                    delay = backoff_delay(attempt, _header(headers, "Retry-After"))
                    logger.warning(
                        f"Xero returned {status} for tenant {self.tenant_id}, "
                        f"retrying in {delay:.1f}s (attempt {attempt + 1}/{self.max_retries})"
                    )
                    attempt += 1
                else:
                    if isinstance(result, tuple) and len(result) == 3:
                        data, _status, headers = result
                        await self._record_headers(headers)
                        return data
                    return result
            await asyncio.sleep(delay)

    async def execute_priority(self, func: Callable, *args, **kwargs) -> Any:
        """Run a call without the minimum-spacing delay."""
        return await self.execute(func, *args, priority=True, **kwargs)

    async def execute_batch(
        self,
        operations: List[Callable[[], Awaitable[Any]]],
    ) -> List[Dict[str, Any]]:
        """Run zero-argument callables in order, collecting per-item outcomes."""
        results = []
        for index, operation in enumerate(operations):
            try:
                results.append({"index": index, "success": True, "result": await self.execute(operation)})
            except (ApiException, RateLimitError, ExternalServiceError) as e:
                logger.error(f"Batch operation {index} failed for tenant {self.tenant_id}: {e}")
                results.append({"index": index, "success": False, "error": str(e)})
        return results

    async def get_rate_limit_status(self) -> Dict[str, Any]:
        stats = await self._window.get_window_stats(self._per_minute, "xero", self.tenant_id)
        daily_count = 0
        remaining = None
        problem = None
        try:
            daily_count = int(await self._redis.get(self._daily_key()) or 0)
            remaining = await self._redis.get(prefixed(f"xero:remaining:{self.tenant_id}"))
            problem = await self._redis.get(prefixed(f"xero:problem:{self.tenant_id}"))
        except RedisError as e:
            logger.warning(f"Could not read rate limit status for tenant {self.tenant_id}: {e}")
        return {
            "tenant_id": self.tenant_id,
            "daily_count": daily_count,
            "daily_limit": self.daily_limit,
            "daily_remaining": max(self.daily_limit - daily_count, 0),
            "minute_limit": self.requests_per_minute,
            "minute_remaining": stats.remaining,
            "minute_reset_at": datetime.fromtimestamp(stats.reset_time, timezone.utc).isoformat(),
            "xero_remaining": int(remaining) if remaining is not None else None,
            "rate_limit_problem": problem,
        }


class RateLimiterManager:
    """Registry of one limiter per tenant."""

    def __init__(self):
        self._limiters: Dict[str, XeroRateLimiter] = {}

    def get_limiter(self, tenant_id: str) -> XeroRateLimiter:
        if tenant_id not in self._limiters:
            self._limiters[tenant_id] = XeroRateLimiter(tenant_id)
        return self._limiters[tenant_id]

    def reset(self) -> None:
        self._limiters.clear()


rate_limiter_manager = RateLimiterManager()
