"""Per-platform rate limiting with a main window and a short burst window

Counters are keyed by ``platform:user_id:client_ip``. Times are epoch
milliseconds from an injectable clock so the windows can be tested exactly.
"""
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

from app.core.errors import UnknownPlatformError
from app.core.metrics import rate_limit_rejections_counter

rate_limit_logger = logging.getLogger("rate_limit")

BURST_WINDOW_MS = 60 * 1000


@dataclass(frozen=True)
class PlatformRateLimitConfig:
    window_ms: int
    max_requests: int
    burst_limit: int = 10
    burst_window_ms: int = BURST_WINDOW_MS


PLATFORM_RATE_LIMITS: Dict[str, PlatformRateLimitConfig] = {
    "facebook": PlatformRateLimitConfig(window_ms=60 * 60 * 1000, max_requests=180, burst_limit=20),
    "instagram": PlatformRateLimitConfig(window_ms=60 * 60 * 1000, max_requests=180, burst_limit=20),
    "twitter": PlatformRateLimitConfig(window_ms=15 * 60 * 1000, max_requests=250, burst_limit=10),
    "linkedin": PlatformRateLimitConfig(window_ms=24 * 60 * 60 * 1000, max_requests=90, burst_limit=5),
    "tiktok": PlatformRateLimitConfig(window_ms=60 * 60 * 1000, max_requests=50, burst_limit=5),
    "youtube": PlatformRateLimitConfig(window_ms=24 * 60 * 60 * 1000, max_requests=6, burst_limit=2),
}


@dataclass
class RateLimitEntry:
    count: int
    reset_time: int
    burst_count: int
    burst_reset_time: int


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_time: int
    burst_remaining: int
    retry_after: Optional[int] = None
    window: Optional[str] = None  # "burst" or "main" when rejected

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": datetime.fromtimestamp(self.reset_time / 1000, tz=timezone.utc).isoformat(),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


def _ceil_seconds(ms: int) -> int:
    return -(-ms // 1000)


def apply_hit(entry: Optional[RateLimitEntry], config: PlatformRateLimitConfig, now_ms: int) -> Tuple[RateLimitEntry, bool]:
    """Count one request against an entry, returns (new entry, allowed)

    The burst window is checked before the main window.
    """
    if entry is None or entry.reset_time < now_ms:
        return RateLimitEntry(
            count=1,
            reset_time=now_ms + config.window_ms,
            burst_count=1,
            burst_reset_time=now_ms + config.burst_window_ms,
        ), True

    entry = replace(entry)
    if entry.burst_reset_time < now_ms:
        entry.burst_count = 0
        entry.burst_reset_time = now_ms + config.burst_window_ms

    if entry.burst_count >= config.burst_limit or entry.count >= config.max_requests:
        return entry, False

    entry.count += 1
    entry.burst_count += 1
    return entry, True


def build_result(entry: RateLimitEntry, config: PlatformRateLimitConfig, now_ms: int, allowed: bool) -> RateLimitResult:
    if allowed:
        return RateLimitResult(
            allowed=True,
            limit=config.max_requests,
            remaining=max(0, config.max_requests - entry.count),
            reset_time=entry.reset_time,
            burst_remaining=max(0, config.burst_limit - entry.burst_count),
        )
    if entry.burst_count >= config.burst_limit:
        return RateLimitResult(
            allowed=False,
            limit=config.max_requests,
            remaining=max(0, config.max_requests - entry.count),
            reset_time=entry.reset_time,
            burst_remaining=0,
            retry_after=_ceil_seconds(entry.burst_reset_time - now_ms),
            window="burst",
        )
    return RateLimitResult(
        allowed=False,
        limit=config.max_requests,
        remaining=0,
        reset_time=entry.reset_time,
        burst_remaining=max(0, config.burst_limit - entry.burst_count),
        retry_after=_ceil_seconds(entry.reset_time - now_ms),
        window="main",
    )


class RateLimitStore(ABC):
    """Storage for rate limit counters; ``hit`` must be atomic per key"""

    @abstractmethod
    def hit(self, key: str, config: PlatformRateLimitConfig, now_ms: int) -> RateLimitResult:
        pass

    def sweep(self, now_ms: int) -> int:
        """Remove entries whose windows are both over, returns how many were removed"""
        return 0


class InMemoryRateLimitStore(RateLimitStore):
    """Process-local store, for single-instance deployments and tests"""

    def __init__(self):
        self._entries: Dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()

    def hit(self, key: str, config: PlatformRateLimitConfig, now_ms: int) -> RateLimitResult:
        with self._lock:
            entry, allowed = apply_hit(self._entries.get(key), config, now_ms)
            self._entries[key] = entry
        return build_result(entry, config, now_ms, allowed)

    def sweep(self, now_ms: int) -> int:
        with self._lock:
            expired = [
                key for key, entry in self._entries.items()
                if entry.reset_time < now_ms and entry.burst_reset_time < now_ms
            ]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[RateLimitEntry]:
        return self._entries.get(key)


# Same algorithm as apply_hit, run atomically inside Redis
RATE_LIMIT_LUA = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local max_requests = tonumber(ARGV[3])
local burst_limit = tonumber(ARGV[4])
local burst_window_ms = tonumber(ARGV[5])

local data = redis.call('HMGET', key, 'count', 'reset_time', 'burst_count', 'burst_reset_time')
local count = tonumber(data[1])
local reset_time = tonumber(data[2])
local burst_count = tonumber(data[3])
local burst_reset_time = tonumber(data[4])
local allowed = 0

if count == nil or reset_time == nil or reset_time < now then
  count = 1
  reset_time = now + window_ms
  burst_count = 1
  burst_reset_time = now + burst_window_ms
  allowed = 1
else
  if burst_reset_time == nil or burst_reset_time < now then
    burst_count = 0
    burst_reset_time = now + burst_window_ms
  end
  if burst_count < burst_limit and count < max_requests then
    count = count + 1
    burst_count = burst_count + 1
    allowed = 1
  end
end

redis.call('HSET', key, 'count', count, 'reset_time', reset_time,
           'burst_count', burst_count, 'burst_reset_time', burst_reset_time)
redis.call('PEXPIRE', key, math.max(reset_time, burst_reset_time) - now + 1)
return {allowed, count, reset_time, burst_count, burst_reset_time}
"""


class RedisRateLimitStore(RateLimitStore):
    """Shared store for multi-instance deployments

    Keys expire through Redis TTLs, so ``sweep`` has nothing to do.
    """

    KEY_PREFIX = "platform_rate_limit:"

    def __init__(self, client=None):
        if client is None:
            from app.db.redis import get_redis_client
            client = get_redis_client()
        self._client = client
        self._script = client.register_script(RATE_LIMIT_LUA)

    def hit(self, key: str, config: PlatformRateLimitConfig, now_ms: int) -> RateLimitResult:
        allowed, count, reset_time, burst_count, burst_reset_time = self._script(
            keys=[f"{self.KEY_PREFIX}{key}"],
            args=[now_ms, config.window_ms, config.max_requests, config.burst_limit, config.burst_window_ms],
        )
        entry = RateLimitEntry(
            count=int(count),
            reset_time=int(reset_time),
            burst_count=int(burst_count),
            burst_reset_time=int(burst_reset_time),
        )
        return build_result(entry, config, now_ms, bool(int(allowed)))


class PlatformRateLimiter:
    """Checks platform-scoped write operations against PLATFORM_RATE_LIMITS"""

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        clock: Callable[[], float] = time.time,
        limits: Optional[Dict[str, PlatformRateLimitConfig]] = None
    ):
        self.store = store or InMemoryRateLimitStore()
        self._clock = clock
        self.limits = limits if limits is not None else PLATFORM_RATE_LIMITS

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def check(self, platform: str, user_id: str, client_ip: str) -> RateLimitResult:
        """Count a request and decide whether it may proceed

        Raises:
            UnknownPlatformError: If the platform has no rate limit config
        """
        config = self.limits.get(platform)
        if config is None:
            raise UnknownPlatformError(platform)

        key = f"{platform}:{user_id}:{client_ip or 'unknown'}"
        now_ms = self._now_ms()
        result = self.store.hit(key, config, now_ms)
        if not result.allowed:
            rate_limit_rejections_counter.labels(platform=platform, window=result.window).inc()
            rate_limit_logger.warning(
                f"Rate limit exceeded ({result.window} window) - Key: {key}, Retry-After: {result.retry_after}s"
            )
        return result

    def sweep(self) -> int:
        removed = self.store.sweep(self._now_ms())
        if removed:
            rate_limit_logger.info(f"Swept {removed} expired rate limit entries")
        return removed


# Lazy initialization - the backend is chosen from settings on first use
_limiter = None


def get_platform_rate_limiter() -> PlatformRateLimiter:
    """Get or create the shared limiter (FastAPI dependency)"""
    global _limiter
    if _limiter is None:
        from app.core.config import settings

        if settings.RATE_LIMIT_BACKEND == "redis":
            _limiter = PlatformRateLimiter(store=RedisRateLimitStore())
        else:
            _limiter = PlatformRateLimiter()
        rate_limit_logger.info(f"Platform rate limiter using {settings.RATE_LIMIT_BACKEND} store")
    return _limiter
