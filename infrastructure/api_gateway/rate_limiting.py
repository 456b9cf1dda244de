"""
WhatIfInvested API Gateway - Rate Limiting.
Global token-bucket admission control with in-process and Redis-backed stores.
"""
from __future__ import annotations
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any
import math
import threading
import time
import structlog
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from infrastructure.common.exceptions import ThrottledError

logger = structlog.get_logger(__name__)


class RateLimitScope(str, Enum):
    """Scope for rate limit application."""
    GLOBAL = "global"


class RateLimitConfig(BaseSettings):
    """Rate limiting configuration settings."""
    rate_limit: float = Field(default=1.0, gt=0, description="Sustained requests per second. Placeholder value, confirm before production.")
    burst_limit: int = Field(default=2, ge=1, description="Bucket capacity. Placeholder value, confirm before production.")
    key_prefix: str = Field(default="throttle:")
    enabled: bool = Field(default=True)
    model_config = SettingsConfigDict(env_prefix="RATE_LIMIT_", env_file=".env", extra="ignore")


@dataclass(frozen=True)
class ThrottlePolicy:
    """Sustained rate and burst capacity applied to the whole routing surface."""
    name: str
    rate: float
    burst: int
    scope: RateLimitScope = RateLimitScope.GLOBAL

    @classmethod
    def from_config(cls, config: RateLimitConfig, name: str = "edge-global") -> ThrottlePolicy:
        return cls(name=name, rate=config.rate_limit, burst=config.burst_limit)

    def bucket_key(self) -> str:
        return f"{self.name}:{self.scope.value}"

    def seconds_until(self, tokens: float, needed: float = 1.0) -> float:
        return max(0.0, (needed - tokens) / self.rate)

    def to_declarative(self) -> dict[str, Any]:
        return {"name": self.name, "scope": self.scope.value, "throttling_rate_limit": self.rate,
                "throttling_burst_limit": self.burst}


@dataclass
class RateLimitResult:
    """Result of rate limit check."""
    allowed: bool
    remaining: int
    limit: int
    reset_at: datetime
    retry_after: int | None = None
    policy_name: str | None = None

    @classmethod
    def from_tokens(cls, policy: ThrottlePolicy, allowed: bool, tokens: float) -> RateLimitResult:
        refill_seconds = policy.seconds_until(tokens, needed=float(policy.burst))
        retry_after = None if allowed else max(1, math.ceil(policy.seconds_until(tokens)))
        return cls(allowed=allowed, remaining=int(tokens), limit=policy.burst,
                   reset_at=datetime.now(timezone.utc) + timedelta(seconds=refill_seconds),
                   retry_after=retry_after, policy_name=policy.name)

    def to_headers(self) -> dict[str, str]:
        headers = {"X-RateLimit-Limit": str(self.limit), "X-RateLimit-Remaining": str(max(0, self.remaining)), "X-RateLimit-Reset": str(int(self.reset_at.timestamp()))}
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


@dataclass
class TokenBucket:
    """Bucket state: available tokens and the instant they were computed."""
    tokens: float
    updated_at: float


class TokenBucketStore:
    """In-process token bucket storage, atomic within one process."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._buckets: dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    def consume(self, policy: ThrottlePolicy, cost: float = 1.0) -> RateLimitResult:
        key = policy.bucket_key()
        with self._lock:
            now = self._clock()
            bucket = self._buckets.get(key) or TokenBucket(tokens=float(policy.burst), updated_at=now)
            elapsed = max(0.0, now - bucket.updated_at)
            tokens = min(float(policy.burst), bucket.tokens + elapsed * policy.rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._buckets[key] = TokenBucket(tokens=tokens, updated_at=now)
        logger.debug("throttle_check", key=key, tokens=round(tokens, 3), allowed=allowed)
        return RateLimitResult.from_tokens(policy, allowed, tokens)

    async def async_consume(self, policy: ThrottlePolicy, cost: float = 1.0) -> RateLimitResult:
        return self.consume(policy, cost)

    def reset(self, policy: ThrottlePolicy) -> None:
        with self._lock:
            self._buckets.pop(policy.bucket_key(), None)


TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local rate = tonumber(ARGV[1])
local burst = tonumber(ARGV[2])
local cost = tonumber(ARGV[3])
local t = redis.call('TIME')
local now = tonumber(t[1]) + tonumber(t[2]) / 1000000
local state = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(state[1])
local ts = tonumber(state[2])
if tokens == nil or ts == nil then
  tokens = burst
  ts = now
end
tokens = math.min(burst, tokens + math.max(0, now - ts) * rate)
local allowed = 0
if tokens >= cost then
  tokens = tokens - cost
  allowed = 1
end
redis.call('HSET', key, 'tokens', tostring(tokens), 'ts', tostring(now))
redis.call('EXPIRE', key, math.ceil(burst / rate) + 1)
return {allowed, tostring(tokens)}
"""


class RedisTokenBucketStore:
    """Redis-backed token bucket shared by every edge instance."""

    def __init__(self, redis_client: Any, prefix: str = "throttle:") -> None:
        self._redis = redis_client
        self._prefix = prefix
        self._script = redis_client.register_script(TOKEN_BUCKET_SCRIPT)

    def _key(self, policy: ThrottlePolicy) -> str:
        return f"{self._prefix}{policy.bucket_key()}"

    async def async_consume(self, policy: ThrottlePolicy, cost: float = 1.0) -> RateLimitResult:
        """Refill and take in one atomic script call, clocked by the Redis server."""
        allowed_flag, raw_tokens = await self._script(keys=[self._key(policy)], args=[policy.rate, policy.burst, cost])
        tokens = float(raw_tokens.decode() if isinstance(raw_tokens, bytes) else raw_tokens)
        allowed = int(allowed_flag) == 1
        logger.debug("throttle_check", key=self._key(policy), tokens=round(tokens, 3), allowed=allowed)
        return RateLimitResult.from_tokens(policy, allowed, tokens)

    async def reset(self, policy: ThrottlePolicy) -> None:
        await self._redis.delete(self._key(policy))


class RateLimiter:
    """Edge admission controller applying one global throttle policy."""

    def __init__(self, config: RateLimitConfig | None = None, redis_client: Any | None = None,
                 store: TokenBucketStore | RedisTokenBucketStore | None = None) -> None:
        self._config = config or RateLimitConfig()
        self._policy = ThrottlePolicy.from_config(self._config)
        if store is not None:
            self._store = store
        elif redis_client is not None:
            self._store = RedisTokenBucketStore(redis_client, prefix=self._config.key_prefix)
        else:
            self._store = TokenBucketStore()

    @property
    def policy(self) -> ThrottlePolicy:
        return self._policy

    @property
    def is_shared(self) -> bool:
        return isinstance(self._store, RedisTokenBucketStore)

    async def check(self) -> RateLimitResult:
        if not self._config.enabled:
            return RateLimitResult(allowed=True, remaining=self._policy.burst, limit=self._policy.burst,
                                   reset_at=datetime.now(timezone.utc), policy_name=self._policy.name)
        return await self._store.async_consume(self._policy)

    async def enforce(self) -> RateLimitResult:
        result = await self.check()
        if not result.allowed:
            logger.info("request_throttled", policy=self._policy.name, retry_after=result.retry_after)
            raise ThrottledError(self._policy.name, result.retry_after or 1, headers=result.to_headers())
        return result


def create_rate_limiter(config: RateLimitConfig | None = None, redis_client: Any | None = None) -> RateLimiter:
    """Create the global edge rate limiter."""
    limiter = RateLimiter(config, redis_client=redis_client)
    logger.info("rate_limiter_configured", rate=limiter.policy.rate, burst=limiter.policy.burst,
                shared_store=limiter.is_shared)
    return limiter
