"""
WhatIfInvested API Gateway Infrastructure.
Edge routing, CORS, global throttling and compute-unit dispatch.
"""
from .routes import (
    HttpMethod,
    MethodResponse,
    RouteDefinition,
    RouteTable,
)
from .rate_limiting import (
    RateLimitConfig,
    RateLimiter,
    RateLimitResult,
    RedisTokenBucketStore,
    ThrottlePolicy,
    TokenBucketStore,
)
from .cors import (
    CORSConfig,
    CORSPolicy,
    CORSHandler,
)
from .gateway import EdgeGateway, EdgeResponse

__all__ = [
    "HttpMethod",
    "MethodResponse",
    "RouteDefinition",
    "RouteTable",
    "RateLimitConfig",
    "RateLimiter",
    "RateLimitResult",
    "RedisTokenBucketStore",
    "ThrottlePolicy",
    "TokenBucketStore",
    "CORSConfig",
    "CORSPolicy",
    "CORSHandler",
    "EdgeGateway",
    "EdgeResponse",
]
