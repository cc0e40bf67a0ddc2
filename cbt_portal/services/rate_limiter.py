"""Redis-backed leaky-bucket limiter for the exam session endpoints.

Answer saves and event reports arrive in bursts (rapid re-selection, a
flapping focus signal). Each student gets a bucket of ``BURST`` tokens that
refills at ``RPM / 60`` tokens per second; a request needs one token or is
answered with 429. When Redis is unreachable requests are allowed — a
student must never be locked out of an exam by the limiter.

Usage as a FastAPI dependency
-----------------------------
```python
@router.put("/{attempt_id}/answers")
async def save_answer(..., _rl=Depends(require_session_rate_limit)):
    ...
```
"""

import logging
import time

import redis
from fastapi import Depends, HTTPException, status

from cbt_portal.api.deps import get_current_user
from cbt_portal.config import settings
from cbt_portal.db.models import User

logger = logging.getLogger(__name__)

_pool: redis.ConnectionPool | None = None

# Executed atomically inside Redis.
# KEYS[1] = bucket key
# ARGV[1] = max tokens (burst)
# ARGV[2] = refill rate (tokens per second)
# ARGV[3] = current timestamp (float seconds)
# Returns 1 if the request is allowed, 0 if rejected.
_LUA_SCRIPT = """
local key         = KEYS[1]
local max_tokens  = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local now         = tonumber(ARGV[3])

local bucket      = redis.call('HMGET', key, 'tokens', 'last_refill')
local tokens      = tonumber(bucket[1])
local last_refill = tonumber(bucket[2])

if tokens == nil then
    tokens = max_tokens
    last_refill = now
end

tokens = math.min(max_tokens, tokens + math.max(0, now - last_refill) * refill_rate)

local allowed = 0
if tokens >= 1 then
    tokens = tokens - 1
    allowed = 1
end

redis.call('HSET', key, 'tokens', tokens, 'last_refill', now)
redis.call('EXPIRE', key, 120)
return allowed
"""


def _get_redis() -> redis.Redis:
    global _pool
    if _pool is None:
        _pool = redis.ConnectionPool.from_url(
            settings.redis_url,
            decode_responses=True,
            max_connections=10,
            socket_connect_timeout=0.5,
        )
    return redis.Redis(connection_pool=_pool)


def _bucket_key(user: User) -> str:
    return f"rl:session:u:{user.id}"


def allow(bucket_key: str) -> bool:
    """Return True if a request against *bucket_key* may proceed."""
    rpm = settings.RATE_LIMIT_SESSION_RPM
    if rpm <= 0:
        return True  # limiting disabled

    try:
        allowed = _get_redis().eval(
            _LUA_SCRIPT,
            1,
            bucket_key,
            settings.RATE_LIMIT_SESSION_BURST,
            rpm / 60.0,
            time.time(),
        )
    except redis.RedisError as exc:
        logger.warning("Rate-limiter Redis error (allowing request): %s", exc)
        return True
    return bool(allowed)


async def require_session_rate_limit(
    current_user: User = Depends(get_current_user),
) -> None:
    """FastAPI dependency — raises 429 if the student exceeds the limit."""
    key = _bucket_key(current_user)
    if not allow(key):
        logger.info("Rate-limited: %s", key)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests — please slow down.",
        )
