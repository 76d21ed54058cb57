"""
Rate limiting for public booking endpoints

Counts live in process memory and are mirrored to Redis every few seconds,
so a restart or a second worker picks up the current window.
"""

import logging
import os
import time
from dataclasses import dataclass
from threading import Lock
from typing import Optional

import redis
from fastapi import HTTPException, Request, status

logger = logging.getLogger(__name__)

redis_client: Optional[redis.Redis] = None

# {key: {"count": int, "reset_time": int, "last_redis_sync": int}}
memory_cache: dict[str, dict] = {}
cache_lock = Lock()

REDIS_SYNC_INTERVAL = 10
CACHE_CLEANUP_INTERVAL = 60
last_cleanup_time = 0


@dataclass(frozen=True)
class Bucket:
    name: str
    limit: int
    window_seconds: int


# Per client IP: three booking submissions or relayed emails an hour
TOUR_BOOKING = Bucket("tour_booking", limit=3, window_seconds=3600)
EMAIL_SENDING = Bucket("email_sending", limit=3, window_seconds=3600)


def _connection_options() -> dict:
    return {
        "decode_responses": True,
        "socket_connect_timeout": 15,
        "socket_timeout": 30,
        "retry_on_timeout": True,
        "health_check_interval": 30,
        "max_connections": 20,
    }


def _mask_url(url: str) -> str:
    if "@" not in url:
        return "****"
    scheme = url.split("@")[0].split(":")[0]
    return f"{scheme}:****@{url.split('@', 1)[1]}"


def get_redis_client() -> redis.Redis:
    """Get or create the shared Redis client (REDIS_URL, else REDIS_HOST/PORT/...)"""
    global redis_client

    if redis_client is not None:
        return redis_client

    redis_url = os.getenv("REDIS_URL")
    try:
        if redis_url:
            logger.info(f"📡 Connecting to Redis at {_mask_url(redis_url)}")
            client = redis.from_url(redis_url, **_connection_options())
        else:
            host = os.getenv("REDIS_HOST", "localhost")
            port = int(os.getenv("REDIS_PORT", "6379"))
            use_ssl = os.getenv("REDIS_SSL", "false").lower() == "true"
            logger.info(f"📡 Connecting to Redis at {host}:{port} ({'SSL' if use_ssl else 'no SSL'})")
            client = redis.Redis(
                host=host,
                port=port,
                password=os.getenv("REDIS_PASSWORD"),
                db=int(os.getenv("REDIS_DB", "0")),
                ssl=use_ssl,
                **_connection_options(),
            )
        client.ping()
    except Exception as e:
        logger.error(f"❌ Failed to connect to Redis: {e}")
        raise

    logger.info("✅ Redis connected for rate limiting")
    redis_client = client
    return redis_client


def reset_memory_cache() -> None:
    with cache_lock:
        memory_cache.clear()


def cleanup_expired_cache() -> None:
    global last_cleanup_time
    now = int(time.time())
    if now - last_cleanup_time < CACHE_CLEANUP_INTERVAL:
        return

    with cache_lock:
        expired = [k for k, v in memory_cache.items() if now >= v.get("reset_time", 0)]
        for k in expired:
            del memory_cache[k]
    if expired:
        logger.debug(f"🧹 Cleaned up {len(expired)} expired rate limit entries")
    last_cleanup_time = now


def _load_entry(key: str, window_seconds: int, client: redis.Redis, now: int) -> dict:
    try:
        stored = client.get(key)
        ttl = client.ttl(key)
        if stored and ttl > 0:
            return {"count": int(stored), "reset_time": now + ttl, "last_redis_sync": now}
    except Exception as e:
        logger.warning(f"⚠️ Failed to load {key} from Redis, using memory only: {e}")
    return {"count": 0, "reset_time": now + window_seconds, "last_redis_sync": now}


def check_rate_limit(key: str, limit: int, window_seconds: int, client: redis.Redis) -> tuple[bool, int, int]:
    """
    Count one request against a fixed window.

    Returns:
        Tuple of (is_allowed, current_count, ttl_seconds). Any internal error
        denies the request.
    """
    try:
        now = int(time.time())
        cleanup_expired_cache()

        with cache_lock:
            entry = memory_cache.get(key)
            if entry is None:
                entry = memory_cache[key] = _load_entry(key, window_seconds, client, now)

            if now >= entry["reset_time"]:
                entry.update(count=0, reset_time=now + window_seconds, last_redis_sync=0)

            allowed = entry["count"] < limit
            if allowed:
                entry["count"] += 1

            if now - entry.get("last_redis_sync", 0) >= REDIS_SYNC_INTERVAL:
                try:
                    client.set(key, entry["count"], ex=max(entry["reset_time"] - now, 1))
                    entry["last_redis_sync"] = now
                except Exception as e:
                    logger.warning(f"⚠️ Failed to sync {key} to Redis: {e}")

            return allowed, entry["count"], max(0, entry["reset_time"] - now)

    except Exception as e:
        logger.error(f"❌ Rate limit check failed, denying request: {e}")
        return False, limit, 0


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


async def rate_limit_dependency(request: Request, bucket: Bucket, use_ip: bool = True):
    try:
        client = get_redis_client()
        key = f"{bucket.name}:{client_ip(request) if use_ip else 'global'}"

        allowed, count, ttl = check_rate_limit(key, bucket.limit, bucket.window_seconds, client)
        if not allowed:
            logger.warning(f"🚫 Rate limit exceeded for {key} - {count}/{bucket.limit}")
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={
                    "message": (
                        f"Rate limit exceeded. Maximum {bucket.limit} requests per "
                        f"{bucket.window_seconds} seconds."
                    ),
                    "retry_after": ttl,
                    "limit": bucket.limit,
                    "window_seconds": bucket.window_seconds,
                },
                headers={"Retry-After": str(ttl)},
            )

        request.state.rate_limit_remaining = bucket.limit - count
        request.state.rate_limit_reset = int(time.time()) + ttl

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ Rate limiting unavailable, denying request: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Rate limiting service temporarily unavailable",
        ) from e


def create_rate_limiter(bucket: Bucket, use_ip: bool = True):
    """
    Build a dependency for one bucket:

        @router.post("/submit", dependencies=[Depends(create_rate_limiter(TOUR_BOOKING))])
    """

    async def rate_limiter(request: Request):
        return await rate_limit_dependency(request, bucket, use_ip)

    return rate_limiter
