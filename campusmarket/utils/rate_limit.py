from __future__ import annotations

import math
import os
import threading
import time

import redis


_LOCK = threading.Lock()
_WINDOWS: dict[str, list[float]] = {}
_CLIENT = None
_CLIENT_INIT = False


def check_limit(key: str, *, limit: int, window_seconds: int) -> tuple[bool, int]:
    """Allow ``limit`` hits per key within ``window_seconds`` of the first one.

    Returns (allowed, retry_after_seconds). Uses Redis when
    RATE_LIMIT_REDIS_URL/REDIS_URL is reachable so the window is shared
    across workers, otherwise a per-process window.
    """
    safe_window = max(1, int(window_seconds))
    safe_limit = max(1, int(limit))
    redis_client = _get_client()
    if redis_client is not None:
        counter_key = f"rl:v2:{key}"
        try:
            # SET NX EX opens the window on the first hit; INCR keeps its TTL.
            pipe = redis_client.pipeline()
            pipe.set(counter_key, 0, nx=True, ex=safe_window)
            pipe.incr(counter_key)
            pipe.ttl(counter_key)
            _, current, ttl = pipe.execute()
            if int(current) <= safe_limit:
                return True, 0
            return False, max(1, int(ttl))
        except redis.RedisError:
            pass
    return _check_limit_memory(key, limit=safe_limit, window_seconds=safe_window)


def _check_limit_memory(key: str, *, limit: int, window_seconds: int) -> tuple[bool, int]:
    now = time.time()
    start = now - window_seconds
    with _LOCK:
        bucket = [ts for ts in _WINDOWS.get(key, []) if ts >= start]
        if len(bucket) >= limit:
            _WINDOWS[key] = bucket
            remaining = window_seconds - (now - min(bucket))
            return False, int(max(1, math.ceil(remaining)))
        bucket.append(now)
        _WINDOWS[key] = bucket
    return True, 0


def rate_limit_enabled(default: bool = True) -> bool:
    raw = (os.getenv("RATE_LIMIT_ENABLED") or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in ("1", "true", "yes", "on")


def _rate_limit_redis_url() -> str:
    return (os.getenv("RATE_LIMIT_REDIS_URL") or os.getenv("REDIS_URL") or "").strip()


def _get_client():
    global _CLIENT, _CLIENT_INIT
    if not rate_limit_enabled(True):
        return None
    with _LOCK:
        if _CLIENT_INIT:
            return _CLIENT
        _CLIENT_INIT = True
    url = _rate_limit_redis_url()
    if not url:
        return None
    try:
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=0.75,
            socket_timeout=0.75,
            health_check_interval=30,
        )
        client.ping()
    except redis.RedisError:
        return None
    with _LOCK:
        _CLIENT = client
    return client


__all__ = [
    "check_limit",
    "rate_limit_enabled",
]
