from __future__ import annotations

import threading
import time

import redis

from plankmarket.utils.redis_client import get_client


_LOCK = threading.Lock()
_WINDOWS: dict[str, list[float]] = {}


def check_limit(key: str, *, limit: int, window_seconds: int) -> tuple[bool, int]:
    """Fixed-window counter; returns (allowed, retry_after_seconds)."""
    safe_window = max(1, int(window_seconds))
    safe_limit = max(1, int(limit))
    client = get_client()
    if client is not None:
        now_sec = int(time.time())
        counter_key = f"rl:v1:{key}:{now_sec // safe_window}"
        try:
            current = int(client.incr(counter_key))
            if current == 1:
                client.expire(counter_key, safe_window + 1)
            if current <= safe_limit:
                return True, 0
            return False, int(max(1, safe_window - (now_sec % safe_window)))
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
            return False, int(max(1, window_seconds - (now - min(bucket))))
        bucket.append(now)
        _WINDOWS[key] = bucket
    return True, 0


def reset_memory_windows() -> None:
    with _LOCK:
        _WINDOWS.clear()
