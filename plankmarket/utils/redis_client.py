from __future__ import annotations

import os
import threading

import redis
from flask import current_app, has_app_context

_LOCK = threading.Lock()
_CLIENT = None
_CLIENT_INIT_ATTEMPTED = False


def _redis_url() -> str:
    return (os.getenv("REDIS_URL") or "").strip()


def get_client():
    """Shared Redis client, or None when REDIS_URL is unset or unreachable."""
    global _CLIENT, _CLIENT_INIT_ATTEMPTED
    with _LOCK:
        if _CLIENT_INIT_ATTEMPTED:
            return _CLIENT
        _CLIENT_INIT_ATTEMPTED = True

    url = _redis_url()
    if not url:
        return None
    try:
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=0.75,
            socket_connect_timeout=0.75,
            health_check_interval=30,
        )
        client.ping()
    except redis.RedisError as e:
        if has_app_context():
            current_app.logger.warning("redis_unavailable err=%s", e)
        return None
    with _LOCK:
        _CLIENT = client
    return client


def reset_client() -> None:
    global _CLIENT, _CLIENT_INIT_ATTEMPTED
    with _LOCK:
        _CLIENT = None
        _CLIENT_INIT_ATTEMPTED = False
