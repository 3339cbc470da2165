"""
Redis-клиент для очереди и resilience-примитивов.

Назначение:
- единая точка подключения к Redis
- общий backing store для очереди, семафора, breaker'ов и rate limit'а
"""

from __future__ import annotations

import redis

from smartmeet_pipeline.common.config import get_settings

_client: redis.Redis | None = None


def redis_client() -> redis.Redis | None:
    """
    Singleton Redis client. None, если REDIS_URL не задан:
    компоненты трактуют это как недоступный backing store.
    """
    global _client
    url = (get_settings().redis_url or "").strip()
    if not url:
        return None
    if _client is None:
        _client = redis.Redis.from_url(url, decode_responses=True)
    return _client
