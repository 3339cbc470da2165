"""
Кэш представлений владельца в Redis.

Ключи: user:<owner_id>:<view>. Инвалидация удаляет все ключи владельца.
Кэш необязателен: ошибки Redis логируются и не пробрасываются.
"""

from __future__ import annotations

import json
from typing import Any

import redis

from smartmeet_pipeline.common.logging import get_project_logger

log = get_project_logger()


def owner_key(owner_id: str, view: str) -> str:
    return f"user:{owner_id}:{view}"


class ViewCache:
    def __init__(self, client: redis.Redis | None, *, ttl_sec: int = 3600) -> None:
        self.client = client
        self.ttl_sec = ttl_sec

    def get_json(self, key: str) -> Any | None:
        if self.client is None:
            return None
        try:
            raw = self.client.get(key)
            return json.loads(raw) if raw else None
        except Exception as e:
            log.warning("cache_read_failed", extra={"payload": {"key": key, "error": str(e)[:200]}})
            return None

    def set_json(self, key: str, value: Any) -> None:
        if self.client is None:
            return
        try:
            self.client.set(key, json.dumps(value, ensure_ascii=False, default=str), ex=self.ttl_sec)
        except Exception as e:
            log.warning("cache_write_failed", extra={"payload": {"key": key, "error": str(e)[:200]}})

    def invalidate_owner(self, owner_id: str) -> int:
        if self.client is None:
            return 0
        try:
            keys = list(self.client.scan_iter(match=f"user:{owner_id}:*"))
            if keys:
                self.client.delete(*keys)
            return len(keys)
        except Exception as e:
            log.warning(
                "cache_invalidate_failed",
                extra={"payload": {"owner_id": owner_id, "error": str(e)[:200]}},
            )
            return 0
