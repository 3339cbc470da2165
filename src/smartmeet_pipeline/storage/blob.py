"""
Объектное хранилище артефактов (локальная ФС).

Назначение:
- download/put по ключу
- выдача подписанных ссылок (HMAC-SHA256 от key + expires)
"""

from __future__ import annotations

import hashlib
import hmac
from pathlib import Path
from urllib.parse import quote

from smartmeet_pipeline.common.errors import StorageError
from smartmeet_pipeline.common.logging import get_project_logger
from smartmeet_pipeline.common.time import Clock, utc_ms

log = get_project_logger()


class LocalBlobStorage:
    def __init__(
        self,
        base_dir: str | Path,
        *,
        signing_secret: str,
        url_ttl_sec: int = 3600,
        url_prefix: str = "/v1/artifacts",
        clock: Clock = utc_ms,
    ) -> None:
        self.base_dir = Path(base_dir).resolve()
        self.signing_secret = signing_secret.encode("utf-8")
        self.url_ttl_sec = url_ttl_sec
        self.url_prefix = url_prefix.rstrip("/")
        self.clock = clock

    def _key_to_path(self, key: str) -> Path:
        # защита от path traversal
        key = (key or "").lstrip("/")
        if not key or ".." in key.split("/"):
            raise StorageError("Invalid artifact key", {"key": key})
        return self.base_dir / key

    def put(self, key: str, data: bytes) -> str:
        """Сохранить bytes и вернуть ключ."""
        p = self._key_to_path(key)
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_bytes(data)
        except OSError as e:
            raise StorageError("Artifact write failed", {"key": key, "err": str(e)[:200]}) from e
        return key

    def download(self, key: str) -> bytes:
        p = self._key_to_path(key)
        try:
            return p.read_bytes()
        except FileNotFoundError as e:
            raise StorageError("Artifact not found", {"key": key}) from e
        except OSError as e:
            log.error(
                "blob_download_failed",
                extra={"payload": {"key": key, "error": str(e)[:200]}},
            )
            raise StorageError(f"Storage error: {e}", {"key": key}) from e

    def exists(self, key: str) -> bool:
        return self._key_to_path(key).exists()

    def delete(self, key: str) -> None:
        p = self._key_to_path(key)
        try:
            p.unlink()
        except FileNotFoundError:
            pass

    def _signature(self, key: str, expires_ms: int) -> str:
        msg = f"{key}:{expires_ms}".encode()
        return hmac.new(self.signing_secret, msg, hashlib.sha256).hexdigest()

    def signed_url(self, key: str, *, ttl_sec: int | None = None) -> str:
        self._key_to_path(key)
        expires_ms = self.clock() + (ttl_sec or self.url_ttl_sec) * 1000
        sig = self._signature(key, expires_ms)
        return f"{self.url_prefix}/{quote(key)}?expires={expires_ms}&sig={sig}"

    def verify_signed_url(self, key: str, *, expires: int, sig: str) -> bool:
        if expires < self.clock():
            return False
        return hmac.compare_digest(self._signature(key, int(expires)), sig or "")
