"""
Пинок воркеру: POST <APP_BASE_URL>/v1/worker/process.

- вызов уходит в фоновый executor, вызывающий не ждёт ответа
- результат наблюдаем через done-callback (ошибки логируются)
- надёжность обеспечивает очередь, а не этот вызов
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

import requests

from smartmeet_pipeline.common.logging import get_project_logger
from smartmeet_pipeline.common.time import utc_now_iso

log = get_project_logger()

WORKER_PATH = "/v1/worker/process"


class WorkerTrigger:
    def __init__(
        self,
        *,
        base_url: str,
        secret: str | None,
        timeout_sec: int = 5,
        executor: ThreadPoolExecutor | None = None,
        session: Any = None,
    ) -> None:
        self.url = base_url.rstrip("/") + WORKER_PATH
        self.secret = secret
        self.timeout_sec = timeout_sec
        self._executor = executor or ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="worker-trigger"
        )
        self._http = session or requests

    def trigger(self) -> Future | None:
        if not self.secret:
            log.info("worker_trigger_skipped", extra={"payload": {"reason": "no_worker_secret"}})
            return None
        payload = {"triggeredAt": utc_now_iso()}
        future = self._executor.submit(self._post, payload)
        future.add_done_callback(self._on_done)
        return future

    def _post(self, payload: dict[str, Any]) -> int:
        resp = self._http.post(
            self.url,
            headers={
                "Authorization": f"Bearer {self.secret}",
                "Content-Type": "application/json",
            },
            json=payload,
            timeout=self.timeout_sec,
        )
        return int(resp.status_code)

    def _on_done(self, future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            log.error(
                "worker_trigger_failed",
                extra={"payload": {"url": self.url, "error": str(exc)[:200]}},
            )
            return
        status_code = future.result()
        if status_code >= 400:
            log.warning(
                "worker_trigger_bad_status",
                extra={"payload": {"url": self.url, "status": status_code}},
            )

    def shutdown(self, *, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)
