from __future__ import annotations

import concurrent.futures
import threading
from typing import Any, Callable, List

from tenantgate.logging import get_logger

logger = get_logger(__name__)


class BackgroundTasks:
    """Fire-and-forget dispatcher for work that must not block a request.

    Failures are logged and never reach the caller.
    """

    DEFAULT_WORKERS = 4
    MAX_WORKERS = 16

    def __init__(self, workers: int = DEFAULT_WORKERS) -> None:
        workers = min(max(1, workers), self.MAX_WORKERS)
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="tenantgate-bg"
        )
        self._pending: List[concurrent.futures.Future] = []
        self._lock = threading.Lock()
        self._shutdown = False

    def submit(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        if self._shutdown:
            logger.warning("background_task_dropped", task=name)
            return

        def _run() -> None:
            try:
                fn(*args, **kwargs)
            except Exception as exc:
                logger.error(
                    "background_task_failed",
                    task=name,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

        future = self._executor.submit(_run)
        with self._lock:
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(future)

    def drain(self, timeout: float = 5.0) -> None:
        """Wait for queued tasks; used by tests and shutdown."""
        with self._lock:
            pending = list(self._pending)
        concurrent.futures.wait(pending, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        if self._shutdown:
            return
        self._shutdown = True
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
        logger.info("background_executor_shutdown", wait=wait)
