"""Reliable Celery task base class with retry and dead-letter logging."""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import Any

from celery import Task

from app.core.logging import get_logger


logger = get_logger("jobs.base_task")

# Logging only; task arguments themselves are never truncated
LOG_ARGS_LIMIT = 500
LOG_TRACEBACK_LIMIT = 4000


class ReliableTask(Task):
    """Base task with exponential-backoff retries and a DLQ log line on final failure.

    Usage:
        @celery_app.task(base=ReliableTask, bind=True)
        def my_task(self):
            ...
    """

    autoretry_for = (Exception,)
    max_retries = 3
    retry_backoff = True
    retry_backoff_max = 600
    retry_jitter = True

    acks_late = True
    reject_on_worker_lost = True

    def on_retry(self, exc: Exception, task_id: str, args: tuple, kwargs: dict, einfo: Any) -> None:
        logger.warning(
            "Task retrying",
            extra={
                "task_name": self.name,
                "task_id": task_id,
                "attempt": self.request.retries + 1,
                "max_retries": self.max_retries,
                "exception": str(exc),
                "exception_type": type(exc).__name__,
                "task_args": str(args)[:LOG_ARGS_LIMIT],
            },
        )

    def on_failure(self, exc: Exception, task_id: str, args: tuple, kwargs: dict, einfo: Any) -> None:
        # Parsed by log aggregation for alerting
        logger.error(
            "DEAD_LETTER_QUEUE: Task failed permanently",
            extra={
                "dlq": True,
                "task_name": self.name,
                "task_id": task_id,
                "attempts": self.request.retries + 1,
                "exception": str(exc),
                "exception_type": type(exc).__name__,
                "task_args": str(args)[:LOG_ARGS_LIMIT],
                "task_kwargs": str(kwargs)[:LOG_ARGS_LIMIT],
                "traceback": str(einfo)[:LOG_TRACEBACK_LIMIT] if einfo else None,
                "timestamp": datetime.now(UTC).isoformat(),
            },
        )

    def before_start(self, task_id: str, args: tuple, kwargs: dict) -> None:
        self.request._start_time = time.monotonic()

    def after_return(
        self,
        status: str,
        retval: Any,
        task_id: str,
        args: tuple,
        kwargs: dict,
        einfo: Any,
    ) -> None:
        """Log task completion with duration."""
        start_time = getattr(self.request, "_start_time", None)
        duration_ms = int((time.monotonic() - start_time) * 1000) if start_time else None
        if status == "SUCCESS":
            logger.info(
                "Task finished",
                extra={"task_name": self.name, "task_id": task_id, "duration_ms": duration_ms},
            )
