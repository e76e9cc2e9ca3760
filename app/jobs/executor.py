"""Job execution with timing and error wrapping."""

from __future__ import annotations

import inspect
import time
from typing import Any

from app.core.exceptions import JobError
from app.core.logging import get_logger

from .registry import get_job


logger = get_logger("jobs.executor")


async def execute_job(name: str, **kwargs: Any) -> str:
    """
    Execute a registered job by name.

    Returns:
        Job result message

    Raises:
        JobError: If the job is unknown or fails
    """
    job_func = get_job(name)
    if job_func is None:
        raise JobError(message=f"Unknown job: {name}", error_code="UNKNOWN_JOB")

    start_time = time.monotonic()

    try:
        if inspect.iscoroutinefunction(job_func):
            result = await job_func(**kwargs)
        else:
            result = job_func(**kwargs)

        duration = time.monotonic() - start_time
        message = str(result) if result else "Completed"
        logger.info(f"Job {name} executed in {duration:.2f}s: {message}")
        return message

    except Exception as e:
        duration = time.monotonic() - start_time
        logger.exception(f"Job {name} failed after {duration:.2f}s")
        raise JobError(
            message=f"Job execution failed: {e!s}",
            error_code="JOB_EXECUTION_FAILED",
            details={"job_name": name, "duration_seconds": duration},
        ) from e
