"""Shared defaults for scheduled jobs.

Job Naming Convention:
    <domain>_<action> - Clear, descriptive names
"""

from __future__ import annotations

from celery.schedules import crontab

from app.core.config import settings


# job_name -> (schedule, human_description)
DEFAULT_SCHEDULES: dict[str, tuple[crontab, str]] = {
    "broker_sync": (
        crontab(minute=f"*/{settings.broker_sync_cron_minutes}"),
        "Sync trades for every broker connection whose interval has elapsed.",
    ),
    "broker_health_check": (
        crontab(minute=5),
        "Alert on brokers whose 24h sync success rate is unhealthy. Hourly.",
    ),
}

# job_name -> queue / priority (0-9, higher runs first)
JOB_PRIORITIES: dict[str, dict[str, int | str]] = {
    "broker_sync": {"queue": "default", "priority": 6},
    "broker_sync_connection": {"queue": "high", "priority": 8},
    "broker_health_check": {"queue": "low", "priority": 3},
}
