"""API route modules."""

from . import brokers, daily_bias, health, metrics, scheduler


__all__ = ["brokers", "daily_bias", "health", "metrics", "scheduler"]
