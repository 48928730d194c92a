"""
Middleware components for request processing.

This package contains middleware for:
- Mail scheduler auto-start (keeps the background mail worker alive)
"""

from app.middleware.scheduler_autostart import SchedulerAutoStartMiddleware

__all__ = [
    "SchedulerAutoStartMiddleware",
]
