"""arq worker settings module.

Import path for arq CLI: arq dojo.workers.settings.WorkerSettings
"""

from __future__ import annotations

from arq import cron
from arq.connections import RedisSettings

from dojo.config import get_settings
from dojo.workers.points_worker import (
    nightly_badge_sweep,
    points_shutdown,
    points_startup,
    recompute_student,
    sweep_badges,
)


class WorkerSettings:
    """arq worker settings for the points engine."""

    functions = [recompute_student, sweep_badges]
    cron_jobs = [
        cron(nightly_badge_sweep, hour=7, minute=0, run_at_startup=False),  # 02:00/03:00 New York
    ]
    on_startup = points_startup
    on_shutdown = points_shutdown
    redis_settings = RedisSettings.from_dsn(get_settings().arq_redis_url)
    max_jobs = 4
    job_timeout = 600


__all__ = ["WorkerSettings"]
