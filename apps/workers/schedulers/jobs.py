from __future__ import annotations

from typing import Any, Callable, Optional, Sequence

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from core.config import settings


def configure_scheduler(timezone: Optional[str] = None) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(timezone=timezone or settings.scheduler_timezone)
    return scheduler


def add_interval_job(
    scheduler: AsyncIOScheduler,
    func: Callable[..., Any],
    seconds: float,
    job_id: str,
    args: Optional[Sequence[Any]] = None,
) -> None:
    """One instance at a time; missed runs collapse into a single run."""
    scheduler.add_job(
        func,
        "interval",
        seconds=seconds,
        args=list(args or []),
        max_instances=1,
        coalesce=True,
        id=job_id,
        replace_existing=True,
    )


def remove_job(scheduler: AsyncIOScheduler, job_id: str) -> None:
    if scheduler.get_job(job_id) is not None:
        scheduler.remove_job(job_id)
