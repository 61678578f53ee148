"""APScheduler integration for FastAPI.

Runs the background loops: retry sweep, reconciliation, orphan cleanup and
signal-hash pruning. Every job is max_instances=1 and coalesced, so a slow
pass never stacks up behind itself.
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from perpbot.engine.runtime import Runtime

logger = logging.getLogger(__name__)

RETRY_SWEEP_JOB = "retry_sweep"
RECONCILE_JOB = "reconcile"
ORPHAN_JOB = "orphan_cleanup"
PRUNE_JOB = "signal_prune"


def _add_job(scheduler: AsyncIOScheduler, func, trigger: IntervalTrigger, job_id: str, name: str):
    scheduler.add_job(
        func,
        trigger=trigger,
        id=job_id,
        name=name,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=60,
    )
    logger.info(f"Scheduled {name} ({trigger})")


def build_scheduler(runtime: Runtime) -> AsyncIOScheduler:
    """Create a scheduler with all background jobs registered (not started)."""
    settings = runtime.settings
    scheduler = AsyncIOScheduler()

    _add_job(
        scheduler, runtime.retry_queue.sweep,
        IntervalTrigger(seconds=settings.retry_sweep_interval_seconds),
        RETRY_SWEEP_JOB, "Retry queue sweep",
    )
    _add_job(
        scheduler, runtime.reconciler.reconcile_all,
        IntervalTrigger(seconds=settings.reconcile_interval_seconds),
        RECONCILE_JOB, "Position reconciliation",
    )
    _add_job(
        scheduler, runtime.orphans.run,
        IntervalTrigger(minutes=settings.orphan_cleanup_interval_minutes),
        ORPHAN_JOB, "Orphaned resource cleanup",
    )
    _add_job(
        scheduler, runtime.guard.prune,
        IntervalTrigger(hours=1),
        PRUNE_JOB, "Signal hash pruning",
    )
    return scheduler


def get_scheduler_status(scheduler: AsyncIOScheduler | None) -> dict:
    """Return current scheduler state for the API."""
    if scheduler is None:
        return {"running": False, "job_count": 0, "jobs": []}
    jobs = scheduler.get_jobs()
    return {
        "running": scheduler.running,
        "job_count": len(jobs),
        "jobs": [
            {
                "id": j.id,
                "name": j.name,
                "next_run": str(j.next_run_time) if getattr(j, "next_run_time", None) else None,
                "trigger": str(j.trigger),
            }
            for j in jobs
        ],
    }
