"""
Background Job Scheduler for the Editorial Clock.

Handles scheduled tasks using APScheduler:
- Deadline tick (every TICK_INTERVAL_SECONDS)
- Notification outbox dispatch (every DISPATCH_INTERVAL_SECONDS)

max_instances=1 and coalesce=True: a tick never overlaps itself, and runs
missed while the process was busy collapse into one (the tick itself
catches up on every missed fire time).

Job failure monitoring:
- Failures are counted per job over a rolling 24 hours
- At the threshold operations is alerted once; the dispatch job is also
  paused, the deadline tick never is and keeps running every interval
- Health status for the admin API
"""
import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..core.config import settings
from ..core.exceptions import SchedulerJobError
from ..models.domain import NotificationRequest
from ..models.enums import NotificationTemplate


logger = logging.getLogger(__name__)


DEADLINE_TICK_JOB = "deadline_tick"
NOTIFICATION_DISPATCH_JOB = "notification_dispatch"


# ==========================================
# Job Failure Monitor
# ==========================================

class JobFailureMonitor:
    """
    Counts recent failures per job, alerts when a job keeps failing and
    marks it paused if that job may be paused.

    Keeps a silent scheduler failure from stopping reminders for days.
    """

    def __init__(self, failure_threshold: int = 2):
        self.failure_threshold = failure_threshold
        self.failed_jobs: Dict[str, List[datetime]] = defaultdict(list)
        self.last_errors: Dict[str, str] = {}
        self.paused_jobs: set = set()
        self.alerted: set = set()

    async def record_success(self, job_id: str) -> None:
        """A successful run clears the job's failure history."""
        self.failed_jobs[job_id] = []
        self.last_errors.pop(job_id, None)
        self.paused_jobs.discard(job_id)
        self.alerted.discard(job_id)

    async def record_failure(self, job_id: str, error: str, pausable: bool = True) -> bool:
        """
        Add a failure for job_id; alert operations when it reaches the threshold.

        Returns True when the caller should pause the job; never when
        pausable is False.
        """
        now = datetime.now(timezone.utc)
        self.failed_jobs[job_id].append(now)
        self.last_errors[job_id] = error

        # Failures older than a day no longer count
        cutoff = now - timedelta(hours=24)
        self.failed_jobs[job_id] = [t for t in self.failed_jobs[job_id] if t > cutoff]

        failure_count = len(self.failed_jobs[job_id])
        if failure_count < self.failure_threshold:
            return False

        if job_id not in self.alerted:
            self.alerted.add(job_id)
            await self._send_critical_alert(job_id, failure_count, error, paused=pausable)
        if pausable:
            self.paused_jobs.add(job_id)
        return pausable

    async def _send_critical_alert(self, job_id: str, failure_count: int, error: str, paused: bool = True) -> None:
        """Page the operations address about a job that keeps failing."""
        outcome = "was paused" if paused else "keeps retrying"
        job_error = SchedulerJobError(
            f"Job {job_id} failed {failure_count} times and {outcome}",
            job_id=job_id,
            failure_count=failure_count,
            last_error=error,
        )
        if settings.ops_escalation_email:
            try:
                from .container import get_services

                result = await get_services().dispatcher.send_now(NotificationRequest(
                    template_key=NotificationTemplate.SCHEDULER_JOB_FAILED.value,
                    recipient=settings.ops_escalation_email,
                    payload={
                        **job_error.details,
                        "service": settings.app_name,
                        "time": datetime.now(timezone.utc).isoformat(),
                    },
                    idempotency_key=f"scheduler:{job_id}:{datetime.now(timezone.utc).isoformat()}",
                ))
                if not result.success:
                    logger.error(f"Failed to send critical alert for job {job_id}: {result.error}")
            except Exception as e:
                logger.error(f"Failed to send critical alert: {e}")

        logger.critical(f"🚨 CRITICAL: {job_error.message}. Last error: {error}")

    def get_status(self) -> Dict[str, Any]:
        """Failure count, last error and pause flag per job."""
        return {
            job_id: {
                "failure_count": len(failures),
                "last_failure": failures[-1].isoformat() if failures else None,
                "last_error": self.last_errors.get(job_id),
                "is_paused": job_id in self.paused_jobs,
            }
            for job_id, failures in self.failed_jobs.items()
        }


class DeadlineScheduler:
    """
    Background job scheduler.

    Runs the deadline tick and the outbox dispatcher on fixed intervals.
    Only one instance per deployment should run it (RUN_SCHEDULER=true);
    fire-event claims stay exactly-once even if two do.
    """

    def __init__(self, monitor: Optional[JobFailureMonitor] = None):
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.is_running = False
        self.job_monitor = monitor or JobFailureMonitor(settings.job_failure_alert_threshold)

        self.jobs_config = {
            DEADLINE_TICK_JOB: {
                "func": deadline_tick_job,
                "trigger": IntervalTrigger(seconds=settings.tick_interval_seconds),
                "name": "Deadline Tick",
                "description": "Fire due reminders, escalations and auto-withdrawals",
                # The tick is never paused, only alerted on
                "pause_on_failure": False,
            },
            NOTIFICATION_DISPATCH_JOB: {
                "func": notification_dispatch_job,
                "trigger": IntervalTrigger(seconds=settings.dispatch_interval_seconds),
                "name": "Notification Dispatch",
                "description": "Deliver queued notifications with retry/backoff",
                "pause_on_failure": True,
            },
        }

    def create_scheduler(self) -> AsyncIOScheduler:
        """AsyncIO scheduler with an in-memory job store (jobs are re-added on boot)."""
        return AsyncIOScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': AsyncIOExecutor()},
            job_defaults={
                'coalesce': True,  # Combine missed runs into one
                'max_instances': 1,  # Ticks never overlap
                'misfire_grace_time': max(settings.tick_interval_seconds, 30),
            },
            timezone=settings.scheduler_timezone,
        )

    def start(self):
        """Register the tick and dispatch jobs and start running them."""
        if self.is_running:
            logger.warning("Scheduler is already running")
            return

        self.scheduler = self.create_scheduler()
        for job_id, config in self.jobs_config.items():
            self.scheduler.add_job(
                config["func"],
                config["trigger"],
                id=job_id,
                name=config["name"],
                replace_existing=True,
            )

        self.scheduler.start()
        self.is_running = True
        logger.info("🚀 Deadline scheduler started")

        for job in self.scheduler.get_jobs():
            logger.info(f"  - {job.name}: Next run at {job.next_run_time}")

    def stop(self):
        """Shut down, waiting for running jobs to finish."""
        if self.scheduler and self.is_running:
            self.scheduler.shutdown(wait=True)
            self.is_running = False
            logger.info("🛑 Deadline scheduler stopped")

    def trigger_job(self, job_id: str) -> bool:
        """Run a job now instead of waiting for its interval."""
        if not self.scheduler:
            logger.error("Scheduler not initialized")
            return False

        job = self.scheduler.get_job(job_id)
        if job is None:
            logger.error(f"Job not found: {job_id}")
            return False
        job.modify(next_run_time=datetime.now(timezone.utc))
        logger.info(f"Manually triggered job: {job_id}")
        return True

    def get_jobs_status(self) -> list:
        """Id, name and next run time of each registered job."""
        if not self.scheduler:
            return []

        return [
            {
                "id": job.id,
                "name": job.name,
                "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
                "pending": job.pending,
            }
            for job in self.scheduler.get_jobs()
        ]

    def pause_job(self, job_id: str) -> bool:
        """Stop a job from running until resumed."""
        if not self.scheduler or self.scheduler.get_job(job_id) is None:
            return False
        self.scheduler.pause_job(job_id)
        logger.info(f"Paused job: {job_id}")
        return True

    def resume_job(self, job_id: str) -> bool:
        """Put a paused job back on its interval."""
        if not self.scheduler or self.scheduler.get_job(job_id) is None:
            return False
        self.scheduler.resume_job(job_id)
        self.job_monitor.paused_jobs.discard(job_id)
        self.job_monitor.alerted.discard(job_id)
        logger.info(f"Resumed job: {job_id}")
        return True

    def get_health_status(self) -> Dict[str, Any]:
        """Scheduler status, job schedule and failure information."""
        failed_jobs = self.job_monitor.get_status()
        has_failures = any(info["failure_count"] > 0 for info in failed_jobs.values())

        from .container import get_services

        last_report = get_services().engine.last_report
        return {
            "status": "degraded" if has_failures else "healthy",
            "is_running": self.is_running,
            "jobs": self.get_jobs_status(),
            "failures": failed_jobs,
            "paused_jobs": sorted(self.job_monitor.paused_jobs),
            "last_tick": last_report.to_dict() if last_report else None,
        }


# ==========================================
# JOB IMPLEMENTATIONS
# ==========================================

async def _handle_job_failure(job_id: str, error: Exception) -> None:
    pausable = scheduler.jobs_config.get(job_id, {}).get("pause_on_failure", True)
    should_pause = await scheduler.job_monitor.record_failure(job_id, str(error), pausable=pausable)
    if should_pause and scheduler.scheduler:
        scheduler.pause_job(job_id)


async def deadline_tick_job():
    """
    One scheduler tick.

    Per-entity errors are absorbed into the report by the engine; only a
    failure of the tick as a whole (store unreachable) lands here.
    The engine and store are synchronous, so the tick runs in a worker thread.
    """
    job_id = DEADLINE_TICK_JOB
    start_time = datetime.now(timezone.utc)

    try:
        from .container import get_services

        report = await asyncio.to_thread(get_services().engine.tick)
        elapsed = (datetime.now(timezone.utc) - start_time).total_seconds()
        if report.fired or report.errors:
            logger.info(f"✅ Deadline tick completed in {elapsed:.2f}s: {report.fired} fired, {len(report.errors)} errors")

        await scheduler.job_monitor.record_success(job_id)
        return report.to_dict()

    except Exception as e:
        logger.error(f"❌ Deadline tick failed: {e}", exc_info=True)
        await _handle_job_failure(job_id, e)
        raise


async def notification_dispatch_job():
    """Drain due outbox items."""
    job_id = NOTIFICATION_DISPATCH_JOB

    try:
        from .container import get_services

        result = await get_services().dispatcher.process_outbox()
        await scheduler.job_monitor.record_success(job_id)
        return result

    except Exception as e:
        logger.error(f"❌ Notification dispatch failed: {e}", exc_info=True)
        await _handle_job_failure(job_id, e)
        raise


# ==========================================
# GLOBAL SCHEDULER INSTANCE
# ==========================================

scheduler = DeadlineScheduler()


def get_scheduler() -> DeadlineScheduler:
    """Process-wide DeadlineScheduler."""
    return scheduler


# ==========================================
# FASTAPI INTEGRATION
# ==========================================

@asynccontextmanager
async def scheduler_lifespan(app):
    """
    FastAPI lifespan context manager for the scheduler.

    Starts only when ENABLE_SCHEDULER and RUN_SCHEDULER are both true.
    """
    started = settings.enable_scheduler and settings.run_scheduler
    if started:
        scheduler.start()
    else:
        logger.info("⏸️ Deadline scheduler not started in this process (RUN_SCHEDULER=false)")

    yield

    if started:
        scheduler.stop()
