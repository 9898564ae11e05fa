"""
Scheduler for automatic project syncs

One SyncJob per (project, mode), each armed as a single APScheduler
DateTrigger. When a run finishes the job is re-armed: one interval from
now after a success, or a widened backoff delay after a failure. Overdue
jobs run once, one interval from now, and never catch up in a burst.

A DateTrigger job is deleted by APScheduler once it fires, so a late fire
still runs (no misfire grace) and a fire APScheduler skips anyway is
re-armed by the missed/max-instances listener.
"""
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from apscheduler.events import EVENT_JOB_MAX_INSTANCES, EVENT_JOB_MISSED
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from sheetsync.config import get_settings
from sheetsync.utils.logger import log

settings = get_settings()


class JobMode(str, Enum):
    SINGLE = "single"
    MULTI = "multi"


class JobState(str, Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    BACKOFF_SCHEDULED = "backoff_scheduled"


@dataclass
class SyncJob:
    project_id: str
    mode: JobMode
    interval_minutes: int
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    is_active: bool = True
    state: JobState = JobState.IDLE
    consecutive_failures: int = 0

    @property
    def id(self) -> str:
        return job_id_for(self.project_id, self.mode)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "mode": self.mode.value,
            "interval_minutes": self.interval_minutes,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "is_active": self.is_active,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
        }


def job_id_for(project_id: str, mode: JobMode) -> str:
    return f"{JobMode(mode).value}-{project_id}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Stored timestamps are naive UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def compute_next_run(interval_minutes: int, last_run: Optional[datetime], now: datetime) -> datetime:
    """last_run + interval, or now + interval when that is already past (or never ran)."""
    interval = timedelta(minutes=interval_minutes)
    if last_run is not None:
        candidate = last_run + interval
        if candidate > now:
            return candidate
    return now + interval


def compute_backoff_minutes(interval_minutes: int, consecutive_failures: int, max_backoff_minutes: int = None) -> int:
    """
    interval * 2^failures, capped (1 failure on a 60 min job -> 120).

    The delay keeps doubling while failures continue (120, 240, 480, 960,
    then the cap) instead of staying at a flat interval * 2, so a source
    that stays down is polled less and less until the 24h cap.
    """
    cap = max_backoff_minutes or settings.max_backoff_minutes
    # Past 2^16 the cap always wins
    exponent = min(max(consecutive_failures, 0), 16)
    return min(interval_minutes * (2 ** exponent), cap)


def _run_succeeded(result: Any) -> bool:
    if isinstance(result, dict):
        return bool(result.get("success"))
    return bool(getattr(result, "success", False))


class SyncScheduler:
    """
    In-memory job table driving APScheduler timers

    Args:
        run_sync: `await run_sync(project_id, "scheduled")` returning a
            result with a `success` flag
        clock: Returns the current aware UTC datetime
    """

    def __init__(
        self,
        run_sync: Callable[[str, str], Awaitable[Any]],
        clock: Callable[[], datetime] = None,
        max_backoff_minutes: int = None,
    ):
        self.run_sync = run_sync
        self.clock = clock or utcnow
        self.max_backoff_minutes = max_backoff_minutes or settings.max_backoff_minutes
        self._scheduler = AsyncIOScheduler(timezone=settings.scheduler_timezone)
        self._scheduler.add_listener(self._on_fire_skipped, EVENT_JOB_MISSED | EVENT_JOB_MAX_INSTANCES)
        self._jobs: Dict[str, SyncJob] = {}
        self._lock = threading.RLock()

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self):
        """Start APScheduler and arm every job already in the table."""
        if self.running:
            return
        self._scheduler.start()
        with self._lock:
            for job in self._jobs.values():
                if job.state != JobState.RUNNING:
                    self._arm(job)
        log.info(f"Sync scheduler started with {len(self._jobs)} jobs")

    def shutdown(self):
        if not self.running:
            return
        self._scheduler.shutdown(wait=False)
        log.info("Sync scheduler stopped")

    # ── Job table ───────────────────────────────────────────────

    def add_or_update_job(
        self,
        project_id: str,
        mode: JobMode = JobMode.MULTI,
        interval_minutes: int = None,
        last_run: Optional[datetime] = None,
    ) -> SyncJob:
        """
        Create the job for (project, mode) or update it in place.

        Re-adding never creates a second timer: the existing job keeps its
        identity and its pending trigger is replaced.
        """
        mode = JobMode(mode)
        interval_minutes = interval_minutes or settings.default_sync_interval_minutes
        if interval_minutes <= 0:
            raise ValueError("interval_minutes must be positive")

        now = self.clock()
        with self._lock:
            job_id = job_id_for(project_id, mode)
            job = self._jobs.get(job_id)
            if job is None:
                job = SyncJob(project_id=project_id, mode=mode, interval_minutes=interval_minutes)
                job.last_run = _as_utc(last_run)
                self._jobs[job_id] = job
                log.info(f"Adding sync job {job_id} every {interval_minutes} min")
            else:
                job.interval_minutes = interval_minutes
                if last_run is not None:
                    job.last_run = _as_utc(last_run)
                log.info(f"Updating sync job {job_id} to every {interval_minutes} min")

            job.is_active = True
            if job.state == JobState.RUNNING:
                # The in-flight run re-arms with the new interval when it finishes
                return job

            job.next_run = compute_next_run(job.interval_minutes, job.last_run, now)
            job.state = JobState.SCHEDULED
            self._arm(job)
            return job

    def remove_job(self, project_id: str, mode: JobMode = JobMode.MULTI) -> bool:
        """Cancel the pending timer; a run already in flight finishes but is not re-armed."""
        job_id = job_id_for(project_id, mode)
        with self._lock:
            job = self._jobs.pop(job_id, None)
            if job is None:
                return False
            job.is_active = False
            self._cancel(job_id)
        log.info(f"Removed sync job {job_id}")
        return True

    def remove_project_jobs(self, project_id: str) -> int:
        return sum(1 for mode in JobMode if self.remove_job(project_id, mode))

    def get_job_status(self, project_id: str, mode: JobMode = JobMode.MULTI) -> Optional[Dict[str, Any]]:
        with self._lock:
            job = self._jobs.get(job_id_for(project_id, mode))
            return job.to_dict() if job else None

    def list_jobs(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [job.to_dict() for job in self._jobs.values()]

    # ── Execution ───────────────────────────────────────────────

    async def run_job(self, job_id: str) -> bool:
        """
        Run one job now and re-arm it.

        Returns True if the run succeeded. Any exception raised by the
        run counts as a failure and takes the backoff path.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or not job.is_active:
                log.debug(f"Sync job {job_id} no longer scheduled; skipping")
                return False
            job.state = JobState.RUNNING

        log.info(f"Running scheduled sync {job_id}")
        try:
            succeeded = _run_succeeded(await self.run_sync(job.project_id, "scheduled"))
        except Exception as e:
            log.error(f"Scheduled sync {job_id} raised: {e}")
            succeeded = False

        now = self.clock()
        with self._lock:
            if self._jobs.get(job_id) is not job:
                log.info(f"Sync job {job_id} was removed during its run; not rescheduling")
                return succeeded

            if succeeded:
                job.last_run = now
                job.consecutive_failures = 0
                job.next_run = now + timedelta(minutes=job.interval_minutes)
                job.state = JobState.SCHEDULED
                log.info(f"Sync job {job_id} succeeded; next run at {job.next_run.isoformat()}")
            else:
                job.consecutive_failures += 1
                delay = compute_backoff_minutes(
                    job.interval_minutes, job.consecutive_failures, self.max_backoff_minutes,
                )
                job.next_run = now + timedelta(minutes=delay)
                job.state = JobState.BACKOFF_SCHEDULED
                log.warning(
                    f"Sync job {job_id} failed ({job.consecutive_failures} in a row); "
                    f"backing off {delay} min until {job.next_run.isoformat()}"
                )
            self._arm(job)

        return succeeded

    def _arm(self, job: SyncJob):
        if not self.running or job.next_run is None:
            return
        self._scheduler.add_job(
            self.run_job,
            trigger=DateTrigger(run_date=job.next_run),
            args=[job.id],
            id=job.id,
            name=f"Sheet sync {job.id}",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=None,
        )

    def _on_fire_skipped(self, event):
        """Re-arm a job whose one-shot trigger APScheduler dropped without running it."""
        with self._lock:
            job = self._jobs.get(event.job_id)
            if job is None or not job.is_active or job.state == JobState.RUNNING:
                return
            job.next_run = compute_next_run(job.interval_minutes, job.last_run, self.clock())
            log.warning(f"Sync job {job.id} fire was skipped; re-armed for {job.next_run.isoformat()}")
            self._arm(job)

    def _cancel(self, job_id: str):
        if not self.running:
            return
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            # Already fired or never armed
            pass
