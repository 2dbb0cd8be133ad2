import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from croniter import croniter

from tokenfeed.utils.logger import get_logger, log_metric


class RunStatus(Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class JobRun:
    job_name: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    status: RunStatus = RunStatus.RUNNING
    error_message: Optional[str] = None
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_name": self.job_name,
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "status": self.status.value,
            "duration_seconds": self.duration_seconds,
            "error_message": self.error_message,
        }


@dataclass
class RefreshJob:
    """A periodic refresh: every ``interval_seconds``, or on a cron expression."""

    name: str
    func: Callable[[], Any]
    interval_seconds: Optional[float] = None
    cron_expression: Optional[str] = None
    enabled: bool = True
    run_immediately: bool = True
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None


class JobRegistry:
    def __init__(self, history_size: int = 100):
        self.logger = get_logger("JobRegistry")
        self.history_size = history_size
        self._jobs: Dict[str, RefreshJob] = {}
        self._history: Dict[str, List[JobRun]] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _validate(job: RefreshJob) -> None:
        if not job.name or not isinstance(job.name, str):
            raise ValueError("Job name must be a non-empty string")
        if job.func is None or not callable(job.func):
            raise ValueError(f"Job '{job.name}' function must be callable")
        if job.interval_seconds is None and not job.cron_expression:
            raise ValueError(f"Job '{job.name}' needs interval_seconds or cron_expression")
        if job.interval_seconds is not None and job.interval_seconds <= 0:
            raise ValueError(f"Job '{job.name}' interval must be > 0")
        if job.cron_expression and not croniter.is_valid(job.cron_expression):
            raise ValueError(f"Job '{job.name}' has an invalid cron expression: {job.cron_expression}")

    def register(self, job: RefreshJob) -> None:
        self._validate(job)
        with self._lock:
            if job.name in self._jobs:
                self.logger.warning(f"Job '{job.name}' already registered, replacing it")
            self._jobs[job.name] = job
            self._history.setdefault(job.name, [])

        schedule = job.cron_expression or f"every {job.interval_seconds}s"
        self.logger.info(f"Job registered: {job.name} ({schedule})")
        log_metric("job_registered", 1, {"job_name": job.name})

    def unregister(self, job_name: str) -> None:
        with self._lock:
            if self._jobs.pop(job_name, None) is not None:
                self.logger.info(f"Job unregistered: {job_name}")

    def get(self, job_name: str) -> Optional[RefreshJob]:
        with self._lock:
            return self._jobs.get(job_name)

    def all(self) -> List[RefreshJob]:
        with self._lock:
            return list(self._jobs.values())

    def set_enabled(self, job_name: str, enabled: bool) -> None:
        with self._lock:
            job = self._jobs.get(job_name)
            if job is not None:
                job.enabled = enabled
                self.logger.info(f"Job {'enabled' if enabled else 'disabled'}: {job_name}")

    def record(self, run: JobRun) -> None:
        with self._lock:
            history = self._history.setdefault(run.job_name, [])
            history.append(run)
            del history[:-self.history_size]

    def history(self, job_name: str, limit: int = 10) -> List[JobRun]:
        with self._lock:
            return list(self._history.get(job_name, [])[-limit:])


class SchedulingLogic:
    def first_run(self, job: RefreshJob, now: datetime) -> datetime:
        if job.run_immediately:
            return now
        return self.next_run(job, now)

    def next_run(self, job: RefreshJob, after: datetime) -> datetime:
        if job.cron_expression:
            return croniter(job.cron_expression, after).get_next(datetime)
        return after + timedelta(seconds=job.interval_seconds)

    def is_due(self, job: RefreshJob, now: datetime) -> bool:
        if not job.enabled:
            return False
        if job.next_run_at is None:
            job.next_run_at = self.first_run(job, now)
        return now >= job.next_run_at


class JobRunner:
    """Executes jobs on a small thread pool; a job never overlaps itself."""

    def __init__(self, max_workers: int = 2):
        self.logger = get_logger("JobRunner")
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="refresh_")
        self._running: Dict[str, Future] = {}
        self._lock = threading.Lock()

    def _execute(self, job: RefreshJob) -> JobRun:
        run = JobRun(job_name=job.name, started_at=datetime.now())
        try:
            job.func()
            run.status = RunStatus.COMPLETED
        except Exception as e:
            run.status = RunStatus.FAILED
            run.error_message = str(e)
            self.logger.error(f"Job '{job.name}' failed: {type(e).__name__}: {str(e)}")
        run.finished_at = datetime.now()

        if run.status == RunStatus.COMPLETED:
            self.logger.debug(f"Job '{job.name}' completed in {run.duration_seconds:.2f}s")
        log_metric(
            "job_completed" if run.status == RunStatus.COMPLETED else "job_failed",
            1,
            {"job_name": job.name, "duration": run.duration_seconds},
        )
        return run

    def submit(self, job: RefreshJob) -> Optional[Future]:
        with self._lock:
            current = self._running.get(job.name)
            if current is not None and not current.done():
                self.logger.warning(f"Job '{job.name}' still running, skipping this tick")
                log_metric("job_skipped", 1, {"job_name": job.name})
                return None
            future = self._executor.submit(self._execute, job)
            self._running[job.name] = future
            return future

    def is_running(self, job_name: str) -> bool:
        with self._lock:
            future = self._running.get(job_name)
            return future is not None and not future.done()

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
        self.logger.info("JobRunner shut down")


class RefreshScheduler:
    """Drives the periodic listing and price refresh jobs.

    ``run_pending`` performs one scheduling pass and can be called directly;
    ``start`` runs it in a background thread every ``tick_seconds``.
    """

    def __init__(
        self,
        max_workers: int = 2,
        tick_seconds: float = 0.5,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.logger = get_logger("RefreshScheduler")
        self.registry = JobRegistry()
        self.logic = SchedulingLogic()
        self.runner = JobRunner(max_workers=max_workers)
        self.tick_seconds = tick_seconds
        self._clock = clock or datetime.now
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def register_job(
        self,
        name: str,
        func: Callable[[], Any],
        interval_seconds: Optional[float] = None,
        cron_expression: Optional[str] = None,
        enabled: bool = True,
        run_immediately: bool = True,
    ) -> RefreshJob:
        job = RefreshJob(
            name=name,
            func=func,
            interval_seconds=interval_seconds,
            cron_expression=cron_expression,
            enabled=enabled,
            run_immediately=run_immediately,
        )
        self.registry.register(job)
        return job

    def run_pending(self, now: Optional[datetime] = None) -> List[Future]:
        now = now or self._clock()
        submitted = []
        for job in self.registry.all():
            if not self.logic.is_due(job, now):
                continue

            job.last_run_at = now
            job.next_run_at = self.logic.next_run(job, now)
            future = self.runner.submit(job)
            if future is None:
                self.registry.record(
                    JobRun(job_name=job.name, started_at=now, finished_at=now, status=RunStatus.SKIPPED)
                )
                continue

            future.add_done_callback(lambda f: self.registry.record(f.result()))
            submitted.append(future)
        return submitted

    def _loop(self) -> None:
        self.logger.info("Refresh loop started")
        while not self._stop_event.is_set():
            try:
                self.run_pending()
            except Exception as e:
                self.logger.error(f"Error in refresh loop: {str(e)}")
            self._stop_event.wait(self.tick_seconds)
        self.logger.info("Refresh loop terminated")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            self.logger.warning("Scheduler already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="RefreshScheduler", daemon=True)
        self._thread.start()
        self.logger.info(f"Scheduler started with {len(self.registry.all())} jobs")
        log_metric("scheduler_started", 1, {"jobs": len(self.registry.all())})

    def stop(self, timeout: float = 30.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                self.logger.warning("Scheduler thread did not terminate within timeout")
        self.runner.shutdown(wait=True)
        self.logger.info("Scheduler stopped")
        log_metric("scheduler_stopped", 1, {})

    def enable_job(self, job_name: str) -> None:
        self.registry.set_enabled(job_name, True)

    def disable_job(self, job_name: str) -> None:
        self.registry.set_enabled(job_name, False)

    def get_job_status(self, job_name: str) -> Optional[Dict[str, Any]]:
        job = self.registry.get(job_name)
        if job is None:
            return None
        return {
            "name": job.name,
            "enabled": job.enabled,
            "schedule": job.cron_expression or f"every {job.interval_seconds}s",
            "is_running": self.runner.is_running(job.name),
            "last_run_at": job.last_run_at.isoformat() if job.last_run_at else None,
            "next_run_at": job.next_run_at.isoformat() if job.next_run_at else None,
            "recent_runs": [run.to_dict() for run in self.registry.history(job.name, limit=5)],
        }

    def get_all_jobs_status(self) -> List[Dict[str, Any]]:
        return [self.get_job_status(job.name) for job in self.registry.all()]
