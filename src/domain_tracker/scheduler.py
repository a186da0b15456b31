"""
Scheduler — named periodic jobs driving the refresh cycles.

Infrastructure layer — uses APScheduler (3.x) with one CronTrigger per job:

  domain_refresh       weekly   refresh due domains + domain reminders
  nameserver_check     daily    nameserver drift detection + change email
  certificate_refresh  weekly   refresh certificates + certificate reminders
  session_cleanup      daily    purge expired login sessions

Every run goes through a LoggingExecutionContext and is reported to a
JobRunRecorder, the in-process observability sink behind GET /api/jobs.
Jobs run on APScheduler's thread pool, so a slow domain cycle never delays
the nameserver check. A manual trigger adds a one-shot job with its own id,
which therefore runs alongside any scheduled instance of the same cycle.
"""

from __future__ import annotations

import signal
import sys
import threading
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from functools import partial
from typing import Any
from uuid import uuid4

import structlog
from apscheduler.events import EVENT_JOB_MAX_INSTANCES, EVENT_JOB_MISSED, JobEvent
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from domain_tracker.domain.models import CycleReport
from domain_tracker.railway import LoggingExecutionContext
from domain_tracker.railway.result import Result

log = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class JobSpec:
    """A named cycle and the cron expression it runs on."""

    id: str
    name: str
    cron: str
    run: Callable[[], Result[CycleReport]]


@dataclass(frozen=True, slots=True)
class JobRun:
    job_id: str
    trigger: str
    started_at: datetime
    finished_at: datetime
    succeeded: bool
    report: CycleReport | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "trigger": self.trigger,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "succeeded": self.succeeded,
            "report": self.report.as_dict() if self.report else None,
            "error": self.error,
        }


class JobRunRecorder:
    """Bounded, thread-safe history of job runs, newest last."""

    def __init__(self, capacity: int = 200) -> None:
        self._runs: deque[JobRun] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def record(self, run: JobRun) -> None:
        with self._lock:
            self._runs.append(run)

    def recent(self, limit: int = 20) -> list[JobRun]:
        with self._lock:
            runs = list(self._runs)
        return runs[-limit:][::-1]

    def last(self, job_id: str) -> JobRun | None:
        with self._lock:
            return next((run for run in reversed(self._runs) if run.job_id == job_id), None)


def execute_job(spec: JobSpec, recorder: JobRunRecorder, trigger: str = "scheduled") -> Result[CycleReport]:
    """Run one cycle inside a logging context and record its outcome."""
    started_at = datetime.now(UTC)
    with structlog.contextvars.bound_contextvars(job=spec.id, trigger=trigger):
        result = LoggingExecutionContext(operation=spec.id).execute(spec.run)

        if result.is_success():
            log.info("scheduler.job_completed", report=result.value().as_dict())
        else:
            log.error("scheduler.job_failed", failure=str(result.error()))

    recorder.record(
        JobRun(
            job_id=spec.id,
            trigger=trigger,
            started_at=started_at,
            finished_at=datetime.now(UTC),
            succeeded=result.is_success(),
            report=result.value() if result.is_success() else None,
            error=None if result.is_success() else str(result.error()),
        )
    )
    return result


def cron_trigger(cron: str) -> CronTrigger:
    """CronTrigger from a 5-field expression (minute hour dom month dow), in UTC."""
    minute, hour, dom, month, dow = cron.split()
    return CronTrigger(minute=minute, hour=hour, day=dom, month=month, day_of_week=dow, timezone=UTC)


def create_scheduler(
    jobs: Sequence[JobSpec],
    recorder: JobRunRecorder,
    run_on_startup: bool = False,
    scheduler: BaseScheduler | None = None,
) -> BaseScheduler:
    """
    Register every job on a scheduler (a BlockingScheduler unless one is given).

    Scheduled instances of the same job never overlap (max_instances=1, missed
    runs coalesced); a skipped run is logged and recorded as a failure.
    """
    scheduler = scheduler or BlockingScheduler(timezone=UTC)
    specs = {spec.id: spec for spec in jobs}

    for spec in jobs:
        scheduler.add_job(
            partial(execute_job, spec, recorder),
            trigger=cron_trigger(spec.cron),
            id=spec.id,
            name=spec.name,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )

    def _on_skipped(event: JobEvent) -> None:
        spec = specs.get(event.job_id)
        if spec is None:
            return
        reason = "missed" if event.code == EVENT_JOB_MISSED else "previous run still active"
        log.warning("scheduler.job_skipped", job=event.job_id, reason=reason)
        now = datetime.now(UTC)
        recorder.record(JobRun(spec.id, "scheduled", now, now, succeeded=False, error=reason))

    scheduler.add_listener(_on_skipped, EVENT_JOB_MISSED | EVENT_JOB_MAX_INSTANCES)

    if run_on_startup:
        log.info("scheduler.startup_run", jobs=[spec.id for spec in jobs])
        for spec in jobs:
            execute_job(spec, recorder, trigger="startup")

    return scheduler


def trigger_now(scheduler: BaseScheduler, spec: JobSpec, recorder: JobRunRecorder) -> str:
    """Queue a one-shot run of `spec` immediately and return its job id."""
    job_id = f"{spec.id}-manual-{uuid4().hex[:8]}"
    scheduler.add_job(
        partial(execute_job, spec, recorder, "manual"),
        id=job_id,
        name=f"{spec.name} (manual)",
        misfire_grace_time=None,
    )
    log.info("scheduler.manual_trigger", job=spec.id, run_id=job_id)
    return job_id


def register_shutdown_signals(scheduler: BaseScheduler) -> None:
    """Register SIGINT and SIGTERM handlers for graceful shutdown."""

    def _shutdown(signum: int, frame: object) -> None:
        sig_name = signal.Signals(signum).name
        log.info("scheduler.shutdown_requested", signal=sig_name)
        scheduler.shutdown(wait=False)
        sys.exit(0)

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
