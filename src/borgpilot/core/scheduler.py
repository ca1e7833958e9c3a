"""Backup job scheduler for BorgPilot.

Once per tick the scheduler checks every job against the local wall clock.
A job is due when its daily ``HH:MM`` matches (or, for hourly jobs, at minute
``00``) and the trigger key for that minute differs from the last one
recorded for the job. A job never runs twice concurrently; an overlapping
trigger is skipped, not queued.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable

from loguru import logger

from borgpilot.core import events
from borgpilot.core.commands import BorgCommand, ExecutionEnvironment, Invocation
from borgpilot.core.events import EventBus
from borgpilot.core.executor import CommandExecutor, new_process_id
from borgpilot.core.power import PowerAwarenessGate
from borgpilot.db import Database
from borgpilot.models import ActivityLogEntry, ActivityStatus, JobDefinition, ScheduleType
from borgpilot.notifications import NotificationDispatcher
from borgpilot.secrets import SecretStore

# Output kept per borg run
MAX_OUTPUT_TAIL = 64 * 1024

# Lines included in notifications
SUCCESS_LOG_LINES = 10
FAILURE_LOG_LINES = 25


class Trigger(str, Enum):
    """What started a job run."""

    SCHEDULED = "scheduled"
    MANUAL = "manual"


class OutcomeStatus(str, Enum):
    """Terminal state of a job run."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class TriggerDecision:
    should_trigger: bool
    trigger_key: str | None


@dataclass
class BorgRunResult:
    """Result of one borg invocation within a job."""

    success: bool
    code: int | None
    output: str = ""
    timed_out: bool = False
    error: str | None = None


@dataclass
class JobOutcome:
    """Result of a job run, reported exactly once."""

    job_id: str
    status: OutcomeStatus
    archive_name: str | None = None
    reason: str | None = None
    create: BorgRunResult | None = None
    prune: BorgRunResult | None = None

    @property
    def success(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS


# Pure helpers


def get_time_string(now: datetime) -> str:
    """Local wall-clock time as HH:MM."""
    return now.strftime("%H:%M")


def get_day_key(now: datetime) -> str:
    """Local calendar day as YYYY-MM-DD."""
    return now.strftime("%Y-%m-%d")


def get_trigger_key(now: datetime, schedule_type: ScheduleType | str) -> str:
    """Key identifying one firing slot: ``day|HH:MM|type``."""
    kind = schedule_type.value if isinstance(schedule_type, ScheduleType) else schedule_type
    return f"{get_day_key(now)}|{get_time_string(now)}|{kind}"


def should_trigger_scheduled_job(
    job: JobDefinition | None,
    now: datetime,
    last_key: str | None,
) -> TriggerDecision:
    """Decide whether a job is due at ``now``.

    Args:
        job: The job definition
        now: Current local time
        last_key: Trigger key recorded the last time the job fired

    Returns:
        The decision and the trigger key for this minute
    """
    if job is None or not job.schedule_enabled:
        return TriggerDecision(False, None)

    trigger_key = get_trigger_key(now, job.schedule_type)

    if job.schedule_type == ScheduleType.DAILY and job.schedule_time == get_time_string(now):
        return TriggerDecision(last_key != trigger_key, trigger_key)

    if job.schedule_type == ScheduleType.HOURLY and now.minute == 0:
        return TriggerDecision(last_key != trigger_key, trigger_key)

    return TriggerDecision(False, trigger_key)


def try_start_job(job_id: str, running: set[str] | None) -> bool:
    """Claim the concurrency slot for a job.

    Returns:
        True if the slot was free and is now held
    """
    if running is None or not job_id:
        return False
    if job_id in running:
        return False
    running.add(job_id)
    return True


def finish_job(job_id: str, running: set[str] | None) -> None:
    """Release a job's concurrency slot."""
    if running is not None and job_id:
        running.discard(job_id)


def build_archive_name(prefix: str | None, now: datetime) -> str:
    """Archive name ``<prefix>-YYYY-MM-DD-HHMM``."""
    return f"{prefix or 'backup'}-{now:%Y-%m-%d}-{now:%H%M}"


def get_next_run(job: JobDefinition, now: datetime) -> datetime | None:
    """Next local time at which a scheduled job is due, or None."""
    if not job.schedule_enabled:
        return None
    current = now.replace(second=0, microsecond=0)
    if job.schedule_type == ScheduleType.HOURLY:
        return current.replace(minute=0) + timedelta(hours=1)
    if job.schedule_type == ScheduleType.DAILY and job.schedule_time:
        hour, minute = (int(p) for p in job.schedule_time.split(":"))
        candidate = current.replace(hour=hour, minute=minute)
        if candidate <= current:
            candidate += timedelta(days=1)
        return candidate
    return None


def get_last_lines(text: str | None, count: int) -> str:
    """Return the last ``count`` lines of ``text``."""
    if not text:
        return ""
    return "\n".join(text.split("\n")[-count:])


class JobScheduler:
    """Runs backup jobs on their daily/hourly schedules."""

    def __init__(
        self,
        executor: CommandExecutor,
        db: Database,
        secrets: SecretStore,
        power_gate: PowerAwarenessGate,
        event_bus: EventBus,
        notifier: NotificationDispatcher,
        tick_interval: float = 60,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize the scheduler.

        Args:
            executor: Runs borg through the process registry
            db: Source of job/repo definitions and settings, re-read each tick
            secrets: Repository passphrases
            power_gate: Battery/offline policy for scheduled runs
            event_bus: Receives job-started/job-complete/activity-log events
            notifier: Receives outcome notifications
            tick_interval: Seconds between schedule checks
            clock: Returns the current local time
        """
        self._executor = executor
        self._db = db
        self._secrets = secrets
        self._power_gate = power_gate
        self._events = event_bus
        self._notifier = notifier
        self._tick_interval = tick_interval
        self._clock = clock

        self._last_trigger_keys: dict[str, str] = {}
        self._running_jobs: set[str] = set()
        self._job_processes: dict[str, str] = {}  # job_id -> current process id
        self._tasks: set[asyncio.Task[JobOutcome]] = set()
        self._running = False

    @property
    def running_job_ids(self) -> frozenset[str]:
        return frozenset(self._running_jobs)

    @property
    def last_trigger_keys(self) -> dict[str, str]:
        return dict(self._last_trigger_keys)

    def is_job_running(self, job_id: str) -> bool:
        return job_id in self._running_jobs

    # Ticking

    def tick(self, now: datetime | None = None) -> list[asyncio.Task[JobOutcome]]:
        """Check all jobs and start the due ones.

        The trigger key is recorded as soon as a job is due, so a run that is
        skipped (already running, power policy) is not retried in the same
        minute.

        Returns:
            Tasks for the runs started by this tick
        """
        now = now or self._clock()
        started = []

        for job in self._db.data.jobs:
            decision = should_trigger_scheduled_job(job, now, self._last_trigger_keys.get(job.id))
            if not decision.should_trigger:
                continue

            self._last_trigger_keys[job.id] = decision.trigger_key
            logger.info(f"Triggering scheduled job '{job.name or job.id}' ({decision.trigger_key})")
            started.append(self._spawn_run(job, Trigger.SCHEDULED, now))

        return started

    def _spawn_run(self, job: JobDefinition, trigger: Trigger, now: datetime) -> asyncio.Task[JobOutcome]:
        task = asyncio.create_task(self.execute_job(job, trigger=trigger, now=now))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def run_job_now(self, job_id: str) -> asyncio.Task[JobOutcome] | None:
        """Start a job immediately, outside its schedule.

        Returns:
            The run task, or None if the job doesn't exist
        """
        job = self._db.get_job(job_id)
        if job is None:
            return None
        logger.info(f"Manual run requested for job '{job.name or job.id}'")
        return self._spawn_run(job, Trigger.MANUAL, self._clock())

    def stop_job(self, job_id: str) -> bool:
        """Stop the borg process of a running job.

        Returns:
            True if a live process was stopped
        """
        process_id = self._job_processes.get(job_id)
        if process_id is None:
            return False
        return self._executor.registry.stop(process_id)

    def _seconds_until_next_tick(self) -> float:
        return self._tick_interval - (time.time() % self._tick_interval)

    async def run(self) -> None:
        """Run the scheduler loop."""
        self._running = True
        logger.info(f"Scheduler started with {len(self._db.data.jobs)} jobs")

        while self._running:
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Scheduler tick failed: {e}")
            await asyncio.sleep(self._seconds_until_next_tick())

        logger.info("Scheduler stopped")

    def stop(self) -> None:
        """Stop the scheduler."""
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def wait_idle(self) -> None:
        """Wait for all in-flight runs to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Execution

    async def execute_job(
        self,
        job: JobDefinition,
        trigger: Trigger = Trigger.SCHEDULED,
        now: datetime | None = None,
    ) -> JobOutcome:
        """Run a job under its concurrency slot.

        Never raises: failures become a failed outcome.
        """
        if not try_start_job(job.id, self._running_jobs):
            logger.info(f"Skipping job '{job.name or job.id}': already running")
            return JobOutcome(job.id, OutcomeStatus.SKIPPED, reason="already-running")

        try:
            return await self._run_claimed_job(job, trigger, now or self._clock())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Job '{job.name or job.id}' crashed: {e}")
            outcome = JobOutcome(job.id, OutcomeStatus.FAILED, reason=str(e))
            self._report(job, outcome)
            return outcome
        finally:
            finish_job(job.id, self._running_jobs)
            self._job_processes.pop(job.id, None)

    async def _run_claimed_job(self, job: JobDefinition, trigger: Trigger, now: datetime) -> JobOutcome:
        data = self._db.data
        settings = data.settings
        label = job.name or job.id

        if trigger == Trigger.SCHEDULED:
            decision = self._power_gate.check(settings)
            if not decision.allowed:
                logger.info(f"Skipped job '{label}': {decision.reason}")
                if decision.notify:
                    body = f"Job '{label}' put on hold (On Battery)."
                    self._notifier.notice("Backup Skipped", body)
                    self._events.publish(events.NOTICE, {"title": "Backup Skipped", "body": body})
                return JobOutcome(job.id, OutcomeStatus.SKIPPED, reason=decision.reason)

        repo = data.get_repo(job.repo_id)
        if repo is None:
            logger.warning(f"Skipping job '{label}': repository '{job.repo_id}' not found")
            return JobOutcome(job.id, OutcomeStatus.SKIPPED, reason="missing-repo")

        if not job.sources:
            logger.warning(f"Skipping job '{label}': no source paths")
            return JobOutcome(job.id, OutcomeStatus.SKIPPED, reason="no-sources")

        self._events.publish(events.JOB_STARTED, {"jobId": job.id})

        env = ExecutionEnvironment.from_settings(settings)
        archive_name = build_archive_name(job.archive_prefix, now)
        paths = [env.translate_path(p) for p in job.sources]
        passphrase = self._secrets.get_secret(repo.id)

        create_cmd = BorgCommand.create(repo, archive_name, paths, job.compression, job.exclude_patterns)
        create = await self._run_borg(
            job,
            env.build(create_cmd, passphrase, trust_host=repo.trust_host),
            label,
            trigger,
            timeout=None,
        )

        prune = None
        if create.success and job.prune_enabled:
            prune_cmd = BorgCommand.prune_for_job(repo, job)
            prune = await self._run_borg(
                job,
                env.build(prune_cmd, passphrase, trust_host=repo.trust_host),
                f"{label} (Prune)",
                trigger,
                timeout=settings.prune_timeout_seconds,
            )

        outcome = JobOutcome(
            job.id,
            OutcomeStatus.SUCCESS if create.success else OutcomeStatus.FAILED,
            archive_name=archive_name,
            create=create,
            prune=prune,
        )
        self._report(job, outcome)
        return outcome

    async def _run_borg(
        self,
        job: JobDefinition,
        invocation: Invocation,
        label: str,
        trigger: Trigger,
        timeout: float | None,
    ) -> BorgRunResult:
        process_id = new_process_id(f"job-{job.id}")
        self._job_processes[job.id] = process_id
        logger.info(f"Running '{label}': {invocation.describe()}")

        def forward(stream: str, text: str) -> None:
            self._events.publish(events.TERMINAL_LOG, {"id": process_id, "text": text})

        result = await self._executor.spawn_capture(
            invocation.binary,
            invocation.args,
            env=invocation.env,
            timeout=timeout,
            process_id=process_id,
            on_output=forward,
        )

        output = result.output[-MAX_OUTPUT_TAIL:]
        if result.error:
            output = f"{output.rstrip()}\n{result.error}".lstrip()

        run = BorgRunResult(
            success=result.ok,
            code=result.code,
            output=output,
            timed_out=result.timed_out,
            error=result.error,
        )
        if run.success:
            logger.info(f"'{label}' finished successfully")
        else:
            logger.warning(f"'{label}' failed (code={result.code}, error={result.error})")

        self._record_activity(label, trigger, run)
        return run

    def _record_activity(self, label: str, trigger: Trigger, run: BorgRunResult) -> None:
        kind = "Scheduled Backup" if trigger == Trigger.SCHEDULED else "Backup"
        entry = ActivityLogEntry(
            id=new_process_id("log"),
            title=f"{kind} {'Success' if run.success else 'Failed'}",
            detail=f"{label} - Code {run.code}",
            status=ActivityStatus.SUCCESS if run.success else ActivityStatus.ERROR,
            cmd=run.output,
        )
        self._db.add_activity_log(entry)
        self._events.publish(
            events.ACTIVITY_LOG,
            {
                "title": entry.title,
                "detail": entry.detail,
                "status": entry.status.value,
                "rawOutputTail": run.output,
            },
        )

    def _report(self, job: JobDefinition, outcome: JobOutcome) -> None:
        label = job.name or job.id
        create_output = outcome.create.output if outcome.create else ""

        if outcome.success:
            prune_summary = ""
            if outcome.prune is not None:
                prune_summary = "\nPrune: Success" if outcome.prune.success else "\nPrune: Failed"
            details = (
                f"Archive created: {outcome.archive_name}{prune_summary}\n\n"
                f"{get_last_lines(create_output, SUCCESS_LOG_LINES)}"
            )
        elif outcome.create is not None:
            details = (
                "The Borg command exited with a non-zero status code.\n\n"
                f"Error Log:\n{get_last_lines(create_output, FAILURE_LOG_LINES)}"
            )
        else:
            details = f"The job could not be run: {outcome.reason}"

        try:
            self._notifier.dispatch(label, outcome.success, details)
        except Exception as e:
            logger.error(f"Notification dispatch failed for '{label}': {e}")

        self._events.publish(events.JOB_COMPLETE, {"jobId": job.id, "success": outcome.success})
