"""Supervisor for BorgPilot.

Owns the process registry, the scheduler and the stores, and exposes the
boundary operations used by the HTTP API: ad-hoc borg commands, mounts,
manual job runs and state updates.
"""

from __future__ import annotations

import asyncio
import codecs
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import psutil
from loguru import logger

from borgpilot.config import (
    DATA_FILE_NAME,
    NOTIFICATIONS_FILE_NAME,
    SECRETS_FILE_NAME,
    get_data_dir,
    load_config,
)
from borgpilot.core import events
from borgpilot.core.commands import BorgCommand, ExecutionEnvironment, Invocation
from borgpilot.core.events import EventBus
from borgpilot.core.executor import CommandExecutor, new_process_id
from borgpilot.core.power import KeepAwake, PowerAwarenessGate
from borgpilot.core.process_registry import (
    ManagedProcess,
    ProcessConflictError,
    ProcessKind,
    ProcessRegistry,
)
from borgpilot.core.scheduler import JobScheduler, get_next_run
from borgpilot.db import Database
from borgpilot.models import AppData, BorgPilotConfig
from borgpilot.notifications import NotificationDispatcher, NotificationStore
from borgpilot.secrets import SecretStore

# A mount that survives this long is considered up
MOUNT_STARTUP_GRACE = 2.5

UNMOUNT_TIMEOUT = 30

# Wait for in-flight jobs to report after their processes were stopped
SHUTDOWN_GRACE = 10


@dataclass
class SpawnRequest:
    """Request to run a command and stream its output."""

    args: list[str]
    command_id: str | None = None
    repo_id: str | None = None
    target: str | None = None  # Repo URL or URL::archive; args are then [subcommand, *flags]
    paths: list[str] = field(default_factory=list)
    binary: str | None = None  # Run this instead of borg
    timeout: float | None = None
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None
    stdin: str | None = None


@dataclass
class SpawnResult:
    success: bool
    command_id: str
    code: int | None = None
    error: str | None = None
    timed_out: bool = False


@dataclass
class MountRequest:
    """Request to start a long-lived ``borg mount``."""

    args: list[str]
    mount_id: str | None = None
    repo_id: str | None = None
    target: str | None = None
    paths: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class MountResult:
    success: bool
    mount_id: str
    error: str | None = None


class Supervisor:
    """Owns the BorgPilot runtime."""

    def __init__(
        self,
        config: BorgPilotConfig | None = None,
        db: Database | None = None,
        secrets: SecretStore | None = None,
        notifications: NotificationStore | None = None,
        power_gate: PowerAwarenessGate | None = None,
        keep_awake: KeepAwake | None = None,
    ):
        """Initialize the supervisor."""
        self.config = config or load_config()
        data_dir = get_data_dir(self.config)

        self.db = db or Database(data_dir / DATA_FILE_NAME)
        self.secrets = secrets or SecretStore(data_dir / SECRETS_FILE_NAME)
        self.notifications = notifications or NotificationStore(
            data_dir / NOTIFICATIONS_FILE_NAME, secrets=self.secrets
        )

        self.events = EventBus()
        self.notifier = NotificationDispatcher(self.notifications)
        self.keep_awake = keep_awake or KeepAwake()

        self.registry = ProcessRegistry(on_busy_change=self._on_busy_change)
        self.executor = CommandExecutor(self.registry)

        self.scheduler = JobScheduler(
            executor=self.executor,
            db=self.db,
            secrets=self.secrets,
            power_gate=power_gate or PowerAwarenessGate(),
            event_bus=self.events,
            notifier=self.notifier,
            tick_interval=self.config.daemon.tick_interval,
        )

        self._shutdown_event = asyncio.Event()
        self._running = False
        self._background: set[asyncio.Task[Any]] = set()

    def _on_busy_change(self, busy: bool) -> None:
        self.keep_awake.set_busy(busy)
        self.events.publish(events.BUSY_CHANGED, {"busy": busy})

    @property
    def environment(self) -> ExecutionEnvironment:
        """Borg launch settings from the current state."""
        return ExecutionEnvironment.from_settings(self.db.data.settings)

    def _build_invocation(
        self,
        args: list[str],
        repo_id: str | None,
        binary: str | None = None,
        extra_env: dict[str, str] | None = None,
        target: str | None = None,
        paths: list[str] | None = None,
    ) -> Invocation:
        environment = self.environment
        passphrase = self.secrets.get_secret(repo_id)
        repo = self.db.get_repo(repo_id) if repo_id else None

        if binary:
            env_vars = dict(extra_env or {})
            if passphrase:
                env_vars["BORG_PASSPHRASE"] = passphrase
            return environment.wrap([binary, *args], env_vars)

        # Raw argv from older clients carries the target positionally
        if target is None:
            command = BorgCommand.from_args(args)
        else:
            command = BorgCommand.from_parts(args, target, paths)
        return environment.build(
            command,
            passphrase,
            trust_host=bool(repo and repo.trust_host),
            extra_env=extra_env,
        )

    # Commands

    async def spawn_command(self, request: SpawnRequest) -> SpawnResult:
        """Run a command, streaming its output as ``terminal-log`` events."""
        command_id = request.command_id or new_process_id("cmd")
        if self.registry.get(command_id) is not None:
            return SpawnResult(False, command_id, error=str(ProcessConflictError(command_id)))

        invocation = self._build_invocation(
            request.args,
            request.repo_id,
            request.binary,
            request.env,
            target=request.target,
            paths=request.paths,
        )
        logger.info(f"Running command '{command_id}': {invocation.describe()}")

        def forward(stream: str, text: str) -> None:
            self.events.publish(events.TERMINAL_LOG, {"id": command_id, "text": text})

        result = await self.executor.spawn_capture(
            invocation.binary,
            invocation.args,
            env=invocation.env,
            cwd=request.cwd,
            timeout=request.timeout,
            stdin=request.stdin,
            process_id=command_id,
            on_output=forward,
        )
        if result.error:
            forward("stderr", f"Error: {result.error}\n")

        return SpawnResult(
            success=result.ok,
            command_id=command_id,
            code=result.code,
            error=result.error,
            timed_out=result.timed_out,
        )

    def start_command(self, request: SpawnRequest) -> str:
        """Start a command in the background.

        Returns:
            The command id
        """
        if not request.command_id:
            request.command_id = new_process_id("cmd")
        task = asyncio.create_task(self.spawn_command(request))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return request.command_id

    def stop_command(self, command_id: str) -> bool:
        """Stop a running command.

        Returns:
            True if a tracked process existed
        """
        handle = self.registry.processes.get(command_id)
        if handle is None:
            return False
        return handle.stop()

    # Mounts

    async def mount(self, request: MountRequest) -> MountResult:
        """Start a ``borg mount`` and wait for it to come up.

        Succeeds if the process is still alive after the startup grace
        period; fails with the startup log if it exits earlier.
        """
        mount_id = request.mount_id or new_process_id("mount")
        if self.registry.get(mount_id) is not None:
            return MountResult(False, mount_id, error=str(ProcessConflictError(mount_id)))

        invocation = self._build_invocation(
            request.args,
            request.repo_id,
            extra_env=request.env,
            target=request.target,
            paths=request.paths,
        )
        logger.info(f"Mounting '{mount_id}': {invocation.describe()}")

        loop = asyncio.get_running_loop()
        started: asyncio.Future[MountResult] = loop.create_future()
        startup_log: list[str] = []

        def collect(decoder: codecs.IncrementalDecoder):
            def on_chunk(chunk: bytes) -> None:
                text = decoder.decode(chunk)
                if text:
                    startup_log.append(text)
                    self.events.publish(events.TERMINAL_LOG, {"id": mount_id, "text": text})

            return on_chunk

        def resolve(result: MountResult) -> None:
            if not started.done():
                started.set_result(result)

        def on_exit(code: int | None, sig: str | None) -> None:
            self.events.publish(events.MOUNT_EXITED, {"mountId": mount_id, "code": code})
            log = "".join(startup_log)
            resolve(MountResult(False, mount_id, error=f"Exited with code {code}. Log: {log}"))

        def on_error(err: BaseException, timed_out: bool) -> None:
            self.events.publish(events.MOUNT_EXITED, {"mountId": mount_id, "code": None})
            resolve(MountResult(False, mount_id, error=str(err)))

        await self.registry.spawn(
            self.registry.mounts,
            mount_id,
            invocation.binary,
            invocation.args,
            kind=ProcessKind.MOUNT,
            env=invocation.env,
            on_stdout=collect(codecs.getincrementaldecoder("utf-8")(errors="replace")),
            on_stderr=collect(codecs.getincrementaldecoder("utf-8")(errors="replace")),
            on_exit=on_exit,
            on_error=on_error,
        )

        try:
            return await asyncio.wait_for(asyncio.shield(started), MOUNT_STARTUP_GRACE)
        except asyncio.TimeoutError:
            logger.info(f"Mount '{mount_id}' is up")
            return MountResult(True, mount_id)

    async def unmount(self, mount_id: str, local_path: str | None = None) -> bool:
        """Stop a tracked mount, or run ``borg umount`` on its path."""
        handle = self.registry.mounts.get(mount_id)
        if handle is not None:
            return handle.stop()

        if not local_path:
            return False

        invocation = self.environment.build(BorgCommand(subcommand="umount", target=local_path))
        result = await self.executor.spawn_capture(
            invocation.binary, invocation.args, env=invocation.env, timeout=UNMOUNT_TIMEOUT
        )
        if not result.ok:
            logger.warning(f"borg umount {local_path} failed: {result.error or result.stderr.strip()}")
        return result.ok

    def stop_all_mounts(self) -> int:
        """Stop every tracked mount."""
        stopped = sum(1 for handle in list(self.registry.mounts.values()) if handle.stop())
        if stopped:
            self.events.publish(events.MOUNT_EXITED, {"mountId": "all", "code": 0})
        return stopped

    # Jobs and state

    def run_job_now(self, job_id: str) -> bool:
        """Start a job immediately.

        Returns:
            False if the job doesn't exist
        """
        return self.scheduler.run_job_now(job_id) is not None

    def stop_job(self, job_id: str) -> bool:
        """Stop a running job's borg process."""
        return self.scheduler.stop_job(job_id)

    def save_state(self, partial: dict[str, Any]) -> AppData:
        """Persist new definitions; the scheduler sees them on its next tick."""
        data = self.db.save(partial)
        logger.info(f"State saved ({len(data.jobs)} jobs, {len(data.repos)} repos)")
        return data

    def list_jobs(self) -> list[dict[str, Any]]:
        """Jobs with their runtime status."""
        now = datetime.now()
        jobs = []
        for job in self.db.data.jobs:
            next_run = get_next_run(job, now)
            jobs.append(
                {
                    **job.to_json_dict(),
                    "running": self.scheduler.is_job_running(job.id),
                    "nextRun": next_run.isoformat() if next_run else None,
                }
            )
        return jobs

    @staticmethod
    def _describe(handle: ManagedProcess) -> dict[str, Any]:
        return {
            "id": handle.id,
            "pid": handle.pid,
            "kind": handle.kind.value,
            "startedAt": handle.started_at.isoformat(),
        }

    def status(self) -> dict[str, Any]:
        """Runtime status summary."""
        return {
            "running": self._running,
            "busy": self.registry.is_busy,
            "runningJobs": sorted(self.scheduler.running_job_ids),
            "processes": [self._describe(h) for h in self.registry.processes.values()],
            "mounts": [self._describe(h) for h in self.registry.mounts.values()],
            "jobs": len(self.db.data.jobs),
            "repos": len(self.db.data.repos),
        }

    # Lifecycle

    async def run(self) -> None:
        """Run the scheduler and API server until shutdown."""
        self._running = True
        logger.info("Supervisor started")

        from borgpilot.api.server import run_server

        api_task = asyncio.create_task(
            run_server(
                self,
                host=self.config.daemon.host,
                port=self.config.daemon.port,
            )
        )
        scheduler_task = asyncio.create_task(self.scheduler.run())

        try:
            await self._shutdown_event.wait()
        except Exception as e:
            logger.error(f"Supervisor error: {e}")
        finally:
            self.scheduler.stop()

            for task in [api_task, scheduler_task]:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

            await self._cleanup()
            self._running = False
            logger.info("Supervisor stopped")

    async def _cleanup(self) -> None:
        """Stop all tracked processes and let in-flight jobs report."""
        stopped = self.registry.stop_all()
        if stopped:
            logger.info(f"Stopped {stopped} processes on shutdown")
        try:
            await asyncio.wait_for(self.scheduler.wait_idle(), SHUTDOWN_GRACE)
        except asyncio.TimeoutError:
            logger.warning("Jobs did not finish reporting before shutdown")
        self.keep_awake.release()

    def shutdown(self) -> None:
        """Signal the supervisor to shut down."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    @property
    def is_running(self) -> bool:
        """Check if the supervisor is running."""
        return self._running

    # Static Methods

    @staticmethod
    def check_pid(pid: int) -> bool:
        """Check if a process with given PID is running."""
        try:
            return psutil.Process(pid).is_running()
        except psutil.NoSuchProcess:
            return False
