"""Registry of live child processes for BorgPilot.

Every external process (borg runs, probes, mounts) is spawned through a
``ProcessRegistry``. Entries live in named tables keyed by a correlation id;
an entry is removed exactly once, by whichever of exit, error, timeout or
stop happens first. The registry is "busy" while any table holds an entry.
"""

from __future__ import annotations

import asyncio
import signal
import subprocess
import sys
from datetime import datetime
from enum import Enum
from threading import Lock
from typing import Any, Callable

import psutil
from loguru import logger

# Read size for stdout/stderr pumps
CHUNK_SIZE = 64 * 1024

OutputCallback = Callable[[bytes], None]
ExitCallback = Callable[[int | None, str | None], None]
ErrorCallback = Callable[[BaseException, bool], None]


class ProcessKind(str, Enum):
    """What a tracked process is used for."""

    PROCESS = "process"
    MOUNT = "mount"


class ProcessTimeoutError(Exception):
    """A process exceeded its deadline and was killed."""

    def __init__(self, process_id: str, timeout: float):
        self.process_id = process_id
        self.timeout = timeout
        super().__init__(f"Process '{process_id}' timed out after {timeout:g}s")


class ProcessStoppedError(Exception):
    """A process was stopped on request before it exited."""

    def __init__(self, process_id: str):
        self.process_id = process_id
        super().__init__(f"Process '{process_id}' was stopped")


class ProcessConflictError(Exception):
    """A process with the same correlation id is already tracked."""

    def __init__(self, process_id: str):
        self.process_id = process_id
        super().__init__(f"Process id '{process_id}' is already in use")


class CompletionLatch:
    """One-shot latch: the first ``claim()`` wins, later ones return False."""

    def __init__(self):
        self._lock = Lock()
        self._claimed = False

    def claim(self) -> bool:
        with self._lock:
            if self._claimed:
                return False
            self._claimed = True
            return True

    @property
    def claimed(self) -> bool:
        return self._claimed


def _safe_call(callback: Callable[..., Any] | None, *args: Any) -> None:
    """Invoke an observer callback, logging instead of propagating failures."""
    if callback is None:
        return
    try:
        callback(*args)
    except Exception as e:
        logger.warning(f"Process callback {getattr(callback, '__name__', callback)!r} failed: {e}")


def split_returncode(returncode: int | None) -> tuple[int | None, str | None]:
    """Split an asyncio return code into ``(exit_code, signal_name)``.

    On POSIX a negative return code means the process was killed by a signal.
    """
    if returncode is None or returncode >= 0 or sys.platform == "win32":
        return returncode, None
    try:
        return None, signal.Signals(-returncode).name
    except ValueError:
        return None, f"SIG{-returncode}"


def kill_process_tree(process: Any) -> None:
    """Kill a process and all of its descendants.

    Descendants are collected before the parent dies so that re-parented
    grandchildren (e.g. ssh spawned by borg) are not left behind.
    """
    children: list[psutil.Process] = []
    try:
        children = psutil.Process(process.pid).children(recursive=True)
    except psutil.Error:
        pass

    try:
        process.kill()
    except ProcessLookupError:
        pass

    for child in children:
        try:
            child.kill()
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied as e:
            logger.warning(f"Could not kill child process {child.pid}: {e}")


class ManagedProcess:
    """Handle to a tracked process."""

    def __init__(
        self,
        registry: ProcessRegistry,
        table: dict[str, ManagedProcess],
        process_id: str,
        process: Any,
        kind: ProcessKind,
        timeout: float | None = None,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
        on_exit: ExitCallback | None = None,
        on_error: ErrorCallback | None = None,
    ):
        self.id = process_id
        self.process = process
        self.kind = kind
        self.timeout = timeout
        self.started_at = datetime.now()

        self._registry = registry
        self._table = table
        self._on_stdout = on_stdout
        self._on_stderr = on_stderr
        self._on_exit = on_exit
        self._on_error = on_error

        self._latch = CompletionLatch()
        self._done = asyncio.Event()
        self._timer: asyncio.TimerHandle | None = None
        self._monitor: asyncio.Task[None] | None = None
        self._stdin_task: asyncio.Task[None] | None = None

    @property
    def pid(self) -> int | None:
        return getattr(self.process, "pid", None)

    @property
    def finished(self) -> bool:
        """Whether the entry has completed (exit, error, timeout or stop)."""
        return self._latch.claimed

    def stop(self) -> bool:
        """Kill the process tree and remove the entry.

        Returns:
            True if this call stopped a live entry, False if it had already
            completed
        """
        if not self._latch.claim():
            return False
        logger.info(f"Stopping process '{self.id}' (PID {self.pid})")
        kill_process_tree(self.process)
        self._release()
        _safe_call(self._on_error, ProcessStoppedError(self.id), False)
        return True

    async def wait(self) -> None:
        """Wait until the entry has completed."""
        await self._done.wait()

    def _start(self, loop: asyncio.AbstractEventLoop) -> None:
        if self.timeout is not None and self.timeout > 0:
            self._timer = loop.call_later(self.timeout, self._on_timeout)
        self._monitor = loop.create_task(self._watch())

    def _release(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._table.get(self.id) is self:
            del self._table[self.id]
        self._registry._update_busy()
        self._done.set()

    def _on_timeout(self) -> None:
        if not self._latch.claim():
            return
        logger.warning(f"Process '{self.id}' timed out after {self.timeout:g}s, killing")
        kill_process_tree(self.process)
        self._release()
        _safe_call(self._on_error, ProcessTimeoutError(self.id, self.timeout), True)

    async def _pump(self, stream: asyncio.StreamReader | None, callback: OutputCallback | None) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(CHUNK_SIZE)
            if not chunk:
                break
            if not self._latch.claimed:
                _safe_call(callback, chunk)

    async def _watch(self) -> None:
        try:
            await asyncio.gather(
                self._pump(self.process.stdout, self._on_stdout),
                self._pump(self.process.stderr, self._on_stderr),
            )
            returncode = await self.process.wait()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._latch.claim():
                logger.error(f"Process '{self.id}' failed: {e}")
                self._release()
                _safe_call(self._on_error, e, False)
            return

        if not self._latch.claim():
            return
        code, sig = split_returncode(returncode)
        logger.debug(f"Process '{self.id}' exited (code={code}, signal={sig})")
        self._release()
        _safe_call(self._on_exit, code, sig)


class _NullProcessHandle:
    """Returned when registration was not possible. Does nothing."""

    id = ""
    pid = None
    kind = ProcessKind.PROCESS
    finished = True

    def stop(self) -> bool:
        return False

    async def wait(self) -> None:
        return None


NULL_PROCESS_HANDLE = _NullProcessHandle()


async def _feed_stdin(process: Any, data: bytes) -> None:
    try:
        process.stdin.write(data)
        await process.stdin.drain()
    except (BrokenPipeError, ConnectionResetError) as e:
        logger.debug(f"Could not write stdin to PID {process.pid}: {e}")
    finally:
        try:
            process.stdin.close()
        except (BrokenPipeError, ConnectionResetError):
            pass


class ProcessRegistry:
    """Tracks live child processes in named tables."""

    def __init__(self, on_busy_change: Callable[[bool], None] | None = None):
        """Initialize the registry.

        Args:
            on_busy_change: Called with the new value whenever the busy
                predicate flips
        """
        self.processes: dict[str, ManagedProcess] = {}
        self.mounts: dict[str, ManagedProcess] = {}
        self._on_busy_change = on_busy_change
        self._busy = False

    @property
    def tables(self) -> tuple[dict[str, ManagedProcess], ...]:
        return (self.processes, self.mounts)

    @property
    def is_busy(self) -> bool:
        """Whether any process or mount is tracked."""
        return any(self.tables)

    def _update_busy(self) -> None:
        busy = self.is_busy
        if busy == self._busy:
            return
        self._busy = busy
        logger.debug(f"Registry busy state changed: {busy}")
        _safe_call(self._on_busy_change, busy)

    def get(self, process_id: str) -> ManagedProcess | None:
        """Find a tracked entry in any table."""
        for table in self.tables:
            if process_id in table:
                return table[process_id]
        return None

    def register(
        self,
        table: dict[str, ManagedProcess] | None,
        process_id: str,
        process: Any,
        kind: ProcessKind = ProcessKind.PROCESS,
        timeout: float | None = None,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
        on_exit: ExitCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> ManagedProcess | _NullProcessHandle:
        """Start tracking an already spawned asyncio process.

        Must be called from within the running event loop.

        Args:
            table: Table to insert into (``processes`` or ``mounts``)
            process_id: Correlation id
            process: ``asyncio.subprocess.Process``
            kind: What the process is used for
            timeout: Seconds until the process tree is killed
            on_stdout: Called with each stdout chunk, in arrival order
            on_stderr: Called with each stderr chunk, in arrival order
            on_exit: Called with ``(code, signal)`` on a normal exit
            on_error: Called with ``(error, timed_out)`` on failure, timeout
                or stop

        Returns:
            Handle for the tracked process, or a no-op handle if any
            argument was missing or the id is already tracked (the new
            process is then killed and ``on_error`` gets a
            ``ProcessConflictError``)
        """
        if table is None or not process_id or process is None:
            logger.warning("Refusing to register process with missing table, id or process")
            return NULL_PROCESS_HANDLE

        if self.get(process_id) is not None:
            logger.warning(f"Process id '{process_id}' already tracked, killing the new process")
            kill_process_tree(process)
            _safe_call(on_error, ProcessConflictError(process_id), False)
            return NULL_PROCESS_HANDLE

        handle = ManagedProcess(
            self,
            table,
            process_id,
            process,
            kind,
            timeout=timeout,
            on_stdout=on_stdout,
            on_stderr=on_stderr,
            on_exit=on_exit,
            on_error=on_error,
        )
        table[process_id] = handle
        self._update_busy()
        handle._start(asyncio.get_running_loop())
        return handle

    async def spawn(
        self,
        table: dict[str, ManagedProcess] | None,
        process_id: str,
        binary: str,
        args: list[str],
        *,
        kind: ProcessKind = ProcessKind.PROCESS,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        stdin_data: bytes | None = None,
        timeout: float | None = None,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
        on_exit: ExitCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> ManagedProcess | _NullProcessHandle:
        """Spawn a process and register it.

        A spawn failure, including an id that is already tracked, is
        reported through ``on_error(err, False)``.
        """
        if table is None or not process_id:
            logger.warning("Refusing to spawn process with missing table or id")
            return NULL_PROCESS_HANDLE

        if self.get(process_id) is not None:
            logger.warning(f"Refusing to spawn '{process_id}': id already tracked")
            _safe_call(on_error, ProcessConflictError(process_id), False)
            return NULL_PROCESS_HANDLE

        kwargs: dict[str, Any] = {}
        if sys.platform == "win32":
            kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW
        else:
            # Own process group, so terminal signals don't reach borg directly
            kwargs["start_new_session"] = True

        try:
            process = await asyncio.create_subprocess_exec(
                binary,
                *args,
                stdin=asyncio.subprocess.PIPE if stdin_data is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=cwd,
                **kwargs,
            )
        except (OSError, ValueError, TypeError) as e:
            # ValueError: NUL byte in argv, env or cwd
            logger.error(f"Failed to spawn '{binary}' for '{process_id}': {e}")
            _safe_call(on_error, e, False)
            return NULL_PROCESS_HANDLE

        logger.debug(f"Spawned '{process_id}' (PID {process.pid}): {binary} {' '.join(args)}")

        handle = self.register(
            table,
            process_id,
            process,
            kind,
            timeout=timeout,
            on_stdout=on_stdout,
            on_stderr=on_stderr,
            on_exit=on_exit,
            on_error=on_error,
        )
        if stdin_data is not None and isinstance(handle, ManagedProcess):
            handle._stdin_task = asyncio.create_task(_feed_stdin(process, stdin_data))
        return handle

    def stop(self, process_id: str) -> bool:
        """Stop a tracked entry by id.

        Returns:
            True if a live entry existed and was stopped
        """
        handle = self.get(process_id)
        if handle is None:
            return False
        return handle.stop()

    def stop_all(self) -> int:
        """Stop every tracked process and mount.

        Returns:
            Number of entries stopped
        """
        stopped = 0
        for table in self.tables:
            for handle in list(table.values()):
                if handle.stop():
                    stopped += 1
        if stopped:
            logger.info(f"Stopped {stopped} tracked processes")
        return stopped
