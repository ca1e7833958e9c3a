"""Run-to-completion command execution on top of the process registry."""

from __future__ import annotations

import asyncio
import codecs
import time
import uuid
from dataclasses import dataclass
from typing import Callable

from loguru import logger

from borgpilot.core.process_registry import ProcessRegistry


@dataclass
class CommandResult:
    """Outcome of a captured command.

    ``code`` is None when the process did not exit normally (spawn failure,
    timeout, stop or signal).
    """

    code: int | None
    stdout: str = ""
    stderr: str = ""
    error: str | None = None
    timed_out: bool = False
    signal: str | None = None

    @property
    def ok(self) -> bool:
        return self.code == 0 and self.error is None

    @property
    def output(self) -> str:
        """Combined stdout and stderr."""
        if self.stdout and self.stderr:
            return f"{self.stdout.rstrip()}\n{self.stderr}"
        return self.stdout or self.stderr


def new_process_id(prefix: str = "proc") -> str:
    """Generate a unique correlation id."""
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


class CommandExecutor:
    """Spawns commands and collects their output."""

    def __init__(self, registry: ProcessRegistry):
        self._registry = registry

    @property
    def registry(self) -> ProcessRegistry:
        return self._registry

    async def spawn_capture(
        self,
        binary: str,
        args: list[str],
        *,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        timeout: float | None = None,
        stdin: str | bytes | None = None,
        encoding: str = "utf-8",
        process_id: str | None = None,
        on_output: Callable[[str, str], None] | None = None,
    ) -> CommandResult:
        """Run a command to completion.

        Args:
            binary: Executable to run
            args: Arguments
            env: Full environment for the child (default: inherit)
            cwd: Working directory
            timeout: Seconds before the process tree is killed
            stdin: Data written to the child's stdin, then closed
            encoding: Output encoding; undecodable bytes are replaced
            process_id: Correlation id (generated if omitted)
            on_output: Called with ``(stream, text)`` as output arrives

        Returns:
            The command result. Never raises for process failures.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[CommandResult] = loop.create_future()
        process_id = process_id or new_process_id()

        stdout_decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        stderr_decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        stdout_parts: list[str] = []
        stderr_parts: list[str] = []

        def collect(stream: str, parts: list[str], decoder: codecs.IncrementalDecoder) -> Callable[[bytes], None]:
            def on_chunk(chunk: bytes) -> None:
                text = decoder.decode(chunk)
                if not text:
                    return
                parts.append(text)
                if on_output is not None:
                    on_output(stream, text)

            return on_chunk

        def resolve(
            code: int | None,
            error: str | None = None,
            timed_out: bool = False,
            sig: str | None = None,
        ) -> None:
            if future.done():
                return
            stdout_parts.append(stdout_decoder.decode(b"", final=True))
            stderr_parts.append(stderr_decoder.decode(b"", final=True))
            future.set_result(
                CommandResult(
                    code=code,
                    stdout="".join(stdout_parts),
                    stderr="".join(stderr_parts),
                    error=error,
                    timed_out=timed_out,
                    signal=sig,
                )
            )

        def on_exit(code: int | None, sig: str | None) -> None:
            resolve(code, sig=sig)

        def on_error(err: BaseException, timed_out: bool) -> None:
            resolve(None, error=str(err), timed_out=timed_out)

        stdin_data = stdin.encode(encoding) if isinstance(stdin, str) else stdin

        handle = await self._registry.spawn(
            self._registry.processes,
            process_id,
            binary,
            args,
            env=env,
            cwd=cwd,
            stdin_data=stdin_data,
            timeout=timeout,
            on_stdout=collect("stdout", stdout_parts, stdout_decoder),
            on_stderr=collect("stderr", stderr_parts, stderr_decoder),
            on_exit=on_exit,
            on_error=on_error,
        )

        try:
            return await future
        except asyncio.CancelledError:
            logger.debug(f"Capture of '{process_id}' cancelled, stopping process")
            handle.stop()
            raise
