"""Supervised execution of external commands.

Every child runs in its own process group so that termination reaches any
helpers it spawned (git forks ``ssh`` and ``git-remote-https``). A call always
resolves: natural exit, output overflow, timeout and cancellation all end with
the child reaped and removed from the supervised set.
"""
from __future__ import annotations

import asyncio
import atexit
import logging
import os
import signal
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from promptly.git.urls import redact_git_url

logger = logging.getLogger("promptly.git")

TERMINATE_GRACE_SECONDS = 5.0
DEFAULT_MAX_OUTPUT_BYTES = 10 * 1024 * 1024
_READ_CHUNK_BYTES = 64 * 1024
# Bound on waiting for pipes to close once the child itself has exited.
_STREAM_DRAIN_SECONDS = 1.0


@dataclass
class CommandResult:
    argv: list[str]
    stdout: str
    stderr: str


def _display(argv: Sequence[str]) -> str:
    return " ".join(redact_git_url(part) for part in argv)


def _decode(data: bytes | bytearray) -> str:
    return bytes(data).decode("utf-8", errors="replace")


class CommandError(Exception):
    """A supervised command did not complete successfully."""

    def __init__(
        self,
        message: str,
        argv: Sequence[str],
        exit_code: Optional[int] = None,
        signal_name: Optional[str] = None,
        stdout: str = "",
        stderr: str = "",
    ):
        super().__init__(message)
        self.argv = list(argv)
        self.exit_code = exit_code
        self.signal_name = signal_name
        self.stdout = stdout
        self.stderr = stderr

    @property
    def timed_out(self) -> bool:
        return False


class CommandTimeoutError(CommandError):
    def __init__(self, argv: Sequence[str], timeout: float, **kwargs):
        super().__init__(f"{_display(argv)} timed out after {timeout:g}s", argv, **kwargs)
        self.timeout = timeout

    @property
    def timed_out(self) -> bool:
        return True


class OutputLimitExceededError(CommandError):
    def __init__(self, argv: Sequence[str], stream: str, limit: int, **kwargs):
        super().__init__(
            f"{_display(argv)} output exceeded {limit} bytes on {stream}", argv, **kwargs
        )
        self.stream = stream
        self.limit = limit


class ProcessSupervisor:
    """Runs external commands to completion and tracks the ones in flight."""

    def __init__(self, grace_seconds: float = TERMINATE_GRACE_SECONDS):
        self.grace_seconds = grace_seconds
        self._active: set[asyncio.subprocess.Process] = set()
        self._hook_installed = False

    @property
    def active_count(self) -> int:
        return len(self._active)

    def install_shutdown_hook(self) -> None:
        """Kill surviving children at interpreter exit. Safe to call repeatedly."""
        if self._hook_installed:
            return
        self._hook_installed = True
        atexit.register(self.shutdown)

    def shutdown(self) -> int:
        """Forcefully terminate every supervised child; return how many were signalled."""
        survivors = [p for p in self._active if p.returncode is None]
        if survivors:
            logger.warning("Killing %d supervised process(es) on shutdown", len(survivors))
        for process in survivors:
            self._signal(process, signal.SIGKILL)
        self._active.clear()
        return len(survivors)

    async def run(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        capture_output: bool = True,
    ) -> CommandResult:
        argv = [command, *args]
        pipe = asyncio.subprocess.PIPE if capture_output else None
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                env=dict(env) if env is not None else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=pipe,
                stderr=pipe,
                start_new_session=True,
            )
        except OSError as exc:
            raise CommandError(f"{_display(argv)} failed to start: {exc}", argv) from exc

        self._active.add(process)
        stdout = bytearray()
        stderr = bytearray()
        overflow: list[str] = []
        timed_out = False
        wait_task = asyncio.ensure_future(process.wait())
        readers: list[asyncio.Task] = []

        async def pump(stream: asyncio.StreamReader, buffer: bytearray, name: str) -> None:
            while True:
                chunk = await stream.read(_READ_CHUNK_BYTES)
                if not chunk:
                    return
                if len(buffer) + len(chunk) > max_output_bytes:
                    overflow.append(name)
                    self._signal(process, signal.SIGKILL)
                    return
                buffer.extend(chunk)

        if capture_output:
            readers.append(asyncio.ensure_future(pump(process.stdout, stdout, "stdout")))
            readers.append(asyncio.ensure_future(pump(process.stderr, stderr, "stderr")))

        try:
            try:
                await asyncio.wait_for(asyncio.shield(wait_task), timeout)
            except asyncio.TimeoutError:
                timed_out = True
                logger.warning("%s exceeded %ss, terminating", _display(argv), timeout)
                await self._terminate(process, wait_task)
            await self._drain(readers)
        finally:
            if process.returncode is None:
                self._signal(process, signal.SIGKILL)
                await asyncio.shield(wait_task)
            for reader in readers:
                if not reader.done():
                    reader.cancel()
            self._active.discard(process)

        returncode = process.returncode
        signal_name = None
        if returncode is not None and returncode < 0:
            try:
                signal_name = signal.Signals(-returncode).name
            except ValueError:
                signal_name = str(-returncode)
        details = dict(
            exit_code=returncode,
            signal_name=signal_name,
            stdout=_decode(stdout),
            stderr=_decode(stderr),
        )

        if overflow:
            raise OutputLimitExceededError(argv, overflow[0], max_output_bytes, **details)
        if timed_out:
            raise CommandTimeoutError(argv, timeout, **details)
        if returncode != 0:
            message = f"{_display(argv)} exited with code {returncode}"
            if signal_name:
                message += f" (signal {signal_name})"
            raise CommandError(message, argv, **details)
        return CommandResult(argv=argv, stdout=details["stdout"], stderr=details["stderr"])

    async def _terminate(self, process: asyncio.subprocess.Process, wait_task: asyncio.Future) -> None:
        self._signal(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(asyncio.shield(wait_task), self.grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("pid %s ignored SIGTERM for %ss, killing", process.pid, self.grace_seconds)
            self._signal(process, signal.SIGKILL)
            await asyncio.shield(wait_task)

    async def _drain(self, readers: list[asyncio.Task]) -> None:
        if not readers:
            return
        _, pending = await asyncio.wait(readers, timeout=_STREAM_DRAIN_SECONDS)
        for reader in pending:
            reader.cancel()

    @staticmethod
    def _signal(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
        if process.returncode is not None:
            return
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            try:
                process.send_signal(sig)
            except ProcessLookupError:
                pass
