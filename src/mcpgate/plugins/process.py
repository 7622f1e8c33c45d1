"""Child process control for plugins under validation.

Plugins are untrusted: they run in their own session with a minimal
environment, their stderr is drained into a bounded tail, and teardown kills
the whole process tree.
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path
from typing import Any, TypeVar

import psutil

from ..core.logging import get_logger, redact_text

logger = get_logger(__name__)

T = TypeVar("T")

# Environment variables passed through from the gateway to a plugin
SAFE_ENV_KEYS = ("PATH", "LANG", "LC_ALL", "SYSTEMROOT", "TZ")
STDERR_TAIL_BYTES = 4096
READ_OUTPUT_BYTES = 16 * 1024
WAIT_AFTER_KILL_SECONDS = 5.0
STDERR_DRAIN_SECONDS = 1.0


def build_plugin_env(workdir: Path, extra_keys: Sequence[str] = ()) -> dict[str, str]:
    """Minimal environment for a plugin. Gateway secrets are never inherited."""
    env = {key: os.environ[key] for key in (*SAFE_ENV_KEYS, *extra_keys) if key in os.environ}
    env.setdefault("PATH", os.defpath)
    env["HOME"] = str(workdir)
    env["TMPDIR"] = str(workdir)
    env["NODE_ENV"] = "production"
    env["npm_config_cache"] = str(workdir / ".npm")
    return env


async def run_uncancellable(cleanup: Callable[[], Awaitable[T]]) -> T:
    """Run ``cleanup`` to completion even if the caller is cancelled meanwhile.

    A cancellation that arrives during cleanup is re-raised once cleanup has
    finished.
    """
    task = asyncio.ensure_future(cleanup())
    cancelled = False
    while True:
        try:
            result = await asyncio.shield(task)
            break
        except asyncio.CancelledError:
            if task.done():
                raise
            cancelled = True
    if cancelled:
        raise asyncio.CancelledError()
    return result


class PluginProcess:
    """A plugin child process with piped stdio.

    Use as an async context manager; leaving the block always kills the
    process tree.
    """

    def __init__(
        self,
        argv: Sequence[str],
        *,
        cwd: Path,
        env: dict[str, str],
        kill_grace_seconds: float = 2.0,
        name: str = "plugin",
    ):
        if not argv:
            raise ValueError("argv must not be empty")
        self.argv = list(argv)
        self.cwd = cwd
        self.env = env
        self.kill_grace_seconds = kill_grace_seconds
        self.name = name
        self._process: asyncio.subprocess.Process | None = None
        self._stderr_tail: deque[bytes] = deque()
        self._stderr_size = 0
        self._stderr_task: asyncio.Task | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    @property
    def stdin(self) -> asyncio.StreamWriter:
        if self._process is None or self._process.stdin is None:
            raise RuntimeError("process not started")
        return self._process.stdin

    @property
    def stdout(self) -> asyncio.StreamReader:
        if self._process is None or self._process.stdout is None:
            raise RuntimeError("process not started")
        return self._process.stdout

    async def wait(self) -> int:
        if self._process is None:
            raise RuntimeError("process not started")
        return await self._process.wait()

    def stderr_tail(self) -> str:
        """Last bytes the plugin wrote to stderr, decoded and redacted."""
        return redact_text(b"".join(self._stderr_tail).decode("utf-8", errors="replace")).strip()

    async def start(self) -> None:
        kwargs: dict[str, Any] = {
            "stdin": asyncio.subprocess.PIPE,
            "stdout": asyncio.subprocess.PIPE,
            "stderr": asyncio.subprocess.PIPE,
            "cwd": str(self.cwd),
            "env": self.env,
        }
        if sys.platform != "win32":
            # New session so the whole group can be signalled
            kwargs["start_new_session"] = True

        self._process = await asyncio.create_subprocess_exec(*self.argv, **kwargs)
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        logger.debug("Plugin %r spawned (PID %d)", self.name, self._process.pid)

    async def _drain_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        stream = self._process.stderr
        while True:
            chunk = await stream.read(1024)
            if not chunk:
                return
            self._stderr_tail.append(chunk)
            self._stderr_size += len(chunk)
            while self._stderr_size > STDERR_TAIL_BYTES and len(self._stderr_tail) > 1:
                self._stderr_size -= len(self._stderr_tail.popleft())

    def _descendants(self) -> list[psutil.Process]:
        if self._process is None:
            return []
        try:
            return psutil.Process(self._process.pid).children(recursive=True)
        except psutil.Error:
            return []

    def _signal_group(self, sig: int) -> None:
        assert self._process is not None
        try:
            # start_new_session makes the child its own process group leader
            os.killpg(self._process.pid, sig)
        except ProcessLookupError:
            pass  # Group already gone
        except PermissionError:
            try:
                self._process.send_signal(sig)
            except ProcessLookupError:
                pass

    async def terminate(self) -> None:
        """Kill the process and all of its descendants, then reap it."""
        if self._process is None:
            return

        # Snapshot before the parent dies and children get reparented
        descendants = self._descendants()

        if self._process.returncode is None:
            if sys.platform == "win32":
                self._process.terminate()
            else:
                self._signal_group(signal.SIGTERM)
            try:
                await asyncio.wait_for(self._process.wait(), timeout=self.kill_grace_seconds)
            except asyncio.TimeoutError:
                if sys.platform == "win32":
                    self._process.kill()

        if sys.platform != "win32":
            # Sweep anything left in the group, including orphans of an exited parent
            self._signal_group(signal.SIGKILL)
        for child in descendants:
            try:
                child.kill()
            except psutil.Error:
                pass
        psutil.wait_procs(descendants, timeout=0)

        try:
            await asyncio.wait_for(self._process.wait(), timeout=WAIT_AFTER_KILL_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("Plugin %r: process did not exit after kill", self.name)

        if self._stderr_task is not None:
            # The tree is dead, so stderr reaches EOF shortly; wait_for cancels the drain otherwise
            try:
                await asyncio.wait_for(self._stderr_task, timeout=STDERR_DRAIN_SECONDS)
            except asyncio.TimeoutError:
                pass
            except Exception as e:
                logger.debug("Plugin %r: stderr drain ended with %s", self.name, type(e).__name__)
            self._stderr_task = None

        if self._process.stdin is not None and not self._process.stdin.is_closing():
            self._process.stdin.close()
        logger.debug("Plugin %r terminated (exit code %s)", self.name, self._process.returncode)

    async def __aenter__(self) -> PluginProcess:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await run_uncancellable(self.terminate)


class CommandResult:
    """Exit status and the tail of combined output of a bounded command."""

    def __init__(self, returncode: int, output: str):
        self.returncode = returncode
        self.output = output

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_command(
    argv: Sequence[str],
    *,
    cwd: Path,
    env: dict[str, str],
    timeout: float,
    kill_grace_seconds: float = 2.0,
    name: str = "command",
) -> CommandResult:
    """Run a command to completion within ``timeout`` seconds.

    The process tree is killed on timeout and on cancellation.

    Raises:
        asyncio.TimeoutError: The command did not finish in time.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    tail: deque[bytes] = deque(maxlen=64)

    async with PluginProcess(argv, cwd=cwd, env=env, kill_grace_seconds=kill_grace_seconds, name=name) as proc:
        proc.stdin.close()
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise asyncio.TimeoutError()
            chunk = await asyncio.wait_for(proc.stdout.read(READ_OUTPUT_BYTES), timeout=remaining)
            if not chunk:
                break
            tail.append(chunk)
        returncode = await asyncio.wait_for(proc.wait(), timeout=max(deadline - loop.time(), 0.001))
        output = b"".join(tail).decode("utf-8", errors="replace")

    # Read after teardown so the stderr drain has reached EOF
    stderr = proc.stderr_tail()
    combined = "\n".join(part for part in (output.strip(), stderr) if part)
    return CommandResult(returncode, redact_text(combined[-STDERR_TAIL_BYTES:]))
