"""Lifecycle management for the stdio Kiwi TCMS MCP worker.

The supervisor keeps exactly one worker process alive, writes framed
messages to its stdin, and hands every decoded stdout message to its
listener. When the worker exits, the listener is told first and a
respawn is scheduled afterwards.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Coroutine
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from kiwi_tcms_mcp.config import Settings
from kiwi_tcms_mcp.errors import BridgeError, WorkerUnavailable
from kiwi_tcms_mcp.framing import FramedReader, LineFramer

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024

# Bounded wait for stdout to drain after the worker exits
DRAIN_TIMEOUT_SECONDS = 1.0

# Interval for noticing an exit while the worker's pipes are still held open
EXIT_POLL_SECONDS = 0.1


class WorkerState(str, Enum):
    """Worker lifecycle states."""

    STARTING = "starting"  # Process spawned, readiness not confirmed
    READY = "ready"  # Accepting requests
    DEAD = "dead"  # No live process


class WorkerListener(Protocol):
    """Receiver of worker events."""

    def on_worker_message(self, message: dict[str, Any]) -> None: ...

    def on_worker_exit(self, returncode: int | None) -> None: ...

    async def check_worker_ready(self) -> None: ...


@dataclass(frozen=True)
class RestartPolicy:
    """Delay before respawning a dead worker."""

    delay_seconds: float = 5.0
    backoff: str = "fixed"
    max_delay_seconds: float = 60.0

    @classmethod
    def from_settings(cls, settings: Settings) -> RestartPolicy:
        return cls(
            delay_seconds=settings.restart_delay_seconds,
            backoff=settings.restart_backoff,
            max_delay_seconds=settings.restart_max_delay_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay for the given consecutive restart attempt (1-based)."""
        if self.backoff == "exponential":
            delay = self.delay_seconds * 2 ** max(attempt - 1, 0)
            return min(delay, self.max_delay_seconds)
        return self.delay_seconds


def encode_message(message: dict[str, Any] | str | bytes) -> bytes:
    """Serialize a message as a single newline-terminated line."""
    if isinstance(message, dict):
        message = json.dumps(message, separators=(",", ":"), ensure_ascii=False)
    if isinstance(message, str):
        message = message.encode("utf-8")
    if b"\n" in message.rstrip(b"\n"):
        raise ValueError("Message must not contain line breaks")
    return message.rstrip(b"\n") + b"\n"


class WorkerSupervisor:
    """Owns the single worker process and its stdio streams."""

    def __init__(
        self,
        settings: Settings,
        listener: WorkerListener | None = None,
        restart_policy: RestartPolicy | None = None,
    ) -> None:
        """Initialize the supervisor.

        Args:
            settings: Application settings (worker command, timeouts).
            listener: Receiver of messages, exits and readiness checks.
            restart_policy: Respawn delays; defaults to the configured policy.
        """
        self._settings = settings
        self.listener = listener
        self._restart_policy = restart_policy or RestartPolicy.from_settings(settings)
        self._state = WorkerState.DEAD
        self._proc: asyncio.subprocess.Process | None = None
        self._env: dict[str, str] | None = None
        self._write_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()
        self._ready_task: asyncio.Task | None = None
        self._restart_task: asyncio.Task | None = None
        self._exit_task: asyncio.Task | None = None
        self._stopping = False
        self._restart_attempts = 0
        self._restarts = 0
        self._started_at: float | None = None

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is WorkerState.READY

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def restarts(self) -> int:
        """Number of respawns since start()."""
        return self._restarts

    def status(self) -> dict[str, Any]:
        """Snapshot of the worker for health reporting."""
        uptime = None
        if self._started_at is not None and self._state is not WorkerState.DEAD:
            uptime = round(time.monotonic() - self._started_at, 3)
        return {
            "state": self._state.value,
            "pid": self.pid,
            "restarts": self._restarts,
            "uptime_seconds": uptime,
        }

    async def start(self) -> None:
        """Validate the worker environment and spawn the worker.

        Spawn failures are logged and retried; they do not raise.

        Raises:
            ConfigurationMissing: If required worker configuration is absent.
        """
        self._env = self._settings.worker_env()
        self._stopping = False
        await self._spawn()

    async def stop(self) -> None:
        """Stop the worker and disable restarts."""
        self._stopping = True
        for task in (self._restart_task, self._ready_task):
            if task is not None and not task.done():
                task.cancel()

        proc = self._proc
        if proc is not None and proc.returncode is None:
            logger.info("Stopping worker (pid %d)", proc.pid)
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(
                    _wait_for_exit(proc), timeout=self._settings.stop_timeout_seconds
                )
            except asyncio.TimeoutError:
                logger.warning("Worker did not exit after SIGTERM, killing (pid %d)", proc.pid)
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await _wait_for_exit(proc)

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._state = WorkerState.DEAD

    async def send(self, message: dict[str, Any] | str | bytes, allow_starting: bool = False) -> None:
        """Write one message to the worker's stdin.

        Args:
            message: Message object or pre-serialized single-line JSON.
            allow_starting: Permit writing before readiness is confirmed
                (used by the readiness probe).

        Raises:
            WorkerUnavailable: If no worker can accept the message.
        """
        data = encode_message(message)
        proc = self._writable_process(allow_starting)

        async with self._write_lock:
            # The worker may have died while we waited for the lock
            if proc is not self._proc or proc.returncode is not None:
                raise WorkerUnavailable("Kiwi TCMS MCP worker exited")
            try:
                proc.stdin.write(data)
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise WorkerUnavailable(f"Worker input stream closed: {e}") from e

    def _writable_process(self, allow_starting: bool) -> asyncio.subprocess.Process:
        accepted = (WorkerState.READY, WorkerState.STARTING) if allow_starting else (WorkerState.READY,)
        proc = self._proc
        if proc is None or self._state not in accepted or proc.returncode is not None:
            if self._state is WorkerState.STARTING:
                raise WorkerUnavailable("MCP server is initializing")
            raise WorkerUnavailable("Kiwi TCMS MCP worker is not running")
        return proc

    def _spawn_task(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _spawn(self) -> None:
        if self._state is not WorkerState.DEAD or self._stopping:
            return
        self._state = WorkerState.STARTING
        command = self._settings.worker_command
        logger.info("Starting Kiwi TCMS MCP worker: %s", " ".join(command))

        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env,
                cwd=self._settings.worker_cwd,
            )
        except OSError as e:
            logger.error("Failed to start Kiwi TCMS MCP worker: %s", e)
            self._state = WorkerState.DEAD
            self._schedule_restart()
            return

        self._proc = proc
        self._started_at = time.monotonic()
        logger.info("Worker started", extra={"pid": proc.pid})

        readers = [
            self._spawn_task(self._read_stdout(proc)),
            self._spawn_task(self._read_stderr(proc)),
        ]
        self._exit_task = self._spawn_task(self._watch_exit(proc, readers))
        self._ready_task = self._spawn_task(self._await_ready(proc))

    async def _await_ready(self, proc: asyncio.subprocess.Process) -> None:
        try:
            if self._settings.ready_mode == "delay" or self.listener is None:
                await asyncio.sleep(self._settings.warmup_seconds)
            else:
                await asyncio.wait_for(
                    self.listener.check_worker_ready(),
                    timeout=self._settings.ready_timeout_seconds,
                )
        except (BridgeError, asyncio.TimeoutError) as e:
            if proc is self._proc and proc.returncode is None:
                logger.error("Worker failed readiness check, killing it: %s", e)
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
            return

        if proc is self._proc and self._state is WorkerState.STARTING:
            self._state = WorkerState.READY
            self._restart_attempts = 0
            logger.info("Kiwi TCMS MCP worker ready (pid %d)", proc.pid)

    async def _read_stdout(self, proc: asyncio.subprocess.Process) -> None:
        reader = FramedReader()
        while True:
            chunk = await proc.stdout.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            for message in reader.feed(chunk):
                self._dispatch(message)
        reader.flush()

    def _dispatch(self, message: dict[str, Any]) -> None:
        if self.listener is None:
            return
        try:
            self.listener.on_worker_message(message)
        except Exception:
            logger.exception("Listener failed to handle worker message")

    async def _read_stderr(self, proc: asyncio.subprocess.Process) -> None:
        framer = LineFramer()
        while True:
            chunk = await proc.stderr.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            for line in framer.feed(chunk):
                _log_worker_stderr(line)
        tail = framer.flush()
        if tail:
            _log_worker_stderr(tail)

    async def _watch_exit(
        self, proc: asyncio.subprocess.Process, readers: list[asyncio.Task]
    ) -> None:
        returncode = await _wait_for_exit(proc)
        # Not ready while draining, even though the readers are still running
        self._state = WorkerState.DEAD

        # Let responses written just before exit reach their callers
        _, pending = await asyncio.wait(readers, timeout=DRAIN_TIMEOUT_SECONDS)
        if pending:
            logger.warning(
                "Worker output still open %.1fs after exit, closing pipes", DRAIN_TIMEOUT_SECONDS,
                extra={"pid": proc.pid},
            )
            for task in pending:
                task.cancel()
            # A surviving child process may still hold the write ends
            _close_pipes(proc)
        if proc.stdin is not None and not proc.stdin.is_closing():
            proc.stdin.close()

        if self._ready_task is not None and not self._ready_task.done():
            self._ready_task.cancel()
        if self._proc is proc:
            self._proc = None

        if self._stopping:
            logger.info("Kiwi TCMS MCP worker exited with code %s", returncode)
        else:
            logger.warning(
                "Kiwi TCMS MCP worker exited with code %s", returncode,
                extra={"pid": proc.pid, "returncode": returncode},
            )

        if self.listener is not None:
            try:
                self.listener.on_worker_exit(returncode)
            except Exception:
                logger.exception("Listener failed to handle worker exit")

        self._schedule_restart()

    def _schedule_restart(self) -> None:
        if self._stopping:
            return
        self._restart_attempts += 1
        delay = self._restart_policy.delay_for(self._restart_attempts)
        logger.info(
            "Restarting worker in %.1fs (attempt %d)", delay, self._restart_attempts
        )
        self._restart_task = self._spawn_task(self._restart_after(delay))

    async def _restart_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._stopping:
            return
        self._restarts += 1
        await self._spawn()


def _log_worker_stderr(line: str) -> None:
    text = line.strip()
    if not text:
        return
    if "ERROR" in text or "WARN" in text:
        logger.warning("Kiwi TCMS MCP: %s", text)
    else:
        logger.info("Kiwi TCMS MCP: %s", text)


def _close_pipes(proc: asyncio.subprocess.Process) -> None:
    # asyncio.subprocess.Process exposes no public way to release its pipe
    # transports; the subprocess transport owns them.
    transport = getattr(proc, "_transport", None)
    if transport is not None:
        transport.close()


async def _wait_for_exit(proc: asyncio.subprocess.Process) -> int:
    """Wait for the worker process itself to exit.

    Process.wait() also waits for the stdio pipes to close, which a child
    of the worker can hold open long after the worker is gone.
    """
    waiter = asyncio.ensure_future(proc.wait())
    try:
        while proc.returncode is None:
            await asyncio.wait({waiter}, timeout=EXIT_POLL_SECONDS)
    finally:
        if not waiter.done():
            waiter.cancel()
    return proc.returncode
