"""Agent process supervision.

``ProcessSupervisor`` starts agent CLIs with asyncio subprocesses,
pumps their stdout through a ``ProtocolDecoder`` and reports every
decoded event plus exactly one terminal ``ProcessExit`` per process.

Uses asyncio.create_subprocess_exec (array-based, no shell). Each
process runs in its own process group so termination reaches any
helpers it started.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from companion.adapters.events import AgentEvent
from .errors import NotRunningError, RelaunchError, SpawnError
from .models import AgentConfig
from .protocol import decode_stream, encode_record, user_message

logger = logging.getLogger(__name__)

EXIT_EXITED = "exited"
EXIT_FAILED = "failed"
EXIT_KILLED = "killed"

STDERR_TAIL_LINES = 20


@dataclass
class ProcessExit:
    """Terminal lifecycle event of one process instance."""
    reason: str
    returncode: int | None
    stderr_tail: list[str] = field(default_factory=list)


EventHandler = Callable[["ProcessHandle", AgentEvent], None]
ExitHandler = Callable[["ProcessHandle", ProcessExit], None]


class ProcessHandle:
    """One running (or finished) agent process instance."""

    def __init__(
        self,
        name: str,
        session_id: str,
        config: AgentConfig,
        env: dict[str, str],
        process: asyncio.subprocess.Process,
    ) -> None:
        self.name = name
        self.session_id = session_id
        self.config = config
        self.env = env
        self._process = process
        self._accepting = True
        self._kill_requested = False
        self._write_lock = asyncio.Lock()
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._reader_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._finished = asyncio.Event()
        self.exit: ProcessExit | None = None

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def running(self) -> bool:
        """True until the terminal exit event has been emitted."""
        return not self._finished.is_set()

    @property
    def accepting_input(self) -> bool:
        return (
            self._accepting
            and not self._kill_requested
            and self._process.stdin is not None
            and not self._process.stdin.is_closing()
        )

    async def wait_finished(self, timeout: float | None = None) -> bool:
        """Wait for the exit event; False on timeout."""
        try:
            await asyncio.wait_for(self._finished.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def _close_input(self) -> None:
        self._accepting = False
        stdin = self._process.stdin
        if stdin is not None and not stdin.is_closing():
            try:
                stdin.close()
            except (BrokenPipeError, ConnectionResetError, RuntimeError):
                pass

    def __repr__(self) -> str:
        return (
            f"ProcessHandle(name={self.name!r}, pid={self.pid}, "
            f"running={self.running})"
        )


class ProcessSupervisor:
    """Spawns, feeds, kills and relaunches agent processes.

    Decoded events go to ``on_event`` and the exit to ``on_exit``;
    both are plain callbacks invoked from the handle's reader task,
    in output order.
    """

    def __init__(
        self,
        on_event: EventHandler | None = None,
        on_exit: ExitHandler | None = None,
        *,
        grace_timeout: float = 5.0,
        kill_timeout: float = 2.0,
        write_timeout: float = 10.0,
    ) -> None:
        self._on_event = on_event
        self._on_exit = on_exit
        self.grace_timeout = grace_timeout
        self.kill_timeout = kill_timeout
        self.write_timeout = write_timeout
        self._handles: set[ProcessHandle] = set()

    @property
    def live_handles(self) -> list[ProcessHandle]:
        return [h for h in self._handles if h.running]

    @staticmethod
    def resolve_binary(binary: str) -> str | None:
        """Resolve a binary name on PATH, or accept an executable path."""
        found = shutil.which(binary)
        if found:
            return found
        path = Path(binary).expanduser()
        if path.is_file() and os.access(path, os.X_OK):
            return str(path)
        return None

    async def spawn(
        self,
        name: str,
        config: AgentConfig,
        *,
        session_id: str,
        env: dict[str, str] | None = None,
    ) -> ProcessHandle:
        """Start an agent process. Raises SpawnError on bad binary/cwd."""
        cwd = Path(config.cwd).expanduser()
        if not cwd.is_dir():
            raise SpawnError(name, f"working directory does not exist: {config.cwd}")

        binary_path = self.resolve_binary(config.executable)
        if binary_path is None:
            raise SpawnError(name, f"binary not found: {config.executable}")
        argv = config.build_argv(binary_path)
        process_env = env if env is not None else config.build_env()

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd),
                env=process_env,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as exc:
            raise SpawnError(name, f"{type(exc).__name__}: {exc}") from exc

        handle = ProcessHandle(name, session_id, config, process_env, process)
        self._handles.add(handle)
        handle._reader_task = asyncio.create_task(
            self._pump_stdout(handle), name=f"agent-stdout-{name}",
        )
        handle._stderr_task = asyncio.create_task(
            self._drain_stderr(handle), name=f"agent-stderr-{name}",
        )
        logger.info(
            "Agent process started name=%s session=%s pid=%d cwd=%s",
            name, session_id[:8], process.pid, cwd,
        )
        return handle

    async def send(self, handle: ProcessHandle, text: str) -> None:
        """Write a user message to the agent's input channel."""
        await self.send_record(handle, user_message(text))

    async def send_record(self, handle: ProcessHandle, record: dict[str, Any]) -> None:
        """Write one encoded record. Fails fast for a dead or dying process."""
        if not handle.accepting_input:
            raise NotRunningError(handle.name)
        stdin = handle._process.stdin
        async with handle._write_lock:
            if not handle.accepting_input:
                raise NotRunningError(handle.name)
            try:
                stdin.write(encode_record(record))
                await asyncio.wait_for(stdin.drain(), timeout=self.write_timeout)
            except (BrokenPipeError, ConnectionResetError) as exc:
                handle._accepting = False
                raise NotRunningError(handle.name) from exc
            except asyncio.TimeoutError as exc:
                # A partial record may still be buffered; nothing after it
                # would be framed correctly.
                handle._accepting = False
                logger.warning(
                    "Write to agent %s timed out after %.1fs",
                    handle.name, self.write_timeout,
                )
                raise NotRunningError(handle.name, "input blocked") from exc

    def close_input(self, handle: ProcessHandle) -> None:
        """Signal end of input; the process decides when to exit."""
        handle._close_input()

    async def kill(
        self,
        handle: ProcessHandle,
        grace_timeout: float | None = None,
    ) -> ProcessExit | None:
        """Terminate gracefully, then forcefully. Idempotent.

        Returns within ``grace + kill_timeout`` with the exit record, or
        None if the process never reported one in that time.
        """
        if not handle.running:
            return handle.exit
        grace = self.grace_timeout if grace_timeout is None else grace_timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + grace + self.kill_timeout
        proc = handle._process
        if proc.returncode is None:
            handle._kill_requested = True
        handle._close_input()

        if proc.returncode is None:
            logger.info("Stopping agent %s pid=%d", handle.name, proc.pid)
            self._signal(handle, signal.SIGTERM)
            try:
                await asyncio.wait_for(proc.wait(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning("Force killing agent %s pid=%d", handle.name, proc.pid)
                self._signal(handle, signal.SIGKILL)
                try:
                    await asyncio.wait_for(
                        proc.wait(), timeout=max(deadline - loop.time(), 0),
                    )
                except asyncio.TimeoutError:
                    logger.error("Agent %s pid=%d did not die after SIGKILL", handle.name, proc.pid)

        await handle.wait_finished(timeout=max(deadline - loop.time(), 0))
        return handle.exit

    async def relaunch(self, handle: ProcessHandle) -> ProcessHandle:
        """Start a new instance with the original configuration."""
        if handle.config is None or handle.env is None:
            raise RelaunchError(handle.name, "original configuration unavailable")
        if handle.running:
            await self.kill(handle)
        logger.info("Relaunching agent %s session=%s", handle.name, handle.session_id[:8])
        return await self.spawn(
            handle.name,
            handle.config,
            session_id=handle.session_id,
            env=handle.env,
        )

    async def shutdown(self) -> None:
        """Kill every live process."""
        handles = self.live_handles
        if handles:
            await asyncio.gather(*(self.kill(h) for h in handles))

    @staticmethod
    def _signal(handle: ProcessHandle, sig: int) -> None:
        proc = handle._process
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            # Process group gone or not ours; fall back to the child itself.
            try:
                proc.send_signal(sig)
            except ProcessLookupError:
                pass

    # ── Reader tasks ──

    async def _pump_stdout(self, handle: ProcessHandle) -> None:
        try:
            async for event in decode_stream(handle._process.stdout, handle.name):
                self._dispatch(handle, event)
        except Exception:
            logger.exception("Output reader failed for agent %s", handle.name)
        finally:
            await self._finish(handle)

    async def _drain_stderr(self, handle: ProcessHandle) -> None:
        stderr = handle._process.stderr
        try:
            while True:
                line = await stderr.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").rstrip()
                if text:
                    handle._stderr_tail.append(text)
                    logger.debug("agent %s stderr: %s", handle.name, text)
        except (asyncio.CancelledError, ConnectionResetError):
            pass

    def _dispatch(self, handle: ProcessHandle, event: AgentEvent) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(handle, event)
        except Exception:
            logger.exception(
                "Error handling %s from agent %s (reader continues)",
                event.event_type, handle.name,
            )

    async def _finish(self, handle: ProcessHandle) -> None:
        """Reap the process and emit its exit exactly once."""
        if handle._finished.is_set():
            return
        handle._close_input()
        proc = handle._process
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.grace_timeout)
        except asyncio.TimeoutError:
            # stdout closed but the process lingers; reap it by force.
            self._signal(handle, signal.SIGKILL)
            await proc.wait()
        if handle._stderr_task is not None:
            try:
                await asyncio.wait_for(handle._stderr_task, timeout=1.0)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                pass

        if handle._kill_requested:
            reason = EXIT_KILLED
        elif proc.returncode == 0:
            reason = EXIT_EXITED
        else:
            reason = EXIT_FAILED
        handle.exit = ProcessExit(reason, proc.returncode, list(handle._stderr_tail))
        handle._finished.set()
        self._handles.discard(handle)
        log = logger.info if reason != EXIT_FAILED else logger.warning
        log(
            "Agent process ended name=%s pid=%d reason=%s returncode=%s",
            handle.name, proc.pid, reason, proc.returncode,
        )
        if handle.exit.stderr_tail and reason == EXIT_FAILED:
            logger.warning("agent %s stderr tail: %s", handle.name, handle.exit.stderr_tail[-5:])

        if self._on_exit is not None:
            try:
                self._on_exit(handle, handle.exit)
            except Exception:
                logger.exception("Error handling exit of agent %s", handle.name)
