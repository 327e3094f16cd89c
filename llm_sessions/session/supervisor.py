"""ProcessSupervisor - owns exactly one inference subprocess.

Responsibilities:
- Build the command line for a model and spawn it
- Forward bytes to the process's stdin
- Stream raw stdout chunks to a single reader
- Drain stderr into the log and a bounded diagnostic tail
- Stop the process: SIGTERM, bounded wait, SIGKILL
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import shutil
from collections import deque
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

from .errors import ClosedChannel, SpawnError
from .protocol import ModelDescriptor, ProcessState

logger = logging.getLogger(__name__)


def build_command(descriptor: ModelDescriptor, threads: int) -> List[str]:
    """
    Build the argv for an interactive inference session.

    Args:
        descriptor: Model to launch
        threads: Thread count when the descriptor has no override

    Returns:
        Full argument vector, executable first
    """
    cmd = [
        descriptor.executable_path,
        "--threads",
        str(descriptor.threads or threads),
        "--model",
        descriptor.model_file_path,
        "--interactive",
    ]
    if descriptor.multiline:
        cmd.append("--multiline-input")
    cmd.extend(descriptor.extra_args)
    return cmd


class ProcessLauncher(Protocol):
    """Spawning capability used by ProcessSupervisor.

    The returned object must behave like asyncio.subprocess.Process:
    ``stdin`` (write/drain/close), ``stdout`` and ``stderr`` (StreamReader),
    ``pid``, ``returncode``, ``wait()``, ``terminate()`` and ``kill()``.
    """

    async def launch(self, argv: List[str], env: Dict[str, str]) -> Any:
        ...


class AsyncioLauncher:
    """Launches real subprocesses with asyncio pipes."""

    async def launch(self, argv: List[str], env: Dict[str, str]) -> Any:
        executable = argv[0]
        resolved = executable if os.path.sep in executable else shutil.which(executable)
        if not resolved or not os.path.isfile(resolved):
            raise SpawnError(f"Executable not found: {executable}")
        if not os.access(resolved, os.X_OK):
            raise SpawnError(f"Executable is not executable: {resolved}")

        try:
            return await asyncio.create_subprocess_exec(
                resolved,
                *argv[1:],
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            raise SpawnError(f"Failed to launch {resolved}: {e}") from e


class ProcessSupervisor:
    """
    Lifecycle owner of one subprocess.

    State machine: NOT_STARTED -> STARTING -> RUNNING -> {EXITED, KILLED}.
    Terminal states are irreversible; writes and new reads after them raise
    ClosedChannel.
    """

    def __init__(
        self,
        name: str,
        launcher: Optional[ProcessLauncher] = None,
        read_chunk_size: int = 4096,
        stderr_tail_lines: int = 50,
    ):
        self.name = name
        self.state = ProcessState.NOT_STARTED
        self.stop_requested = False

        self._launcher = launcher or AsyncioLauncher()
        self._read_chunk_size = read_chunk_size
        self._proc: Any = None
        self._stderr_tail: deque[str] = deque(maxlen=stderr_tail_lines)
        self._stderr_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()
        self._stop_lock = asyncio.Lock()
        self._stop_grace = 5.0
        self._reading = False

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc is not None else None

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode if self._proc is not None else None

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    def is_alive(self) -> bool:
        return (
            self._proc is not None
            and not self.state.is_terminal
            and self._proc.returncode is None
        )

    async def start(
        self,
        descriptor: ModelDescriptor,
        threads: int,
        spawn_check_seconds: float = 0.2,
    ) -> Any:
        """
        Spawn the subprocess for a descriptor.

        Args:
            descriptor: Model to launch
            threads: Default thread count
            spawn_check_seconds: How long the process must survive to count
                as started

        Returns:
            The process handle

        Raises:
            SpawnError: If the executable is missing/unexecutable or the
                process exits within the spawn-check window
        """
        if self.state is not ProcessState.NOT_STARTED:
            raise SpawnError(f"Session '{self.name}' was already started")

        self.state = ProcessState.STARTING
        argv = build_command(descriptor, threads)
        env = os.environ.copy()

        logger.info(f"Spawning session '{self.name}': {shlex.join(argv)}")
        try:
            self._proc = await self._launcher.launch(argv, env)
        except SpawnError:
            self.state = ProcessState.EXITED
            raise
        except OSError as e:
            self.state = ProcessState.EXITED
            raise SpawnError(f"Failed to launch {argv[0]}: {e}") from e

        self._stderr_task = asyncio.create_task(self._drain_stderr())
        if self.stop_requested:
            await self._abort_start()

        if spawn_check_seconds > 0:
            try:
                await asyncio.wait_for(self._proc.wait(), timeout=spawn_check_seconds)
            except asyncio.TimeoutError:
                pass
            else:
                if self.stop_requested:
                    await self._abort_start()
                await self._finish_stderr()
                self.state = ProcessState.EXITED
                msg = (
                    f"Session '{self.name}' exited immediately "
                    f"(exit code: {self._proc.returncode})"
                )
                if self._stderr_tail:
                    msg += f": {self._stderr_tail[-1]}"
                raise SpawnError(msg)

        if self.stop_requested:
            await self._abort_start()
        self.state = ProcessState.RUNNING
        logger.info(f"Session '{self.name}' running (pid {self.pid})")
        return self._proc

    async def _abort_start(self) -> None:
        # stop() ran while start() was waiting; the new process must not survive it
        await self.stop(self._stop_grace)
        raise ClosedChannel(f"Session '{self.name}' was stopped during startup")

    async def write_input(self, data: bytes) -> None:
        """
        Forward bytes to the subprocess's stdin.

        Raises:
            ClosedChannel: If the process is not running
        """
        if not self.is_alive():
            raise ClosedChannel(f"Session '{self.name}' is not running")

        async with self._write_lock:
            try:
                self._proc.stdin.write(data)
                await self._proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise ClosedChannel(f"Session '{self.name}' closed its input") from e

    async def read_output(self) -> AsyncIterator[bytes]:
        """
        Yield stdout chunks as they arrive until the process ends.

        Raises:
            ClosedChannel: If called after the process reached a terminal state
        """
        if self._proc is None or self.state.is_terminal:
            raise ClosedChannel(f"Session '{self.name}' has no output stream")
        if self._reading:
            raise RuntimeError(f"Output of session '{self.name}' already has a reader")
        self._reading = True

        while True:
            chunk = await self._proc.stdout.read(self._read_chunk_size)
            if not chunk:
                break
            yield chunk

        await self._proc.wait()
        self._set_terminal(ProcessState.EXITED)
        await self._finish_stderr()
        logger.info(
            f"Session '{self.name}' output closed (exit code: {self._proc.returncode})"
        )

    async def stop(self, grace_seconds: float = 5.0) -> None:
        """
        Terminate the process: SIGTERM, wait up to grace_seconds, then SIGKILL.

        Idempotent; safe to call in any state.
        """
        self.stop_requested = True
        self._stop_grace = grace_seconds
        async with self._stop_lock:
            if self._proc is None:
                self._set_terminal(ProcessState.EXITED)
                return
            if self.state.is_terminal and self._proc.returncode is not None:
                return

            if self._proc.returncode is None:
                try:
                    self._proc.stdin.close()
                except (BrokenPipeError, ConnectionResetError, AttributeError):
                    pass

                try:
                    self._proc.terminate()
                except ProcessLookupError:
                    pass

                try:
                    await asyncio.wait_for(self._proc.wait(), timeout=grace_seconds)
                except asyncio.TimeoutError:
                    logger.warning(
                        f"Session '{self.name}' ignored SIGTERM for {grace_seconds}s, killing"
                    )
                    try:
                        self._proc.kill()
                    except ProcessLookupError:
                        pass
                    self._set_terminal(ProcessState.KILLED)
                    await self._proc.wait()

            self._set_terminal(ProcessState.EXITED)
            await self._finish_stderr()
            logger.info(f"Session '{self.name}' stopped ({self.state.value})")

    def _set_terminal(self, state: ProcessState) -> None:
        if not self.state.is_terminal:
            self.state = state

    async def _drain_stderr(self) -> None:
        stream = getattr(self._proc, "stderr", None)
        if stream is None:
            return
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                # Line longer than the stream limit; the reader already dropped it
                continue
            if not line:
                break
            text = line.decode(errors="replace").rstrip()
            if text:
                logger.debug(f"[{self.name}] stderr: {text}")
                self._stderr_tail.append(text)

    async def _finish_stderr(self, timeout: float = 1.0) -> None:
        if self._stderr_task is None or self._stderr_task.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._stderr_task), timeout=timeout)
        except asyncio.TimeoutError:
            self._stderr_task.cancel()
