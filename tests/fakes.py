"""Test doubles for the inference subprocess."""

from __future__ import annotations

import asyncio
import itertools
import sys
from typing import Callable, List, Optional, Union

from llm_sessions.session import ModelCatalog, ModelDescriptor, SessionRegistry
from llm_sessions.session.errors import SpawnError

_pids = itertools.count(40000)

Reply = Optional[Union[str, List[str]]]


def echo(line: str) -> Reply:
    return f"echo: {line}\n"


class _FakeStdin:
    def __init__(self, proc: "FakeProcess"):
        self._proc = proc
        self.closed = False
        self.written = b""

    def write(self, data: bytes) -> None:
        if self.closed or self._proc.returncode is not None:
            raise BrokenPipeError("stdin closed")
        self.written += data
        self._proc._receive(data)

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True


class FakeProcess:
    """
    Stands in for asyncio.subprocess.Process.

    Every line written to stdin is passed to ``responder``; its return value
    (a string, a list of chunks, or None for silence) is fed to stdout after
    ``reply_delay`` seconds, chunks ``chunk_gap`` seconds apart.
    """

    def __init__(
        self,
        responder: Callable[[str], Reply] = echo,
        banner: Optional[str] = None,
        reply_delay: float = 0.0,
        chunk_gap: float = 0.0,
        exit_code_at_start: Optional[int] = None,
        stderr_lines: Optional[List[str]] = None,
        ignore_sigterm: bool = False,
    ):
        self.pid = next(_pids)
        self.returncode: Optional[int] = None
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.stdin = _FakeStdin(self)
        self.lines: List[str] = []
        self.signals: List[str] = []

        self._responder = responder
        self._reply_delay = reply_delay
        self._chunk_gap = chunk_gap
        self._ignore_sigterm = ignore_sigterm
        self._partial = ""
        self._exited = asyncio.Event()

        for line in stderr_lines or []:
            self.stderr.feed_data(f"{line}\n".encode())
        if banner:
            self.stdout.feed_data(banner.encode())
        if exit_code_at_start is not None:
            self.exit(exit_code_at_start)

    def _receive(self, data: bytes) -> None:
        self._partial += data.decode()
        while "\n" in self._partial:
            line, self._partial = self._partial.split("\n", 1)
            self.lines.append(line)
            reply = self._responder(line)
            if reply is None:
                continue
            chunks = [reply] if isinstance(reply, str) else reply
            loop = asyncio.get_running_loop()
            for i, chunk in enumerate(chunks):
                loop.call_later(self._reply_delay + i * self._chunk_gap, self.emit, chunk)

    def emit(self, text: str) -> None:
        if self.returncode is None:
            self.stdout.feed_data(text.encode())

    def exit(self, code: int = 0, stderr: Optional[str] = None) -> None:
        if self.returncode is not None:
            return
        if stderr:
            self.stderr.feed_data(f"{stderr}\n".encode())
        self.returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self.signals.append("SIGTERM")
        if not self._ignore_sigterm:
            self.exit(-15)

    def kill(self) -> None:
        self.signals.append("SIGKILL")
        self.exit(-9)


class FakeLauncher:
    """Records launches and hands out FakeProcess instances."""

    def __init__(
        self,
        factory: Optional[Callable[[List[str]], FakeProcess]] = None,
        fail: Optional[str] = None,
        launch_delay: float = 0.0,
    ):
        self.launches: List[List[str]] = []
        self.processes: List[FakeProcess] = []
        self._factory = factory
        self._fail = fail
        self._launch_delay = launch_delay

    async def launch(self, argv: List[str], env) -> FakeProcess:
        self.launches.append(list(argv))
        if self._launch_delay:
            await asyncio.sleep(self._launch_delay)
        if self._fail:
            raise SpawnError(self._fail)
        proc = self._factory(argv) if self._factory else FakeProcess()
        self.processes.append(proc)
        return proc


MARKER = "\n> "


def make_catalog() -> ModelCatalog:
    """Catalog with an idle-framed model and a prompt-marker model."""
    return ModelCatalog(
        [
            ModelDescriptor(
                name="LLaMA-v2",
                executable_path="/opt/llama/main",
                model_file_path="/models/llama-2-7b.gguf",
                extra_args=("--ctx-size", "2048"),
            ),
            ModelDescriptor(
                name="marker",
                executable_path="/opt/llama/main",
                model_file_path="/models/marker.gguf",
                prompt_marker=MARKER,
            ),
        ],
        default_threads=4,
    )


def make_registry(launcher, **overrides) -> SessionRegistry:
    """Registry with short timeouts suited to fake processes."""
    options = dict(
        launcher=launcher,
        threads=4,
        idle_timeout_ms=50,
        first_output_timeout=2.0,
        startup_timeout=1.0,
        stop_grace_seconds=0.2,
        spawn_check_seconds=0.01,
    )
    options.update(overrides)
    return SessionRegistry(make_catalog(), **options)


ECHO_SCRIPT = """#!{python}
import sys

sys.stdout.write("loading model\\nready\\n> ")
sys.stdout.flush()
while True:
    line = sys.stdin.readline()
    if not line:
        break
    line = line.rstrip("\\n")
    if line == "crash":
        sys.stderr.write("fatal: asked to crash\\n")
        sys.stderr.flush()
        sys.exit(3)
    sys.stdout.write("you said: " + line + "\\n> ")
    sys.stdout.flush()
"""


def write_echo_binary(directory) -> str:
    """Write an executable stand-in for an interactive inference binary."""
    path = directory / "fake-llama"
    path.write_text(ECHO_SCRIPT.format(python=sys.executable), encoding="utf-8")
    path.chmod(0o755)
    return str(path)


def echo_manifest(executable: str) -> dict:
    return {
        "default_threads": 2,
        "models": [
            {
                "name": "LLaMA-v2",
                "executable": executable,
                "model": "/models/llama-2-7b.gguf",
                "prompt_marker": MARKER,
            }
        ],
    }
