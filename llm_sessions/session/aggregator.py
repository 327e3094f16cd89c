"""OutputAggregator - turns a raw output stream into per-query responses.

Interactive inference binaries have no structured response delimiter, so
response boundaries are reconstructed heuristically:

- Prompt marker (exact): when the model descriptor names the string the
  binary prints once it is waiting for input again (llama.cpp prints
  "\\n> " in interactive mode), everything before it is the response. Token
  generation can pause, so the short idle window does not apply; a partial
  answer followed by ``first_output_timeout`` seconds of silence is
  completed as is.
- Idle timeout (approximation): without a marker, a response is complete
  once output has been silent for ``idle_timeout`` seconds after at least
  one byte arrived. A slow model can therefore have its answer split, and
  two fast answers could in principle merge; the router only writes the
  next query after the previous response settled to keep this rare.

Responses are correlated FIFO with the queries the router wrote.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
from collections import deque
from typing import Callable, Deque, Optional

from .errors import ClosedChannel, ProcessTerminated, QueryTimeout, SessionError
from .protocol import PendingQuery, Response
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

# Output kept while nothing is outstanding, for prompt-marker detection only
_PREAMBLE_KEEP_CHARS = 4096


class OutputAggregator:
    """Reads one session's stdout and settles outstanding queries."""

    def __init__(
        self,
        name: str,
        supervisor: ProcessSupervisor,
        idle_timeout: float = 1.5,
        first_output_timeout: float = 120.0,
        prompt_marker: Optional[str] = None,
        on_exit: Optional[Callable[[SessionError], None]] = None,
    ):
        self.name = name
        self.idle_timeout = idle_timeout
        self.first_output_timeout = first_output_timeout
        self.prompt_marker = prompt_marker
        self.exit_error: Optional[SessionError] = None

        # Set when a prompt marker arrives with nothing outstanding
        self.ready = asyncio.Event()
        self.closed = asyncio.Event()

        self._supervisor = supervisor
        self._on_exit = on_exit
        self._outstanding: Deque[PendingQuery] = deque()
        self._chunks: asyncio.Queue = asyncio.Queue()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._preamble = ""
        self._last_output_at = 0.0
        self._pump_task: Optional[asyncio.Task] = None
        self._frame_task: Optional[asyncio.Task] = None

    @property
    def outstanding(self) -> int:
        return len(self._outstanding)

    def start(self) -> None:
        self._pump_task = asyncio.create_task(self._pump())
        self._frame_task = asyncio.create_task(self._frame())

    def expect(self, pending: PendingQuery) -> None:
        """Register a query that is about to be written to the process."""
        if self.closed.is_set():
            pending.fail(self.exit_error or ClosedChannel(f"Session '{self.name}' is closed"))
            return
        pending.written_at = self._now()
        self._outstanding.append(pending)

    async def wait_closed(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self.closed.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _pump(self) -> None:
        try:
            async for chunk in self._supervisor.read_output():
                await self._chunks.put(chunk)
        except ClosedChannel:
            pass
        except Exception as e:
            logger.error(f"Reading output of session '{self.name}' failed: {e}", exc_info=True)
        finally:
            await self._chunks.put(None)

    async def _frame(self) -> None:
        while True:
            try:
                chunk = await asyncio.wait_for(self._chunks.get(), timeout=self._next_timeout())
            except asyncio.TimeoutError:
                self._on_timer()
                continue
            if chunk is None:
                self._on_eof()
                return
            self._feed(self._decoder.decode(chunk))

    def _now(self) -> float:
        return asyncio.get_running_loop().time()

    def _prune(self) -> None:
        # Queries failed elsewhere (e.g. a write error) no longer own output
        while self._outstanding and self._outstanding[0].future.done():
            self._outstanding.popleft()

    def _silence_window(self) -> float:
        # Silence that completes a started response
        if self.prompt_marker:
            return max(self.idle_timeout, self.first_output_timeout)
        return self.idle_timeout

    def _next_timeout(self) -> float:
        self._prune()
        if not self._outstanding:
            return self.idle_timeout
        now = self._now()
        if self._buffer:
            deadline = self._last_output_at + self._silence_window()
        else:
            deadline = self._outstanding[0].written_at + self.first_output_timeout
        return max(deadline - now, 0.01)

    def _feed(self, text: str) -> None:
        if not text:
            return
        self._last_output_at = self._now()
        self._prune()

        if not self._outstanding:
            logger.debug(f"[{self.name}] unsolicited output: {text!r}")
            if self.prompt_marker:
                self._preamble = (self._preamble + text)[-_PREAMBLE_KEEP_CHARS:]
                if self.prompt_marker in self._preamble:
                    self._preamble = ""
                    self.ready.set()
            return

        self._buffer += text
        if not self.prompt_marker:
            return

        idx = self._buffer.find(self.prompt_marker)
        if idx < 0:
            return
        body = self._buffer[:idx]
        rest = self._buffer[idx + len(self.prompt_marker):]
        self._buffer = ""
        self._complete(body)
        self._feed(rest)

    def _complete(self, text: str, truncated: bool = False) -> None:
        pending = self._outstanding.popleft()
        pending.resolve(Response(query_id=pending.id, text=text.strip(), truncated=truncated))
        logger.debug(
            f"[{self.name}] query {pending.id} answered ({len(text)} chars"
            f"{', truncated' if truncated else ''})"
        )

    def _on_timer(self) -> None:
        self._prune()
        if not self._outstanding:
            return
        now = self._now()
        if self._buffer:
            if now - self._last_output_at >= self._silence_window():
                if self.prompt_marker:
                    logger.warning(
                        f"Session '{self.name}' stalled without its prompt marker; "
                        f"completing query {self._outstanding[0].id} with partial output"
                    )
                text, self._buffer = self._buffer, ""
                self._complete(text)
            return

        head = self._outstanding[0]
        if now - head.written_at >= self.first_output_timeout:
            self._outstanding.popleft()
            logger.warning(
                f"Session '{self.name}' produced no output for query {head.id} "
                f"within {self.first_output_timeout}s"
            )
            head.fail(
                QueryTimeout(
                    f"Session '{self.name}' produced no output within "
                    f"{self.first_output_timeout}s"
                )
            )

    def _exit_error(self) -> SessionError:
        if self._supervisor.stop_requested:
            return ClosedChannel(f"Session '{self.name}' was stopped")
        returncode = self._supervisor.returncode
        msg = f"Session '{self.name}' exited unexpectedly (exit code: {returncode})"
        tail = self._supervisor.stderr_tail
        if tail:
            msg += f": {tail.splitlines()[-1]}"
        return ProcessTerminated(msg, returncode=returncode)

    def _on_eof(self) -> None:
        self._buffer += self._decoder.decode(b"", final=True)
        error = self._exit_error()
        self.exit_error = error
        self._prune()

        if self._outstanding:
            if self._buffer.strip():
                text, self._buffer = self._buffer, ""
                self._complete(text, truncated=True)
            else:
                self._outstanding.popleft().fail(error)
            while self._outstanding:
                self._outstanding.popleft().fail(error)

        self.closed.set()
        if self._on_exit is not None:
            self._on_exit(error)
