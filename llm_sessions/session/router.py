"""InputRouter - serializes query submissions into one session's stdin."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Callable, Deque, Optional

from .aggregator import OutputAggregator
from .errors import ClosedChannel, QueryCancelled, SessionError
from .protocol import PendingQuery, Query
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


def encode_query(text: str, sentinel: str = "\n", collapse_newlines: bool = True) -> bytes:
    """
    Encode query text for the subprocess's line-submission convention.

    The sentinel is appended exactly once: trailing newlines (and a trailing
    copy of the sentinel) are removed from the text first. In single-line
    mode internal newlines become spaces so the binary sees one submission.

    Args:
        text: Query text
        sentinel: Submission terminator
        collapse_newlines: Join lines for binaries without multiline input

    Returns:
        UTF-8 bytes to write
    """
    body = text.replace("\r\n", "\n").rstrip("\n")
    marker = sentinel.rstrip("\n")
    if marker and body.endswith(marker):
        body = body[: -len(marker)]
    if collapse_newlines:
        body = " ".join(body.split("\n"))
    return (body + sentinel).encode("utf-8")


class InputRouter:
    """
    Per-session FIFO of queries with a single writer.

    Queries are written in submission order, one at a time: the next query
    is written only after the previous one has been answered or failed, so
    writes never interleave and responses pair up FIFO. Queries still in the
    queue can be cancelled; written ones cannot.
    """

    def __init__(
        self,
        name: str,
        supervisor: ProcessSupervisor,
        aggregator: OutputAggregator,
        sentinel: str = "\n",
        collapse_newlines: bool = True,
        on_activity: Optional[Callable[[bool], None]] = None,
    ):
        self.name = name
        self.sentinel = sentinel
        self.collapse_newlines = collapse_newlines
        self.queries_written = 0

        self._supervisor = supervisor
        self._aggregator = aggregator
        self._on_activity = on_activity
        self._queue: Deque[PendingQuery] = deque()
        self._wakeup = asyncio.Event()
        self._current: Optional[PendingQuery] = None
        self._closed_error: Optional[SessionError] = None
        self._busy = False
        self._task: Optional[asyncio.Task] = None

    @property
    def queue_depth(self) -> int:
        return len(self._queue)

    @property
    def in_flight(self) -> Optional[str]:
        return self._current.id if self._current is not None else None

    def start(self) -> None:
        self._task = asyncio.create_task(self._drain())

    def submit(self, query: Query) -> PendingQuery:
        """Queue a query; the returned future settles with its Response."""
        future = asyncio.get_running_loop().create_future()
        pending = PendingQuery(query=query, future=future)
        if self._closed_error is not None:
            pending.fail(self._closed_error)
            return pending

        self._queue.append(pending)
        self._wakeup.set()
        self._report_activity()
        return pending

    def cancel(self, query_id: str) -> bool:
        """
        Cancel a query that has not been written yet.

        Returns:
            True if the query was removed from the queue
        """
        for pending in self._queue:
            if pending.id == query_id:
                self._queue.remove(pending)
                pending.fail(QueryCancelled(query_id))
                logger.info(f"Session '{self.name}': cancelled query {query_id}")
                self._report_activity()
                return True
        return False

    def close(self, error: SessionError) -> None:
        """Fail every queued query with error and stop accepting new ones."""
        self._closed_error = error
        while self._queue:
            self._queue.popleft().fail(error)
        self._wakeup.set()
        self._report_activity()

    async def _drain(self) -> None:
        while True:
            while not self._queue and self._closed_error is None:
                self._wakeup.clear()
                await self._wakeup.wait()
            if self._closed_error is not None:
                return

            pending = self._queue.popleft()
            if pending.future.done():
                continue

            self._current = pending
            try:
                pending.written = True
                self._aggregator.expect(pending)
                if pending.future.done():
                    continue
                data = encode_query(pending.query.text, self.sentinel, self.collapse_newlines)
                try:
                    await self._supervisor.write_input(data)
                except ClosedChannel as e:
                    pending.fail(e)
                    continue
                self.queries_written += 1
                await asyncio.wait([pending.future])
            finally:
                self._current = None
                self._report_activity()

    def _report_activity(self) -> None:
        busy = bool(self._queue) or self._current is not None
        if busy != self._busy:
            self._busy = busy
            if self._on_activity is not None:
                self._on_activity(busy)
