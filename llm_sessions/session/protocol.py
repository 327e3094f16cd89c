"""Shared data model for sessions, queries and responses."""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple


class SessionState(str, Enum):
    """Session lifecycle states."""

    STARTING = "starting"  # Process spawned, waiting for readiness
    READY = "ready"  # Idle, accepting queries
    BUSY = "busy"  # At least one query queued or in flight
    TERMINATED = "terminated"  # Stopped or exited, terminal


class ProcessState(str, Enum):
    """Subprocess lifecycle states, owned by ProcessSupervisor."""

    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"  # Terminal
    KILLED = "killed"  # Terminal, force-killed after the grace period

    @property
    def is_terminal(self) -> bool:
        return self in (ProcessState.EXITED, ProcessState.KILLED)


@dataclass(frozen=True)
class ModelDescriptor:
    """How to launch one configured model."""

    name: str  # Unique catalog key
    executable_path: str  # Inference binary
    model_file_path: str  # Model weights passed via --model
    extra_args: Tuple[str, ...] = ()
    threads: Optional[int] = None  # Overrides the catalog default
    prompt_marker: Optional[str] = None  # Exact end-of-response marker, if any
    submit_sentinel: str = "\n"  # Terminates every written query
    idle_timeout_ms: Optional[int] = None  # Overrides the settings default
    multiline: bool = False  # Adds --multiline-input


@dataclass
class Query:
    """A single piece of text submitted to a session."""

    session_id: str
    text: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    submitted_at: float = field(default_factory=time.time)


@dataclass
class Response:
    """Text produced by the subprocess for one query."""

    query_id: str
    text: str
    completed_at: float = field(default_factory=time.time)
    truncated: bool = False


@dataclass
class PendingQuery:
    """A query travelling through the router and aggregator.

    The future resolves to a Response or fails with a SessionError.
    """

    query: Query
    future: asyncio.Future
    written: bool = False
    written_at: Optional[float] = None

    @property
    def id(self) -> str:
        return self.query.id

    def resolve(self, response: Response) -> None:
        if not self.future.done():
            self.future.set_result(response)

    def fail(self, error: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(error)
