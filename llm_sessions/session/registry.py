"""SessionRegistry - single source of truth for model name -> Session.

Responsibilities:
- Resolve models through the catalog and spawn one session per name
- Collapse concurrent creation requests for a name into a single spawn
- Route queries to the session's InputRouter and await the Response
- Own every Session.state transition
- Keep ended sessions as terminated records so later queries fail loudly
  instead of silently respawning
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

from .aggregator import OutputAggregator
from .catalog import ModelCatalog
from .errors import ClosedChannel, ProcessTerminated, SessionError, SpawnError
from .protocol import ModelDescriptor, Query, Response, SessionState
from .router import InputRouter
from .supervisor import ProcessLauncher, ProcessSupervisor

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """Registry's view of one model session."""

    name: str
    descriptor: ModelDescriptor
    supervisor: ProcessSupervisor
    router: Optional[InputRouter] = None
    aggregator: Optional[OutputAggregator] = None
    state: SessionState = SessionState.STARTING
    started_at: float = field(default_factory=time.time)
    ended_at: Optional[float] = None
    queries_served: int = 0
    terminal_error: Optional[str] = None

    @property
    def id(self) -> str:
        return self.name

    @property
    def is_live(self) -> bool:
        return self.state is not SessionState.TERMINATED


class SessionRegistry:
    """
    Maps model names to live sessions.

    At most one live session exists per model name. A session is created by
    an explicit start, or implicitly by the first query for a name that has
    never had one. Once a session ends, its record stays TERMINATED and
    queries fail with ClosedChannel (stopped) or ProcessTerminated (crashed)
    until the next explicit start.
    """

    def __init__(
        self,
        catalog: ModelCatalog,
        launcher: Optional[ProcessLauncher] = None,
        threads: int = 1,
        idle_timeout_ms: int = 1500,
        first_output_timeout: float = 120.0,
        startup_timeout: float = 60.0,
        stop_grace_seconds: float = 5.0,
        spawn_check_seconds: float = 0.2,
    ):
        """
        Initialize registry.

        Args:
            catalog: Model catalog used to resolve names
            launcher: Spawning capability (real subprocesses by default)
            threads: Default thread count passed to the binary
            idle_timeout_ms: Output silence that completes a response
            first_output_timeout: Max seconds to wait for a response's first byte
            startup_timeout: Max seconds to wait for a prompt marker after spawn
            stop_grace_seconds: Seconds between SIGTERM and SIGKILL
            spawn_check_seconds: Seconds a new process must survive
        """
        self.catalog = catalog
        self.threads = threads
        self.idle_timeout_ms = idle_timeout_ms
        self.first_output_timeout = first_output_timeout
        self.startup_timeout = startup_timeout
        self.stop_grace_seconds = stop_grace_seconds
        self.spawn_check_seconds = spawn_check_seconds

        self._launcher = launcher
        self._sessions: Dict[str, Session] = {}
        self._creating: Dict[str, asyncio.Future] = {}
        self._starting: Dict[str, Session] = {}
        self._stopped_while_starting: Set[str] = set()
        self.spawn_count = 0

    async def get_or_create(self, name: str) -> Session:
        """
        Return the live session for name, spawning it if absent.

        Concurrent callers for the same absent name share one creation; if it
        fails every caller receives the same error and nothing is recorded.

        Raises:
            ModelNotFound: If name is not in the catalog
            SpawnError: If the process could not be started
            ClosedChannel: If the session was stopped before it became ready
        """
        session = self._sessions.get(name)
        if session is not None and session.is_live:
            return session

        creation = self._creating.get(name)
        if creation is None:
            creation = asyncio.ensure_future(self._create(name))
            self._creating[name] = creation
            creation.add_done_callback(lambda fut: self._creation_done(name, fut))
        return await asyncio.shield(creation)

    def _creation_done(self, name: str, fut: asyncio.Future) -> None:
        self._creating.pop(name, None)
        if not fut.cancelled():
            # Mark the error retrieved even if every waiter went away
            fut.exception()

    async def _create(self, name: str) -> Session:
        descriptor = self.catalog.resolve(name)
        supervisor = ProcessSupervisor(name, launcher=self._launcher)
        session = Session(name=name, descriptor=descriptor, supervisor=supervisor)
        self._starting[name] = session
        try:
            return await self._bring_up(session)
        except BaseException as e:
            stopped = name in self._stopped_while_starting
            await supervisor.stop(self.stop_grace_seconds)
            if not stopped:
                raise
            error = ClosedChannel(f"Session '{name}' was stopped during startup")
            self._record_stopped_start(session, error)
            raise error from e
        finally:
            self._starting.pop(name, None)
            self._stopped_while_starting.discard(name)

    async def _bring_up(self, session: Session) -> Session:
        name = session.name
        descriptor = session.descriptor
        supervisor = session.supervisor
        if name in self._stopped_while_starting:
            raise ClosedChannel(f"Session '{name}' was stopped before it was spawned")

        self.spawn_count += 1
        await supervisor.start(
            descriptor, self.threads, spawn_check_seconds=self.spawn_check_seconds
        )

        idle_ms = descriptor.idle_timeout_ms or self.idle_timeout_ms
        session.aggregator = OutputAggregator(
            name,
            supervisor,
            idle_timeout=idle_ms / 1000.0,
            first_output_timeout=self.first_output_timeout,
            prompt_marker=descriptor.prompt_marker,
            on_exit=lambda error: self._handle_exit(session, error),
        )
        session.router = InputRouter(
            name,
            supervisor,
            session.aggregator,
            sentinel=descriptor.submit_sentinel,
            collapse_newlines=not descriptor.multiline,
            on_activity=lambda busy: self._handle_activity(session, busy),
        )
        session.aggregator.start()
        session.router.start()

        if descriptor.prompt_marker:
            await self._wait_ready(session)

        if name in self._stopped_while_starting:
            raise ClosedChannel(f"Session '{name}' was stopped during startup")
        if not session.is_live:
            raise SpawnError(session.terminal_error or f"Session '{name}' exited during startup")
        session.state = SessionState.READY
        self._sessions[name] = session
        logger.info(f"Session '{name}' ready (pid {supervisor.pid})")
        return session

    def _record_stopped_start(self, session: Session, error: SessionError) -> None:
        # Keep a terminated record so queries fail instead of respawning
        session.state = SessionState.TERMINATED
        session.ended_at = session.ended_at or time.time()
        session.terminal_error = str(error)
        if session.router is not None:
            session.router.close(error)
        self._sessions[session.name] = session
        logger.info(f"Session '{session.name}' stopped during startup")

    async def _wait_ready(self, session: Session) -> None:
        aggregator = session.aggregator
        waiters = [
            asyncio.ensure_future(aggregator.ready.wait()),
            asyncio.ensure_future(aggregator.closed.wait()),
        ]
        try:
            await asyncio.wait(
                waiters, timeout=self.startup_timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for waiter in waiters:
                waiter.cancel()

        if aggregator.ready.is_set():
            return
        supervisor = session.supervisor
        if aggregator.closed.is_set():
            msg = (
                f"Session '{session.name}' exited during startup "
                f"(exit code: {supervisor.returncode})"
            )
            tail = supervisor.stderr_tail
            if tail:
                msg += f": {tail.splitlines()[-1]}"
            raise SpawnError(msg)
        raise SpawnError(
            f"Session '{session.name}' did not show its prompt within "
            f"{self.startup_timeout}s"
        )

    def _handle_activity(self, session: Session, busy: bool) -> None:
        if session.state in (SessionState.READY, SessionState.BUSY):
            session.state = SessionState.BUSY if busy else SessionState.READY

    def _handle_exit(self, session: Session, error: SessionError) -> None:
        if session.state is SessionState.TERMINATED:
            return
        session.state = SessionState.TERMINATED
        session.ended_at = time.time()
        session.terminal_error = str(error)
        if session.router is not None:
            session.router.close(error)

        if self._sessions.get(session.name) is not session:
            return
        if isinstance(error, ProcessTerminated):
            logger.warning(f"{error}; queries fail until the session is started again")
        else:
            logger.info(f"Session '{session.name}' terminated")

        if session.supervisor.is_alive():
            # Output ended but the process lingers
            asyncio.ensure_future(session.supervisor.stop(self.stop_grace_seconds))

    def _ended_error(self, session: Session) -> SessionError:
        if session.supervisor.stop_requested:
            return ClosedChannel(
                f"Session '{session.name}' was stopped; start it again to send queries"
            )
        returncode = session.supervisor.returncode
        return ProcessTerminated(
            f"Session '{session.name}' terminated (exit code: {returncode}); "
            "start it again to send queries",
            returncode=returncode,
        )

    async def _session_for_query(self, name: str) -> Session:
        session = self._sessions.get(name)
        if session is None:
            return await self.get_or_create(name)
        if not session.is_live:
            raise self._ended_error(session)
        return session

    async def submit(self, name: str, text: str, query_id: Optional[str] = None) -> Response:
        """
        Send text to the named session and wait for its response.

        Args:
            name: Model name
            text: Query text
            query_id: Optional caller-chosen id (for cancellation)

        Returns:
            Response correlated to this query

        Raises:
            ModelNotFound, SpawnError: If an implicit start fails
            ClosedChannel: If the session was stopped
            ProcessTerminated: If the process exited
            QueryTimeout: If no output arrived in time
            QueryCancelled: If the query was cancelled before it was written
        """
        session = await self._session_for_query(name)
        query = Query(session_id=session.id, text=text)
        if query_id:
            query.id = query_id

        pending = session.router.submit(query)
        try:
            response = await asyncio.shield(pending.future)
        except asyncio.CancelledError:
            # Caller went away; drop the query if it has not been written
            session.router.cancel(query.id)
            raise
        session.queries_served += 1
        return response

    def cancel(self, name: str, query_id: str) -> bool:
        """Cancel a queued query; False if unknown or already written."""
        session = self._sessions.get(name)
        if session is None or session.router is None:
            return False
        return session.router.cancel(query_id)

    async def terminate(self, name: str) -> bool:
        """
        Stop the named session.

        Returns:
            False (and logs) if no live session exists for name
        """
        creation = self._creating.get(name)
        if creation is not None:
            logger.info(f"Stopping session '{name}' during startup")
            self._stopped_while_starting.add(name)
            starting = self._starting.get(name)
            if starting is not None:
                await starting.supervisor.stop(self.stop_grace_seconds)
            await asyncio.wait([creation])
            return True

        session = self._sessions.get(name)
        if session is None or not session.is_live:
            logger.info(f"Session '{name}' is not running, nothing to stop")
            return False

        logger.info(f"Stopping session '{name}'")
        await session.supervisor.stop(self.stop_grace_seconds)
        if not await session.aggregator.wait_closed(timeout=self.stop_grace_seconds):
            logger.warning(f"Session '{name}' output did not close after stop")
        if session.is_live:
            self._handle_exit(session, self._ended_error(session))
        return True

    def list_active(self) -> Set[str]:
        return {name for name, session in self._sessions.items() if session.is_live}

    def status(self, name: str) -> Dict[str, Any]:
        """
        Describe one session, including terminated ones.

        Raises:
            ModelNotFound: If name is neither a session nor a catalog model
        """
        session = self._starting.get(name) or self._sessions.get(name)
        if session is None:
            self.catalog.resolve(name)
            return {"model": name, "state": None}

        now = time.time()
        end = session.ended_at or now
        return {
            "model": name,
            "state": session.state.value,
            "process_state": session.supervisor.state.value,
            "pid": session.supervisor.pid,
            "returncode": session.supervisor.returncode,
            "started_at": session.started_at,
            "uptime_seconds": round(end - session.started_at, 1),
            "queue_depth": session.router.queue_depth if session.router else 0,
            "in_flight": session.router.in_flight if session.router else None,
            "queries_served": session.queries_served,
            "terminal_error": session.terminal_error,
        }

    def describe_all(self) -> Dict[str, Dict[str, Any]]:
        names = set(self._sessions) | set(self._starting)
        return {name: self.status(name) for name in sorted(names)}

    async def shutdown_all(self) -> None:
        """Terminate all live sessions and any still starting."""
        for name in sorted(self.list_active() | set(self._creating)):
            try:
                await self.terminate(name)
            except Exception as e:
                logger.warning(f"Error terminating session '{name}': {e}")


# Global registry instance
_registry: Optional[SessionRegistry] = None


def get_registry() -> SessionRegistry:
    """
    Get or create the global SessionRegistry.

    Loads the catalog and timeouts from configuration on first use.
    """
    global _registry
    if _registry is None:
        from ..config import get_catalog_path, get_default_threads
        from ..db.settings import get_setting_float, get_setting_int

        catalog = ModelCatalog.load(get_catalog_path())
        _registry = SessionRegistry(
            catalog,
            threads=get_default_threads(catalog.default_threads),
            idle_timeout_ms=get_setting_int("idle_timeout_ms", 1500),
            first_output_timeout=get_setting_float("first_output_timeout_seconds", 120.0),
            startup_timeout=get_setting_float("startup_timeout_seconds", 60.0),
            stop_grace_seconds=get_setting_float("stop_grace_seconds", 5.0),
            spawn_check_seconds=get_setting_float("spawn_check_seconds", 0.2),
        )
    return _registry


def reset_registry() -> None:
    """Forget the global registry (used on daemon shutdown)."""
    global _registry
    _registry = None
