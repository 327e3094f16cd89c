"""Error taxonomy for session management.

Every error a caller can observe derives from SessionError. Each class
carries a wire code (used in HTTP error details) and a CLI exit code so the
daemon and the command-line client agree on what went wrong.
"""

from __future__ import annotations

from typing import Optional


class SessionError(Exception):
    """Base exception for all session manager errors."""

    code = "SESSION_ERROR"
    exit_code = 1
    http_status = 500


class CatalogError(SessionError):
    """The model catalog configuration is missing or invalid."""

    code = "CATALOG_ERROR"
    http_status = 500


class ModelNotFound(SessionError):
    """No model with the requested name is configured."""

    code = "MODEL_NOT_FOUND"
    exit_code = 3
    http_status = 404

    def __init__(self, name: str, available: Optional[list[str]] = None) -> None:
        self.name = name
        self.available = available or []
        msg = f"Model '{name}' not found in catalog"
        if self.available:
            msg += f". Available models: {', '.join(self.available)}"
        super().__init__(msg)


class SpawnError(SessionError):
    """The inference executable could not be started."""

    code = "SPAWN_FAILED"
    exit_code = 4
    http_status = 502


class ClosedChannel(SessionError):
    """Input or output was requested after the process ended."""

    code = "CHANNEL_CLOSED"
    exit_code = 5
    http_status = 409


class ProcessTerminated(SessionError):
    """The subprocess exited while queries were outstanding."""

    code = "PROCESS_TERMINATED"
    exit_code = 6
    http_status = 410

    def __init__(self, message: str, returncode: Optional[int] = None) -> None:
        self.returncode = returncode
        super().__init__(message)


class QueryTimeout(SessionError, TimeoutError):
    """No output at all arrived for a query within the first-output timeout."""

    code = "RESPONSE_TIMEOUT"
    exit_code = 7
    http_status = 504


class QueryCancelled(SessionError):
    """The query was cancelled before it was written to the subprocess."""

    code = "QUERY_CANCELLED"
    exit_code = 8
    http_status = 409

    def __init__(self, query_id: str) -> None:
        self.query_id = query_id
        super().__init__(f"Query {query_id} cancelled before it was sent")


ERRORS_BY_CODE: dict[str, type[SessionError]] = {
    cls.code: cls
    for cls in (
        SessionError,
        CatalogError,
        ModelNotFound,
        SpawnError,
        ClosedChannel,
        ProcessTerminated,
        QueryTimeout,
        QueryCancelled,
    )
}
