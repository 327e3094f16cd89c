"""Session API router: start, query, cancel, stop and inspect model sessions."""

import logging
import time
import uuid

from fastapi import APIRouter, HTTPException

from ..models.sessions import (
    ModelListResponse,
    QueryRequest,
    QueryResponse,
    SessionActionResponse,
    SessionListResponse,
    SessionStatus,
    SessionStatusListResponse,
)
from ...session import SessionError, get_registry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["sessions"])


def _session_error(e: SessionError, request_id: str) -> HTTPException:
    """Translate a SessionError into the API error shape."""
    return HTTPException(
        status_code=e.http_status,
        detail={
            "code": e.code,
            "message": str(e),
            "request_id": request_id,
        },
    )


def _unexpected_error(action: str, e: Exception, request_id: str) -> HTTPException:
    error_msg = f"Failed to {action}: {str(e)}"
    logger.error(f"{error_msg} (request {request_id})", exc_info=True)
    return HTTPException(
        status_code=500,
        detail={
            "code": "INTERNAL_ERROR",
            "message": error_msg,
            "request_id": request_id,
        },
    )


@router.get("/models", response_model=ModelListResponse)
async def list_models() -> ModelListResponse:
    """List model names configured in the catalog."""
    return ModelListResponse(models=get_registry().catalog.names())


@router.get("/sessions", response_model=SessionListResponse)
async def list_sessions() -> SessionListResponse:
    """List names of live sessions."""
    return SessionListResponse(sessions=sorted(get_registry().list_active()))


@router.get("/sessions/status", response_model=SessionStatusListResponse)
async def all_session_status() -> SessionStatusListResponse:
    """Status of every known session, including terminated ones."""
    statuses = get_registry().describe_all()
    return SessionStatusListResponse(
        sessions={name: SessionStatus(**status) for name, status in statuses.items()}
    )


@router.get("/sessions/{model}", response_model=SessionStatus)
async def session_status(model: str) -> SessionStatus:
    """Status of one session."""
    request_id = str(uuid.uuid4())
    try:
        return SessionStatus(**get_registry().status(model))
    except SessionError as e:
        raise _session_error(e, request_id)


@router.post("/sessions/{model}/start", response_model=SessionActionResponse)
async def start_session(model: str) -> SessionActionResponse:
    """
    Start a session for a model, or attach to the running one.

    Raises:
        HTTPException: 404 for unknown models, 502 if the process cannot start
    """
    request_id = str(uuid.uuid4())
    registry = get_registry()
    try:
        already_running = model in registry.list_active()
        await registry.get_or_create(model)
    except SessionError as e:
        logger.warning(f"Start of '{model}' failed for request {request_id}: {e}")
        raise _session_error(e, request_id)
    except Exception as e:
        raise _unexpected_error(f"start session '{model}'", e, request_id)

    return SessionActionResponse(
        model=model,
        success=True,
        message="Session already running" if already_running else "Session started",
        status=SessionStatus(**registry.status(model)),
    )


@router.post("/sessions/{model}/query", response_model=QueryResponse)
async def query_session(model: str, request: QueryRequest) -> QueryResponse:
    """
    Send text to a model session and wait for the response.

    The session is started on the first query for a model that never had
    one; a stopped or crashed session must be started again explicitly.
    """
    request_id = str(uuid.uuid4())
    start_time = time.time()

    try:
        response = await get_registry().submit(model, request.text, query_id=request.query_id)
    except SessionError as e:
        logger.warning(f"Query to '{model}' failed for request {request_id}: {e}")
        raise _session_error(e, request_id)
    except Exception as e:
        raise _unexpected_error(f"query session '{model}'", e, request_id)

    processing_time_ms = int((time.time() - start_time) * 1000)
    if response.truncated:
        logger.warning(f"Response {response.query_id} from '{model}' was truncated")

    return QueryResponse(
        request_id=request_id,
        processing_time_ms=processing_time_ms,
        query_id=response.query_id,
        model=model,
        text=response.text,
        completed_at=response.completed_at,
        truncated=response.truncated,
    )


@router.post("/sessions/{model}/queries/{query_id}/cancel", response_model=SessionActionResponse)
async def cancel_query(model: str, query_id: str) -> SessionActionResponse:
    """Cancel a query that is still waiting to be written."""
    cancelled = get_registry().cancel(model, query_id)
    return SessionActionResponse(
        model=model,
        success=cancelled,
        message="Query cancelled" if cancelled else "Query not queued (unknown or already sent)",
    )


@router.post("/sessions/{model}/stop", response_model=SessionActionResponse)
async def stop_session(model: str) -> SessionActionResponse:
    """Stop a session. Succeeds even if it is not running."""
    request_id = str(uuid.uuid4())
    registry = get_registry()
    try:
        stopped = await registry.terminate(model)
    except Exception as e:
        raise _unexpected_error(f"stop session '{model}'", e, request_id)

    status = None
    if model in registry.describe_all():
        status = SessionStatus(**registry.status(model))
    return SessionActionResponse(
        model=model,
        success=True,
        message="Session stopped" if stopped else "Session was not running",
        status=status,
    )
