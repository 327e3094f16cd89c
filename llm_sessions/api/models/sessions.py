"""Pydantic models for session API endpoints."""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class QueryRequest(BaseModel):
    """Request model for sending text to a session."""

    text: str = Field(..., description="Text to submit to the model", min_length=1)
    query_id: Optional[str] = Field(
        default=None, description="Caller-chosen query id, usable for cancellation", max_length=128
    )


class QueryResponse(BaseModel):
    """Response model for a completed query."""

    request_id: str = Field(..., description="Daemon request id, also used in its log lines")
    processing_time_ms: int = Field(..., description="Milliseconds from request to response, queueing included")
    query_id: str = Field(..., description="Id of the answered query")
    model: str = Field(..., description="Model that produced the text")
    text: str = Field(..., description="Response text")
    completed_at: float = Field(..., description="Completion time (unix seconds)")
    truncated: bool = Field(..., description="True if the process exited mid-response")


class SessionStatus(BaseModel):
    """Status of one session."""

    model: str = Field(..., description="Model name")
    state: Optional[str] = Field(None, description="Session state, null if never started")
    process_state: Optional[str] = Field(None, description="Subprocess state")
    pid: Optional[int] = Field(None, description="Subprocess id")
    returncode: Optional[int] = Field(None, description="Exit code once the process ended")
    started_at: Optional[float] = Field(None, description="Start time (unix seconds)")
    uptime_seconds: Optional[float] = Field(None, description="Seconds since start (until end)")
    queue_depth: int = Field(0, description="Queries waiting to be written")
    in_flight: Optional[str] = Field(None, description="Query currently being answered")
    queries_served: int = Field(0, description="Queries answered by this session")
    terminal_error: Optional[str] = Field(None, description="Why the session ended")


class SessionListResponse(BaseModel):
    """Active session names."""

    sessions: List[str] = Field(..., description="Names of live sessions")


class SessionStatusListResponse(BaseModel):
    """Status of every known session, including terminated ones."""

    sessions: Dict[str, SessionStatus] = Field(..., description="Status by model name")


class SessionActionResponse(BaseModel):
    """Result of start/stop/cancel."""

    model: str = Field(..., description="Model name")
    success: bool = Field(..., description="Whether the action changed anything")
    message: str = Field(..., description="Human-readable outcome")
    status: Optional[SessionStatus] = Field(None, description="Session status after the action")


class ModelListResponse(BaseModel):
    """Configured model names."""

    models: List[str] = Field(..., description="Model names from the catalog")
